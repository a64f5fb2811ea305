"""
Billing Gateway - Abstract interface for the payment provider
Stripe implementation with bounded timeouts and retry with exponential backoff
"""
from abc import ABC, abstractmethod
from datetime import date, timedelta
from typing import Any, Callable, Dict, Optional
import logging
import time

import stripe

from ..exceptions import ExternalProviderError
from ..timeutils import from_unix

logger = logging.getLogger(__name__)


class BillingGateway(ABC):
    """Abstract base class for payment providers"""

    @abstractmethod
    def create_customer(
        self,
        email: Optional[str],
        metadata: Optional[Dict] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a customer in the payment provider"""
        pass

    @abstractmethod
    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """Create a hosted checkout session ('subscription' or 'payment' mode)"""
        pass

    @abstractmethod
    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Cancel a subscription at the end of the current period"""
        pass

    @abstractmethod
    def find_commission_invoice(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        """Look up a commission invoice previously created with ``idempotency_key``"""
        pass

    @abstractmethod
    def create_commission_invoice(
        self,
        customer_id: str,
        amount_cents: int,
        currency: str,
        description: str,
        idempotency_key: str,
        days_until_due: int,
        metadata: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Create (or finish) the invoice for ``idempotency_key`` with a single
        commission line item
        """
        pass

    @abstractmethod
    def pay_invoice(self, invoice_id: str) -> Dict[str, Any]:
        """Attempt to collect an open invoice now"""
        pass


def is_complete_invoice(invoice: Optional[Dict[str, Any]], amount_cents: int) -> bool:
    """True when a provider invoice carries the full amount and is released for collection"""
    if not invoice:
        return False
    return invoice.get("amount_cents") == amount_cents and invoice.get("auto_advance", True)


class StripeGateway(BillingGateway):
    """Stripe payment gateway"""

    RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

    def __init__(
        self,
        api_key: str,
        timeout: float = 20.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        client: Optional[stripe.StripeClient] = None
    ):
        """
        Initialize Stripe gateway

        Args:
            api_key: Stripe secret key (test or live)
            timeout: HTTP timeout for every provider request, in seconds
            max_retries: Attempts per operation before giving up
            backoff_seconds: First retry delay; doubles on each attempt
            sleep: Sleep function (replaced in tests)
            client: Prebuilt StripeClient (replaced in tests)
        """
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self.client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=0,
        )

    def _is_retryable(self, error: stripe.StripeError) -> bool:
        if isinstance(error, self.RETRYABLE_ERRORS):
            return True
        return (getattr(error, "http_status", None) or 0) >= 500

    def _call(self, operation: str, func: Callable, *args, **kwargs):
        """
        Run a Stripe call with retries

        Retryable failures are retried with exponential backoff up to
        ``max_retries`` attempts; anything else fails immediately.
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                return func(*args, **kwargs)
            except stripe.StripeError as e:
                retryable = self._is_retryable(e)
                if retryable and attempt < self.max_retries:
                    delay = self.backoff_seconds * (2 ** (attempt - 1))
                    logger.warning(
                        f"Stripe {operation} failed (attempt {attempt}/{self.max_retries}): {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    self._sleep(delay)
                    continue
                logger.error(f"Stripe {operation} failed after {attempt} attempt(s): {e}")
                raise ExternalProviderError(
                    f"Stripe {operation} failed: {e.user_message or str(e)}",
                    retryable=retryable,
                    details={"operation": operation, "attempts": attempt},
                ) from e

    def create_customer(
        self,
        email: Optional[str],
        metadata: Optional[Dict] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a Stripe customer"""
        params = {"metadata": metadata or {}}
        if email:
            params["email"] = email
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}

        customer = self._call("customer creation", self.client.customers.create, params=params, options=options)
        return {
            "customer_id": customer.id,
            "provider": "stripe",
        }

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """Create a Stripe Checkout session"""
        params = {
            "customer": customer_id,
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata or {}}

        session = self._call("checkout session creation", self.client.checkout.sessions.create, params=params)
        return {
            "session_id": session.id,
            "url": session.url,
            "mode": mode,
        }

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Set a Stripe subscription to cancel at period end"""
        subscription = self._call(
            "subscription cancellation",
            self.client.subscriptions.update,
            subscription_id,
            params={"cancel_at_period_end": True},
        )
        return {
            "subscription_id": subscription.id,
            "status": subscription.status,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "provider": "stripe",
        }

    def find_commission_invoice(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        """Search Stripe for an invoice tagged with ``idempotency_key``"""
        invoice = self._search_invoice(idempotency_key)
        return self._invoice_dict(invoice) if invoice is not None else None

    def create_commission_invoice(
        self,
        customer_id: str,
        amount_cents: int,
        currency: str,
        description: str,
        idempotency_key: str,
        days_until_due: int,
        metadata: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Create a commission invoice and its line item

        Every step is safe to replay: an invoice already tagged with
        ``idempotency_key`` is reused, the line item is added only while the
        draft is still empty, and the draft is released for collection
        (``auto_advance``) only once it carries the amount.
        """
        invoice_metadata = dict(metadata or {})
        invoice_metadata["idempotency_key"] = idempotency_key

        invoice = self._search_invoice(idempotency_key)
        if invoice is None:
            invoice = self._call(
                "invoice creation",
                self.client.invoices.create,
                params={
                    "customer": customer_id,
                    "collection_method": "send_invoice",
                    "days_until_due": days_until_due,
                    "auto_advance": False,
                    "pending_invoice_items_behavior": "exclude",
                    "description": description,
                    "metadata": invoice_metadata,
                },
                options={"idempotency_key": f"{idempotency_key}-invoice"},
            )
        else:
            logger.info(f"Completing existing Stripe invoice {invoice.id} for {idempotency_key}")

        total = getattr(invoice, "total", 0) or 0
        if total != amount_cents:
            if total or getattr(invoice, "status", "draft") != "draft":
                raise ExternalProviderError(
                    f"Stripe invoice {invoice.id} for {idempotency_key} holds {total} "
                    f"instead of {amount_cents} and can no longer be edited",
                    retryable=False,
                    details={"invoice_id": invoice.id, "total": total, "expected": amount_cents},
                )
            self._call(
                "invoice item creation",
                self.client.invoice_items.create,
                params={
                    "customer": customer_id,
                    "invoice": invoice.id,
                    "amount": amount_cents,
                    "currency": currency,
                    "description": description,
                    "metadata": invoice_metadata,
                },
                options={"idempotency_key": f"{idempotency_key}-item"},
            )

        if not getattr(invoice, "auto_advance", False):
            invoice = self._call(
                "invoice release",
                self.client.invoices.update,
                invoice.id,
                params={"auto_advance": True},
            )

        result = self._invoice_dict(invoice)
        result["amount_cents"] = amount_cents
        result["auto_advance"] = True
        if result["due_date"] is None:
            result["due_date"] = date.today() + timedelta(days=days_until_due)
        return result

    def pay_invoice(self, invoice_id: str) -> Dict[str, Any]:
        """Collect an open Stripe invoice with the customer's default payment method"""
        invoice = self._call("invoice payment", self.client.invoices.pay, invoice_id)
        return self._invoice_dict(invoice)

    def _search_invoice(self, idempotency_key: str):
        result = self._call(
            "invoice search",
            self.client.invoices.search,
            params={"query": f"metadata['idempotency_key']:'{idempotency_key}'"},
        )
        invoices = list(getattr(result, "data", []) or [])
        return invoices[0] if invoices else None

    @staticmethod
    def _invoice_dict(invoice) -> Dict[str, Any]:
        due = from_unix(getattr(invoice, "due_date", None))
        return {
            "invoice_id": invoice.id,
            "status": getattr(invoice, "status", None),
            "amount_cents": getattr(invoice, "total", 0) or 0,
            "auto_advance": bool(getattr(invoice, "auto_advance", False)),
            "due_date": due.date() if due else None,
            "provider": "stripe",
        }


def get_billing_gateway(config) -> BillingGateway:
    """
    Factory function for the configured payment gateway

    Args:
        config: Config object with Stripe settings

    Returns:
        BillingGateway instance
    """
    api_key = config.stripe_secret_key
    if not api_key:
        raise ValueError("Stripe API key not configured")

    return StripeGateway(
        api_key,
        timeout=config.STRIPE_TIMEOUT_SECONDS,
        max_retries=config.STRIPE_MAX_RETRIES,
        backoff_seconds=config.STRIPE_RETRY_BACKOFF_SECONDS,
    )
