"""
Event Dispatcher - applies verified provider events to local billing state
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from ..db.models import (
    Account,
    InvoicePaymentStatus,
    MonthlyInvoice,
    PointsPurchase,
    ProcessedWebhookEvent,
    WebhookOutcome,
)
from ..exceptions import BillingError, PersistenceError
from ..timeutils import add_months, from_unix, utcnow
from .metrics import increment_counter
from .webhook_verifier import VerifiedEvent

logger = logging.getLogger(__name__)

DUPLICATE = "duplicate"

HandlerResult = Tuple[WebhookOutcome, Optional[str]]


@dataclass(frozen=True)
class DispatchResult:
    """What happened to one delivered event"""
    event_id: str
    event_type: str
    outcome: str
    account_id: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome == WebhookOutcome.APPLIED.value


class EventDispatcher:
    """
    Route verified events to their handlers

    Every event is recorded in ``processed_webhook_events`` in the same
    transaction as the mutation it causes. A redelivered event fails that
    insert and is acknowledged as a duplicate without touching any state.
    """

    def __init__(self, db: Session, config, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.config = config
        self.clock = clock
        self._handlers: Dict[str, Callable[[VerifiedEvent], HandlerResult]] = {
            "checkout_completed": self._on_checkout_completed,
            "subscription_updated": self._on_subscription_updated,
            "subscription_deleted": self._on_subscription_deleted,
            "invoice_payment_failed": self._on_invoice_payment_failed,
            "invoice_paid": self._on_invoice_paid,
        }

    def dispatch(self, event: VerifiedEvent) -> DispatchResult:
        """
        Apply an event exactly once

        Returns:
            DispatchResult with outcome applied, duplicate, ignored,
            no_account or stale

        Raises:
            PersistenceError: database failure (transaction rolled back)
            BillingError: handler failure (transaction rolled back)
        """
        record = ProcessedWebhookEvent(
            event_id=event.event_id,
            event_type=event.event_type,
            occurred_at=event.occurred_at,
            outcome=WebhookOutcome.IGNORED.value,
        )

        try:
            self.db.add(record)
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Duplicate webhook event {event.event_id} ({event.event_type}) - ignoring")
            increment_counter("webhook_events_total", labels={"type": event.event_type, "outcome": DUPLICATE})
            return DispatchResult(event.event_id, event.event_type, DUPLICATE)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to record webhook event {event.event_id}") from e

        handler = self._handlers.get(event.event_type)

        try:
            if handler is None:
                logger.info(f"Unhandled webhook event type {event.provider_event_type} ({event.event_id})")
                outcome, account_id = WebhookOutcome.IGNORED, None
            else:
                outcome, account_id = handler(event)

            record.outcome = outcome.value
            record.account_id = account_id
            self.db.commit()
        except BillingError:
            self.db.rollback()
            increment_counter("webhook_events_failed_total", labels={"type": event.event_type})
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to apply webhook event {event.event_id} ({event.event_type}): {e}")
            increment_counter("webhook_events_failed_total", labels={"type": event.event_type})
            raise PersistenceError(f"Failed to apply webhook event {event.event_id}") from e
        except Exception:
            self.db.rollback()
            logger.error(f"Failed to apply webhook event {event.event_id} ({event.event_type})", exc_info=True)
            increment_counter("webhook_events_failed_total", labels={"type": event.event_type})
            raise

        logger.info(f"Webhook event {event.event_id} ({event.event_type}): {outcome.value}")
        increment_counter("webhook_events_total", labels={"type": event.event_type, "outcome": outcome.value})
        return DispatchResult(event.event_id, event.event_type, outcome.value, account_id)

    # Handlers

    def _on_checkout_completed(self, event: VerifiedEvent) -> HandlerResult:
        session = event.object_payload
        account = self._lock_account(event)
        if account is None:
            return WebhookOutcome.NO_ACCOUNT, None

        mode = session.get("mode")
        if mode == "subscription":
            if self._is_stale(account, event):
                return WebhookOutcome.STALE, account.id
            now = self.clock()
            account.is_premium = True
            account.premium_since = now
            account.premium_until = add_months(now, 1)
            account.auto_renew = True
            if session.get("subscription"):
                account.external_subscription_id = _object_id(session["subscription"])
            self._mark_applied(account, event)
            logger.info(f"Premium activated for account {account.id} until {account.premium_until}")
            return WebhookOutcome.APPLIED, account.id

        if mode == "payment":
            return self._credit_points(account, session)

        logger.info(f"Checkout session {session.get('id')} has unsupported mode {mode!r}")
        return WebhookOutcome.IGNORED, account.id

    def _credit_points(self, account: Account, session: Dict[str, Any]) -> HandlerResult:
        session_id = session.get("id")
        product = (session.get("metadata") or {}).get("product")
        package = self.config.points_packages.get(product)
        if package is None:
            logger.warning(f"Checkout session {session_id} has unknown points product {product!r}")
            return WebhookOutcome.IGNORED, account.id

        already = self.db.query(PointsPurchase).filter(
            PointsPurchase.checkout_session_id == session_id
        ).first()
        if already:
            logger.warning(f"Points for checkout session {session_id} already credited")
            return WebhookOutcome.IGNORED, account.id

        amount_total = session.get("amount_total")
        amount = (Decimal(amount_total) / 100) if amount_total is not None else package["amount"]

        self.db.add(PointsPurchase(
            account_id=account.id,
            checkout_session_id=session_id,
            price_id=package["price_id"],
            amount=amount,
            currency=(session.get("currency") or self.config.CURRENCY).lower(),
            points=package["points"],
            extra_metadata=session.get("metadata") or {},
        ))
        account.points_balance = (account.points_balance or 0) + package["points"]
        logger.info(f"Credited {package['points']} points to account {account.id} (session {session_id})")
        return WebhookOutcome.APPLIED, account.id

    def _on_subscription_updated(self, event: VerifiedEvent) -> HandlerResult:
        subscription = event.object_payload
        account = self._lock_account(event)
        if account is None:
            return WebhookOutcome.NO_ACCOUNT, None
        if self._is_stale(account, event):
            return WebhookOutcome.STALE, account.id

        period_end = from_unix(_current_period_end(subscription))
        if period_end:
            account.premium_until = period_end
        account.auto_renew = not subscription.get("cancel_at_period_end", False)
        account.is_premium = subscription.get("status") == "active"
        if account.is_premium:
            if account.premium_since is None:
                account.premium_since = self.clock()
            if subscription.get("id"):
                account.external_subscription_id = subscription["id"]

        self._mark_applied(account, event)
        logger.info(
            f"Subscription synced for account {account.id}: status={subscription.get('status')}, "
            f"premium_until={account.premium_until}, auto_renew={account.auto_renew}"
        )
        return WebhookOutcome.APPLIED, account.id

    def _on_subscription_deleted(self, event: VerifiedEvent) -> HandlerResult:
        account = self._lock_account(event)
        if account is None:
            return WebhookOutcome.NO_ACCOUNT, None
        if self._is_stale(account, event):
            return WebhookOutcome.STALE, account.id

        account.is_premium = False
        account.premium_until = self.clock()
        account.auto_renew = False
        account.external_subscription_id = None
        self._mark_applied(account, event)
        logger.info(f"Premium ended for account {account.id}")
        return WebhookOutcome.APPLIED, account.id

    def _on_invoice_payment_failed(self, event: VerifiedEvent) -> HandlerResult:
        invoice = event.object_payload

        commission_invoice = self._find_commission_invoice(invoice)
        if commission_invoice is not None:
            if commission_invoice.payment_status == InvoicePaymentStatus.PAID.value:
                return WebhookOutcome.IGNORED, commission_invoice.employer_account_id
            commission_invoice.payment_status = InvoicePaymentStatus.FAILED.value
            logger.warning(
                f"Commission invoice {commission_invoice.idempotency_key} payment failed "
                f"(attempt {invoice.get('attempt_count')})"
            )
            return WebhookOutcome.APPLIED, commission_invoice.employer_account_id

        if not invoice.get("subscription"):
            logger.info(f"Payment failure for unknown non-subscription invoice {invoice.get('id')}")
            return WebhookOutcome.IGNORED, None

        account = self._lock_account(event)
        if account is None:
            return WebhookOutcome.NO_ACCOUNT, None
        if self._is_stale(account, event):
            return WebhookOutcome.STALE, account.id

        account.is_premium = False
        self._mark_applied(account, event)
        logger.warning(f"Premium revoked for account {account.id} after failed invoice {invoice.get('id')}")
        return WebhookOutcome.APPLIED, account.id

    def _on_invoice_paid(self, event: VerifiedEvent) -> HandlerResult:
        invoice = event.object_payload

        commission_invoice = self._find_commission_invoice(invoice)
        if commission_invoice is None:
            return WebhookOutcome.IGNORED, None
        if commission_invoice.payment_status == InvoicePaymentStatus.PAID.value:
            return WebhookOutcome.IGNORED, commission_invoice.employer_account_id

        commission_invoice.payment_status = InvoicePaymentStatus.PAID.value
        if not commission_invoice.external_invoice_id and invoice.get("id"):
            commission_invoice.external_invoice_id = invoice["id"]
        logger.info(f"Commission invoice {commission_invoice.idempotency_key} paid")
        return WebhookOutcome.APPLIED, commission_invoice.employer_account_id

    # Helpers

    def _lock_account(self, event: VerifiedEvent) -> Optional[Account]:
        customer_id = event.customer_id
        if not customer_id:
            logger.warning(f"Webhook event {event.event_id} carries no customer id")
            return None

        account = self.db.query(Account).filter(
            Account.external_customer_id == customer_id
        ).with_for_update().first()
        if account is None:
            logger.warning(f"No account for customer {customer_id} (event {event.event_id})")
        return account

    def _find_commission_invoice(self, invoice: Dict[str, Any]) -> Optional[MonthlyInvoice]:
        invoice_id = invoice.get("id")
        key = (invoice.get("metadata") or {}).get("idempotency_key")

        conditions = []
        if invoice_id:
            conditions.append(MonthlyInvoice.external_invoice_id == invoice_id)
        if key:
            conditions.append(MonthlyInvoice.idempotency_key == key)
        if not conditions:
            return None

        return self.db.query(MonthlyInvoice).filter(or_(*conditions)).with_for_update().first()

    def _is_stale(self, account: Account, event: VerifiedEvent) -> bool:
        if not self.config.ENFORCE_EVENT_ORDERING or event.occurred_at is None:
            return False
        last = account.last_subscription_event_at
        if last is None or event.occurred_at > last:
            return False
        if event.occurred_at == last and not self._is_detached_update(account, event):
            return False
        logger.info(
            f"Discarding stale event {event.event_id} for account {account.id} "
            f"({event.occurred_at} <= {last})"
        )
        return True

    @staticmethod
    def _is_detached_update(account: Account, event: VerifiedEvent) -> bool:
        # Same-second tie: an update for a subscription the account no longer
        # holds lost the race against its deletion
        if event.event_type != "subscription_updated":
            return False
        held = account.external_subscription_id
        if held is None:
            return not account.is_premium
        return held != _object_id(event.object_payload.get("id"))

    @staticmethod
    def _mark_applied(account: Account, event: VerifiedEvent):
        if event.occurred_at is None:
            return
        last = account.last_subscription_event_at
        if last is None or event.occurred_at > last:
            account.last_subscription_event_at = event.occurred_at


def _object_id(value) -> Optional[str]:
    """Expanded Stripe objects arrive as dicts, collapsed ones as ids"""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _current_period_end(subscription: Dict[str, Any]) -> Optional[int]:
    # Newer API versions moved the period onto the subscription items
    period_end = subscription.get("current_period_end")
    if period_end is not None:
        return period_end
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items[0].get("current_period_end")
    return None
