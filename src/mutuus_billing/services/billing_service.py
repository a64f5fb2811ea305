"""
Billing Service - client-facing premium, points and commission operations
"""
from typing import Any, Dict, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from ..db.models import Account, InvoicePaymentStatus, JobTransaction, MonthlyInvoice
from ..exceptions import (
    AccountNotFound,
    InvoiceNotFound,
    InvoiceNotPayable,
    NoActiveSubscription,
    PersistenceError,
    UnknownProduct,
)
from .billing_gateway import BillingGateway
from .identity_resolver import CustomerIdentityResolver

logger = logging.getLogger(__name__)


class BillingService:
    """Service for checkout initiation, premium management and ledger queries"""

    def __init__(self, db: Session, gateway: BillingGateway, config):
        """
        Initialize billing service

        Args:
            db: Database session
            gateway: Payment provider gateway
            config: Config object (price ids, points packages)
        """
        self.db = db
        self.gateway = gateway
        self.config = config

    def start_premium_checkout(self, account_id: str, success_url: str, cancel_url: str) -> Dict[str, Any]:
        """
        Create a subscription-mode checkout session for the premium plan

        Local premium state changes only when the checkout completes
        (``checkout.session.completed`` webhook).
        """
        customer_id = CustomerIdentityResolver(self.db, self.gateway).resolve(account_id)
        session = self.gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=self.config.PREMIUM_PRICE_ID,
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"account_id": account_id, "product": "premium"},
        )
        logger.info(f"Premium checkout session {session['session_id']} created for account {account_id}")
        return session

    def start_points_checkout(
        self,
        account_id: str,
        success_url: str,
        cancel_url: str,
        product: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a one-time payment checkout session for a points package"""
        product = product or self.config.POINTS_PRODUCT_KEY
        package = self.config.points_packages.get(product)
        if package is None:
            raise UnknownProduct(f"Unknown points package: {product}", {"product": product})

        customer_id = CustomerIdentityResolver(self.db, self.gateway).resolve(account_id)
        session = self.gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=package["price_id"],
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"account_id": account_id, "product": product},
        )
        session["points"] = package["points"]
        logger.info(f"Points checkout session {session['session_id']} ({product}) created for account {account_id}")
        return session

    def get_premium_status(self, account_id: str) -> Dict[str, Any]:
        return self._get_account(account_id).premium_status()

    def cancel_premium(self, account_id: str) -> Dict[str, Any]:
        """
        Cancel the premium subscription at the end of the current period

        The provider is updated first; ``auto_renew`` is cleared locally only
        after the provider accepted the change. Premium stays active until
        the period ends.

        Raises:
            AccountNotFound: unknown account
            NoActiveSubscription: the account has no provider subscription
            ExternalProviderError: the provider rejected or failed the call
        """
        account = self._get_account(account_id)
        if not account.external_subscription_id:
            raise NoActiveSubscription(f"Account {account_id} has no subscription", {"account_id": account_id})

        self.gateway.cancel_subscription(account.external_subscription_id)

        try:
            account = self.db.query(Account).filter(Account.id == account_id).with_for_update().one()
            account.auto_renew = False
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to store cancellation for account {account_id}") from e

        logger.info(f"Premium for account {account_id} set to end at {account.premium_until}")
        return account.premium_status()

    def list_commissions(self, employer_id: str) -> List[JobTransaction]:
        """Commission history of an employer, newest first"""
        return self.db.query(JobTransaction).filter(
            JobTransaction.employer_account_id == employer_id
        ).order_by(JobTransaction.created_at.desc(), JobTransaction.id.desc()).all()

    def list_invoices(self, account_id: Optional[str] = None) -> List[MonthlyInvoice]:
        """Monthly invoices of one account, or of all accounts"""
        query = self.db.query(MonthlyInvoice)
        if account_id:
            query = query.filter(MonthlyInvoice.employer_account_id == account_id)
        return query.order_by(MonthlyInvoice.month_key.desc(), MonthlyInvoice.id.desc()).all()

    def pay_invoice(self, invoice_id: int) -> Dict[str, Any]:
        """
        Ask Stripe to collect a commission invoice now

        The local status is left alone; the ``invoice.paid`` or
        ``invoice.payment_failed`` webhook records the result.

        Raises:
            InvoiceNotFound: unknown invoice
            InvoiceNotPayable: no Stripe invoice yet, or already paid
            ExternalProviderError: the provider rejected or failed the call
        """
        invoice = self.db.query(MonthlyInvoice).filter(MonthlyInvoice.id == invoice_id).first()
        if not invoice:
            raise InvoiceNotFound(f"Invoice {invoice_id} not found", {"invoice_id": invoice_id})
        if not invoice.external_invoice_id or invoice.payment_status == InvoicePaymentStatus.PAID.value:
            raise InvoiceNotPayable(
                f"Invoice {invoice.idempotency_key} cannot be paid ({invoice.payment_status})",
                {"invoice_id": invoice_id, "payment_status": invoice.payment_status},
            )

        result = self.gateway.pay_invoice(invoice.external_invoice_id)
        logger.info(f"Payment of Stripe invoice {invoice.external_invoice_id} requested: {result.get('status')}")
        return {
            "invoice_id": invoice.id,
            "external_invoice_id": invoice.external_invoice_id,
            "provider_status": result.get("status"),
            "payment_status": invoice.payment_status,
        }

    def _get_account(self, account_id: str) -> Account:
        account = self.db.query(Account).filter(Account.id == account_id).first()
        if not account:
            raise AccountNotFound(account_id)
        return account
