"""
Database models for Mutuus Billing
"""
from .account import Account, SubscriptionState
from .ledger import JobTransaction, JobTransactionStatus, MonthlyInvoice, InvoicePaymentStatus
from .billing import ProcessedWebhookEvent, PointsPurchase, WebhookOutcome

__all__ = [
    "Account",
    "SubscriptionState",
    "JobTransaction",
    "JobTransactionStatus",
    "MonthlyInvoice",
    "InvoicePaymentStatus",
    "ProcessedWebhookEvent",
    "PointsPurchase",
    "WebhookOutcome",
]
