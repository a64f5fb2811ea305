"""
Database module for Mutuus Billing
"""
from .base import Base
from .engine import create_db_engine, create_session_factory, configure_sessions, get_db
from .models import (
    Account,
    JobTransaction,
    JobTransactionStatus,
    MonthlyInvoice,
    InvoicePaymentStatus,
    ProcessedWebhookEvent,
    PointsPurchase,
)

__all__ = [
    "Base",
    "create_db_engine",
    "create_session_factory",
    "configure_sessions",
    "get_db",
    "Account",
    "JobTransaction",
    "JobTransactionStatus",
    "MonthlyInvoice",
    "InvoicePaymentStatus",
    "ProcessedWebhookEvent",
    "PointsPurchase",
]
