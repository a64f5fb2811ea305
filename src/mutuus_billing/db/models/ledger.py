"""
Commission ledger models - per-job transactions and monthly invoices
"""
from sqlalchemy import Column, Integer, String, Numeric, Date, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import date
from decimal import Decimal
import enum

from ..base import Base
from ...timeutils import utcnow


class JobTransactionStatus(str, enum.Enum):
    """Commission collection status (pending -> collected, one-way)"""
    PENDING = "pending"
    COLLECTED = "collected"


class InvoicePaymentStatus(str, enum.Enum):
    """
    Monthly invoice status

    REQUESTED is the outbox state: the invoice is reserved locally but the
    provider invoice may not exist yet.
    """
    REQUESTED = "requested"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class JobTransaction(Base):
    """Commission owed by an employer for one completed job"""
    __tablename__ = "job_transactions"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String(64), nullable=False, unique=True, index=True)
    employer_account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    worker_account_id = Column(String(64), nullable=False, index=True)

    job_amount = Column(Numeric(12, 2), nullable=False)
    commission_rate = Column(Numeric(6, 4), nullable=False)
    commission_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), default=JobTransactionStatus.PENDING.value, nullable=False, index=True)
    monthly_invoice_id = Column(Integer, ForeignKey("monthly_invoices.id"), nullable=True, index=True)
    collected_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    monthly_invoice = relationship("MonthlyInvoice", back_populates="transactions")

    __table_args__ = (
        Index("idx_job_transactions_employer_status_created", "employer_account_id", "status", "created_at"),
    )

    def __repr__(self):
        return f"<JobTransaction(job_id={self.job_id}, commission={self.commission_amount}, status={self.status})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "employer_account_id": self.employer_account_id,
            "worker_account_id": self.worker_account_id,
            "job_amount": str(self.job_amount),
            "commission_rate": str(self.commission_rate),
            "commission_amount": str(self.commission_amount),
            "status": self.status,
            "monthly_invoice_id": self.monthly_invoice_id,
            "collected_at": self.collected_at.isoformat() if self.collected_at else None,
            "created_at": self.created_at.isoformat(),
        }


class MonthlyInvoice(Base):
    """
    Consolidated commission invoice for one employer and one month

    One row per (employer, month). ``idempotency_key`` is sent with every
    provider call for this invoice so retries never create a second one.
    """
    __tablename__ = "monthly_invoices"

    id = Column(Integer, primary_key=True, index=True)
    employer_account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    month_key = Column(String(7), nullable=False, index=True)  # YYYY-MM

    total_commission = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_jobs = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="eur")

    payment_status = Column(String(20), default=InvoicePaymentStatus.REQUESTED.value, nullable=False, index=True)
    idempotency_key = Column(String(150), nullable=False, unique=True)
    external_invoice_id = Column(String(100), nullable=True, unique=True, index=True)
    due_date = Column(Date, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    transactions = relationship("JobTransaction", back_populates="monthly_invoice")

    __table_args__ = (
        UniqueConstraint("employer_account_id", "month_key", name="uq_monthly_invoices_employer_month"),
    )

    def __repr__(self):
        return f"<MonthlyInvoice(employer={self.employer_account_id}, month={self.month_key}, total={self.total_commission}, status={self.payment_status})>"

    @staticmethod
    def build_idempotency_key(employer_account_id: str, month_key: str) -> str:
        return f"commission-{employer_account_id}-{month_key}"

    @property
    def is_overdue(self) -> bool:
        if self.payment_status == InvoicePaymentStatus.PAID.value or self.due_date is None:
            return False
        return date.today() > self.due_date

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "employer_account_id": self.employer_account_id,
            "month_key": self.month_key,
            "total_commission": str(self.total_commission),
            "total_jobs": self.total_jobs,
            "currency": self.currency,
            "payment_status": self.payment_status,
            "external_invoice_id": self.external_invoice_id,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "is_overdue": self.is_overdue,
            "created_at": self.created_at.isoformat(),
        }
