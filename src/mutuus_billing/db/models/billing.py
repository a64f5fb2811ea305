"""
Webhook dedup ledger and points purchase ledger
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, UniqueConstraint
import enum

from ..base import Base, JSONType
from ...timeutils import utcnow


class WebhookOutcome(str, enum.Enum):
    """What the dispatcher did with an event"""
    APPLIED = "applied"
    IGNORED = "ignored"
    NO_ACCOUNT = "no_account"
    STALE = "stale"


class ProcessedWebhookEvent(Base):
    """
    Provider events already handled

    Inserted in the same transaction as the state change it records, so a
    redelivered event hits the unique constraint instead of mutating twice.
    """
    __tablename__ = "processed_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(100), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    account_id = Column(String(64), nullable=True, index=True)
    outcome = Column(String(20), nullable=False)
    occurred_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_processed_webhook_events_event_id"),
    )


class PointsPurchase(Base):
    """Completed one-time purchase of community points"""
    __tablename__ = "points_purchases"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    checkout_session_id = Column(String(100), nullable=False, unique=True)
    price_id = Column(String(100), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="eur")
    points = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="completed")
    extra_metadata = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
