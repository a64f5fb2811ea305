"""
Account model - monetary and subscription state of a platform user
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, CheckConstraint
import enum

from ..base import Base
from ...timeutils import utcnow


class SubscriptionState(str, enum.Enum):
    """Premium lifecycle state derived from the account flags"""
    NO_SUBSCRIPTION = "no_subscription"
    ACTIVE_PREMIUM = "active_premium"
    CANCELED_PENDING_EXPIRY = "canceled_pending_expiry"
    EXPIRED = "expired"


class Account(Base):
    """
    Billing view of a user account

    Rows are created by the profile service. Only the billing subsystem writes
    the premium, points and provider-id columns. ``version`` is an optimistic
    lock: every ORM update checks and bumps it.
    """
    __tablename__ = "accounts"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=True)

    # Provider references
    external_customer_id = Column(String(100), nullable=True, unique=True, index=True)
    external_subscription_id = Column(String(100), nullable=True, index=True)

    # Premium
    is_premium = Column(Boolean, default=False, nullable=False)
    premium_since = Column(DateTime, nullable=True)
    premium_until = Column(DateTime, nullable=True)
    auto_renew = Column(Boolean, default=False, nullable=False)
    last_subscription_event_at = Column(DateTime, nullable=True)

    # Community points
    points_balance = Column(Integer, default=0, nullable=False)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("points_balance >= 0", name="ck_accounts_points_balance_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Account(id={self.id}, premium={self.is_premium}, points={self.points_balance})>"

    def subscription_state(self, now=None) -> SubscriptionState:
        """Where the account sits in the premium lifecycle"""
        now = now or utcnow()
        if self.is_premium and (self.premium_until is None or self.premium_until > now):
            if self.auto_renew:
                return SubscriptionState.ACTIVE_PREMIUM
            return SubscriptionState.CANCELED_PENDING_EXPIRY
        if self.premium_since is not None:
            return SubscriptionState.EXPIRED
        return SubscriptionState.NO_SUBSCRIPTION

    def premium_status(self) -> dict:
        """Premium fields exposed to the client application"""
        return {
            "account_id": self.id,
            "is_premium": self.is_premium,
            "premium_since": self.premium_since.isoformat() if self.premium_since else None,
            "premium_until": self.premium_until.isoformat() if self.premium_until else None,
            "auto_renew": self.auto_renew,
            "state": self.subscription_state().value,
        }
