"""
Commission Calculator - platform fee on completed jobs
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from ..db.models import Account, JobTransaction, JobTransactionStatus
from ..exceptions import AccountNotFound, InvalidAmount, PersistenceError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
RATE_PLACES = Decimal("0.0001")

Amount = Union[Decimal, int, float, str]


@dataclass(frozen=True)
class CommissionRates:
    """Commission rate per account tier, as decimal fractions"""
    standard: Decimal = Decimal("0.098")
    premium: Decimal = Decimal("0.05")

    @classmethod
    def from_config(cls, config) -> "CommissionRates":
        return cls(standard=config.COMMISSION_RATE_STANDARD, premium=config.COMMISSION_RATE_PREMIUM)

    def rate_for(self, is_premium: bool) -> Decimal:
        return self.premium if is_premium else self.standard


def to_amount(value: Amount) -> Decimal:
    """
    Parse a job amount into a positive Decimal in whole cents

    Raises:
        InvalidAmount: if the value is not a finite number greater than zero,
            or has fractions of a cent
    """
    try:
        amount = Decimal(str(value))
        cents = amount.quantize(CENT) if amount.is_finite() else None
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Job amount {value!r} is not a number")
    if cents is None or amount <= 0:
        raise InvalidAmount(f"Job amount must be positive (got {value})", {"job_amount": str(value)})
    if cents != amount:
        raise InvalidAmount(f"Job amount must be in whole cents (got {value})", {"job_amount": str(value)})
    return cents


def compute_commission(job_amount: Decimal, rate: Decimal) -> Decimal:
    """job_amount * rate rounded half-up to cents"""
    return (job_amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)


class CommissionCalculator:
    """Records the commission owed for each completed job"""

    def __init__(self, db: Session, rates: CommissionRates):
        self.db = db
        self.rates = rates

    def calculate(self, job_id: str, employer_id: str, worker_id: str, job_amount: Amount) -> Decimal:
        """
        Compute and record the commission for a completed job

        Returns:
            Commission amount in currency units (2 decimal places)
        """
        return self.record(job_id, employer_id, worker_id, job_amount).commission_amount

    def record(self, job_id: str, employer_id: str, worker_id: str, job_amount: Amount) -> JobTransaction:
        """
        Insert the pending JobTransaction for a completed job

        A job that was already recorded returns its existing transaction.

        Raises:
            InvalidAmount: non-positive or non-numeric amount
            AccountNotFound: unknown employer
            PersistenceError: the insert failed
        """
        amount = to_amount(job_amount)

        employer = self.db.query(Account).filter(Account.id == employer_id).first()
        if not employer:
            raise AccountNotFound(employer_id)

        existing = self._find(job_id)
        if existing:
            logger.info(f"Commission for job {job_id} already recorded ({existing.commission_amount})")
            return existing

        rate = self.rates.rate_for(employer.is_premium)
        transaction = JobTransaction(
            job_id=job_id,
            employer_account_id=employer_id,
            worker_account_id=worker_id,
            job_amount=amount,
            commission_rate=rate.quantize(RATE_PLACES),
            commission_amount=compute_commission(amount, rate),
            status=JobTransactionStatus.PENDING.value,
        )
        self.db.add(transaction)

        try:
            self.db.commit()
        except IntegrityError:
            # Same job recorded concurrently
            self.db.rollback()
            existing = self._find(job_id)
            if existing:
                return existing
            raise PersistenceError(f"Failed to record commission for job {job_id}")
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to record commission for job {job_id}") from e

        logger.info(
            f"Recorded commission {transaction.commission_amount} ({rate}) for job {job_id}, "
            f"employer {employer_id}"
        )
        return transaction

    def _find(self, job_id: str):
        return self.db.query(JobTransaction).filter(JobTransaction.job_id == job_id).first()
