"""
Monthly Aggregator - consolidates pending commissions into monthly invoices

Each employer is billed in its own unit of work:

1. reserve: get-or-create the MonthlyInvoice for (employer, month) in
   ``requested`` state and attach the employer's pending transactions to it
2. resolve the employer's Stripe customer
3. find-or-create the provider invoice under the invoice's idempotency key,
   finishing a draft left without its line item by an earlier run
4. complete: store the provider invoice, move the invoice to ``processing``
   and the attached transactions to ``collected``

A unit that fails after step 1 leaves a ``requested`` invoice behind; the
next run picks it up again and replays steps 2-4 with the same key.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, List, Optional
import logging
import threading

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..db.models import InvoicePaymentStatus, JobTransaction, JobTransactionStatus, MonthlyInvoice
from ..exceptions import BillingError, PersistenceError
from ..logging_config import bind_request_id, get_request_id
from ..timeutils import month_bounds, previous_month_key, utcnow
from .billing_gateway import BillingGateway, is_complete_invoice
from .identity_resolver import CustomerIdentityResolver
from .metrics import Timer, increment_counter

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class AggregationReport:
    """Outcome of one aggregation run"""
    period: str
    invoiced: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    interrupted: bool = False

    def to_dict(self) -> dict:
        return {
            "period": self.period,
            "invoiced": list(self.invoiced),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "errors": dict(self.errors),
            "interrupted": self.interrupted,
        }


@dataclass(frozen=True)
class _Reservation:
    invoice_id: int
    idempotency_key: str
    employer_account_id: str
    month_key: str
    total_commission: Decimal
    total_jobs: int


class MonthlyAggregator:
    """Bills every employer's commissions of a closed month"""

    def __init__(
        self,
        session_factory: Callable,
        gateway: BillingGateway,
        config,
        clock: Callable[[], datetime] = utcnow,
        stop_event: Optional[threading.Event] = None
    ):
        """
        Args:
            session_factory: Callable returning a new SQLAlchemy session
            gateway: Payment provider gateway
            config: Config object (currency, invoice terms)
            clock: Returns the current naive UTC time
            stop_event: Set to stop the run between two employers
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.config = config
        self.clock = clock
        self.stop_event = stop_event or threading.Event()

    def stop(self):
        """Request a graceful stop after the current employer"""
        self.stop_event.set()

    def run(self, now: Optional[datetime] = None) -> AggregationReport:
        """Aggregate the calendar month before ``now``"""
        now = now or self.clock()
        return self.run_period(previous_month_key(now))

    def run_period(self, month_key: str) -> AggregationReport:
        """
        Aggregate one YYYY-MM period (also used for manual replays)

        Raises:
            ValueError: invalid month key
            PersistenceError: the employer scan failed
        """
        start, end = month_bounds(month_key)
        report = AggregationReport(period=month_key)

        run_id = get_request_id() or f"aggregation-{month_key}"
        with bind_request_id(run_id), Timer("commission_aggregation_seconds"):
            employers = self._employers_to_bill(month_key, start, end)
            logger.info(f"Aggregating commissions for {month_key}: {len(employers)} employer(s)")

            for employer_id in employers:
                if self.stop_event.is_set():
                    logger.warning(f"Aggregation for {month_key} stopped before employer {employer_id}")
                    report.interrupted = True
                    break

                try:
                    billed = self._bill_employer(employer_id, month_key, start, end)
                except BillingError as e:
                    logger.error(f"Commission invoice for {employer_id} ({month_key}) failed: {e.message}")
                    report.failed.append(employer_id)
                    report.errors[employer_id] = e.message
                    continue
                except Exception as e:
                    logger.error(
                        f"Commission invoice for {employer_id} ({month_key}) failed: {e}",
                        exc_info=True
                    )
                    report.failed.append(employer_id)
                    report.errors[employer_id] = str(e)
                    continue

                if billed:
                    report.invoiced.append(employer_id)
                else:
                    report.skipped.append(employer_id)

        increment_counter("commission_invoices_total", len(report.invoiced), labels={"outcome": "invoiced"})
        increment_counter("commission_invoices_total", len(report.failed), labels={"outcome": "failed"})
        logger.info(
            f"Aggregation for {month_key} finished: {len(report.invoiced)} invoiced, "
            f"{len(report.failed)} failed, {len(report.skipped)} skipped"
        )
        return report

    def _employers_to_bill(self, month_key: str, start: datetime, end: datetime) -> List[str]:
        db = self.session_factory()
        try:
            pending = db.query(JobTransaction.employer_account_id).filter(
                JobTransaction.status == JobTransactionStatus.PENDING.value,
                JobTransaction.monthly_invoice_id.is_(None),
                JobTransaction.created_at >= start,
                JobTransaction.created_at < end,
            ).distinct().all()

            resuming = db.query(MonthlyInvoice.employer_account_id).filter(
                MonthlyInvoice.month_key == month_key,
                MonthlyInvoice.payment_status == InvoicePaymentStatus.REQUESTED.value,
            ).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list employers for {month_key}") from e
        finally:
            db.close()

        return sorted({row[0] for row in pending} | {row[0] for row in resuming})

    def _bill_employer(self, employer_id: str, month_key: str, start: datetime, end: datetime) -> bool:
        reservation = self._reserve(employer_id, month_key, start, end)
        if reservation is None:
            return False

        amount_cents = int((reservation.total_commission * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        if amount_cents <= 0:
            # Nothing to collect at the provider
            self._complete(reservation, None)
            return True

        db = self.session_factory()
        try:
            customer_id = CustomerIdentityResolver(db, self.gateway).resolve(employer_id)
        finally:
            db.close()

        provider_invoice = self.gateway.find_commission_invoice(reservation.idempotency_key)
        if is_complete_invoice(provider_invoice, amount_cents):
            logger.info(
                f"Reusing Stripe invoice {provider_invoice['invoice_id']} for {reservation.idempotency_key}"
            )
        else:
            if provider_invoice:
                logger.warning(
                    f"Stripe invoice {provider_invoice['invoice_id']} for {reservation.idempotency_key} "
                    f"is incomplete ({provider_invoice.get('amount_cents')} of {amount_cents}); completing it"
                )
            provider_invoice = self.gateway.create_commission_invoice(
                customer_id=customer_id,
                amount_cents=amount_cents,
                currency=self.config.CURRENCY,
                description=f"Commission {month_key}",
                idempotency_key=reservation.idempotency_key,
                days_until_due=self.config.INVOICE_DAYS_UNTIL_DUE,
                metadata={
                    "employer_account_id": employer_id,
                    "month_key": month_key,
                    "monthly_invoice_id": str(reservation.invoice_id),
                    "total_jobs": str(reservation.total_jobs),
                },
            )

        self._complete(reservation, provider_invoice)
        return True

    def _reserve(self, employer_id: str, month_key: str, start: datetime, end: datetime) -> Optional[_Reservation]:
        db = self.session_factory()
        try:
            invoice = db.query(MonthlyInvoice).filter(
                MonthlyInvoice.employer_account_id == employer_id,
                MonthlyInvoice.month_key == month_key,
            ).with_for_update().first()

            unreserved = db.query(JobTransaction).filter(
                JobTransaction.employer_account_id == employer_id,
                JobTransaction.status == JobTransactionStatus.PENDING.value,
                JobTransaction.monthly_invoice_id.is_(None),
                JobTransaction.created_at >= start,
                JobTransaction.created_at < end,
            )

            if invoice is not None:
                leftovers = unreserved.count()
                if leftovers:
                    logger.warning(
                        f"{leftovers} pending transaction(s) of {employer_id} for {month_key} arrived after "
                        f"invoice {invoice.idempotency_key} was reserved; left pending"
                    )
                if invoice.payment_status != InvoicePaymentStatus.REQUESTED.value:
                    logger.info(f"Invoice {invoice.idempotency_key} already {invoice.payment_status}; skipping")
                    return None
                attached = db.query(JobTransaction).filter(JobTransaction.monthly_invoice_id == invoice.id).all()
                logger.info(f"Resuming requested invoice {invoice.idempotency_key}")
            else:
                attached = unreserved.with_for_update().all()
                if not attached:
                    return None
                invoice = MonthlyInvoice(
                    employer_account_id=employer_id,
                    month_key=month_key,
                    currency=self.config.CURRENCY,
                    payment_status=InvoicePaymentStatus.REQUESTED.value,
                    idempotency_key=MonthlyInvoice.build_idempotency_key(employer_id, month_key),
                )
                db.add(invoice)
                db.flush()
                for transaction in attached:
                    transaction.monthly_invoice_id = invoice.id

            invoice.total_commission = sum(
                (Decimal(t.commission_amount) for t in attached), Decimal("0.00")
            ).quantize(CENT, rounding=ROUND_HALF_UP)
            invoice.total_jobs = len(attached)
            db.commit()

            return _Reservation(
                invoice_id=invoice.id,
                idempotency_key=invoice.idempotency_key,
                employer_account_id=employer_id,
                month_key=month_key,
                total_commission=invoice.total_commission,
                total_jobs=invoice.total_jobs,
            )
        except IntegrityError as e:
            db.rollback()
            raise PersistenceError(f"Invoice for {employer_id} ({month_key}) reserved concurrently") from e
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to reserve invoice for {employer_id} ({month_key})") from e
        finally:
            db.close()

    def _complete(self, reservation: _Reservation, provider_invoice: Optional[dict]):
        db = self.session_factory()
        try:
            invoice = db.query(MonthlyInvoice).filter(
                MonthlyInvoice.id == reservation.invoice_id
            ).with_for_update().one()
            now = self.clock()

            if provider_invoice is None:
                invoice.payment_status = InvoicePaymentStatus.PAID.value
            else:
                invoice.external_invoice_id = provider_invoice["invoice_id"]
                invoice.due_date = provider_invoice.get("due_date") or (
                    now.date() + timedelta(days=self.config.INVOICE_DAYS_UNTIL_DUE)
                )
                # A payment webhook may already have moved it on
                if invoice.payment_status == InvoicePaymentStatus.REQUESTED.value:
                    invoice.payment_status = InvoicePaymentStatus.PROCESSING.value

            collected = db.query(JobTransaction).filter(
                JobTransaction.monthly_invoice_id == invoice.id,
                JobTransaction.status == JobTransactionStatus.PENDING.value,
            ).update(
                {
                    JobTransaction.status: JobTransactionStatus.COLLECTED.value,
                    JobTransaction.collected_at: now,
                },
                synchronize_session=False,
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to complete invoice {reservation.idempotency_key}") from e
        finally:
            db.close()

        logger.info(
            f"Invoice {reservation.idempotency_key}: {reservation.total_commission} {self.config.CURRENCY} "
            f"for {collected} job(s), Stripe invoice "
            f"{provider_invoice['invoice_id'] if provider_invoice else 'not required'}"
        )
