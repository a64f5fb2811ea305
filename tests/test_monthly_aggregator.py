"""
Tests for monthly commission aggregation
"""
import threading
import stripe
import pytest
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import Mock, patch

from mutuus_billing.db.models import (
    InvoicePaymentStatus,
    JobTransaction,
    JobTransactionStatus,
    MonthlyInvoice,
)
from mutuus_billing.exceptions import ExternalProviderError
from mutuus_billing.services.billing_gateway import StripeGateway
from mutuus_billing.services.commission_calculator import CommissionCalculator, CommissionRates
from mutuus_billing.services.monthly_aggregator import MonthlyAggregator
from mutuus_billing.services.scheduled_jobs import (
    MONTHLY_COMMISSION_JOB_ID,
    get_scheduler,
    run_monthly_commission_job,
    start_scheduler,
    stop_scheduler,
)

RUN_AT = datetime(2026, 1, 1, 0, 0, 0)
IN_PERIOD = datetime(2025, 12, 15, 10, 30, 0)


def add_transaction(db_session, job_id, employer_id, commission, created_at=IN_PERIOD, **fields):
    transaction = JobTransaction(
        job_id=job_id,
        employer_account_id=employer_id,
        worker_account_id="worker_1",
        job_amount=Decimal(commission) * 10,
        commission_rate=Decimal("0.098"),
        commission_amount=Decimal(commission),
        created_at=created_at,
        **fields
    )
    db_session.add(transaction)
    db_session.commit()
    return transaction


class TestMonthlyAggregator:
    """Test outbox-style invoicing"""

    @pytest.fixture
    def aggregator(self, session_factory, gateway, test_config):
        return MonthlyAggregator(session_factory, gateway, test_config, clock=lambda: RUN_AT)

    def test_end_to_end_standard_employer(self, aggregator, db_session, gateway, make_account):
        make_account("emp_1")
        calculator = CommissionCalculator(db_session, CommissionRates())
        assert calculator.calculate("job_1", "emp_1", "worker_1", Decimal("250.00")) == Decimal("24.50")
        db_session.query(JobTransaction).update({JobTransaction.created_at: IN_PERIOD})
        db_session.commit()

        report = aggregator.run()

        assert report.period == "2025-12"
        assert report.invoiced == ["emp_1"]
        assert report.failed == []

        create_calls = [c for c in gateway.calls if c[0] == "create_commission_invoice"]
        assert len(create_calls) == 1
        _, customer_id, amount_cents, currency, key = create_calls[0]
        assert amount_cents == 2450
        assert currency == "eur"
        assert key == "commission-emp_1-2025-12"

        db_session.expire_all()
        invoice = db_session.query(MonthlyInvoice).one()
        assert invoice.total_commission == Decimal("24.50")
        assert invoice.total_jobs == 1
        assert invoice.payment_status == InvoicePaymentStatus.PROCESSING.value
        assert invoice.external_invoice_id == gateway.invoices[key]["invoice_id"]
        assert invoice.due_date is not None

        transaction = db_session.query(JobTransaction).one()
        assert transaction.status == JobTransactionStatus.COLLECTED.value
        assert transaction.collected_at == RUN_AT
        assert transaction.monthly_invoice_id == invoice.id

    def test_sums_only_the_period(self, aggregator, db_session, gateway, make_account):
        make_account("emp_1")
        add_transaction(db_session, "job_dec_1", "emp_1", "10.00")
        add_transaction(db_session, "job_dec_2", "emp_1", "5.25", created_at=datetime(2025, 12, 31, 23, 59, 59))
        add_transaction(db_session, "job_nov", "emp_1", "7.00", created_at=datetime(2025, 11, 30, 23, 59, 59))
        add_transaction(db_session, "job_jan", "emp_1", "3.00", created_at=datetime(2026, 1, 1, 0, 0, 0))

        aggregator.run()

        db_session.expire_all()
        invoice = db_session.query(MonthlyInvoice).one()
        assert invoice.total_commission == Decimal("15.25")
        assert invoice.total_jobs == 2
        statuses = {t.job_id: t.status for t in db_session.query(JobTransaction).all()}
        assert statuses == {
            "job_dec_1": "collected",
            "job_dec_2": "collected",
            "job_nov": "pending",
            "job_jan": "pending",
        }

    def test_rerun_is_idempotent(self, aggregator, db_session, gateway, make_account):
        make_account("emp_1")
        add_transaction(db_session, "job_1", "emp_1", "24.50")

        aggregator.run()
        second = aggregator.run()

        assert second.invoiced == []
        assert gateway.count("create_commission_invoice") == 1
        db_session.expire_all()
        assert db_session.query(MonthlyInvoice).count() == 1

    def test_failure_is_isolated_and_resumed(self, aggregator, db_session, gateway, make_account):
        make_account("emp_a")
        make_account("emp_b")
        add_transaction(db_session, "job_a", "emp_a", "10.00")
        add_transaction(db_session, "job_b", "emp_b", "20.00")
        gateway.failures["create_commission_invoice"] = [
            ExternalProviderError("Stripe invoice creation failed: timeout", retryable=True)
        ]

        report = aggregator.run()

        assert report.failed == ["emp_a"]
        assert report.invoiced == ["emp_b"]
        assert "timeout" in report.errors["emp_a"]

        db_session.expire_all()
        invoice_a = db_session.query(MonthlyInvoice).filter_by(employer_account_id="emp_a").one()
        assert invoice_a.payment_status == InvoicePaymentStatus.REQUESTED.value
        job_a = db_session.query(JobTransaction).filter_by(job_id="job_a").one()
        assert job_a.status == JobTransactionStatus.PENDING.value
        assert job_a.monthly_invoice_id == invoice_a.id

        resumed = aggregator.run()

        assert resumed.invoiced == ["emp_a"]
        db_session.expire_all()
        invoice_a = db_session.query(MonthlyInvoice).filter_by(employer_account_id="emp_a").one()
        assert invoice_a.payment_status == InvoicePaymentStatus.PROCESSING.value
        assert db_session.query(MonthlyInvoice).count() == 2
        keys = [c[4] for c in gateway.calls if c[0] == "create_commission_invoice"]
        assert keys.count("commission-emp_a-2025-12") == 2
        assert keys.count("commission-emp_b-2025-12") == 1

    def test_crash_after_provider_call_reuses_invoice(self, aggregator, db_session, gateway, make_account):
        make_account("emp_1")
        add_transaction(db_session, "job_1", "emp_1", "24.50")

        with patch.object(MonthlyAggregator, "_complete", side_effect=RuntimeError("worker killed")):
            report = aggregator.run()
        assert report.failed == ["emp_1"]

        report = aggregator.run()

        assert report.invoiced == ["emp_1"]
        assert gateway.count("create_commission_invoice") == 1
        assert len(gateway.invoices) == 1
        db_session.expire_all()
        assert db_session.query(JobTransaction).one().status == JobTransactionStatus.COLLECTED.value

    def test_invoiced_month_is_never_rerequested(self, aggregator, db_session, gateway, make_account):
        make_account("emp_1")
        add_transaction(db_session, "job_1", "emp_1", "10.00")
        aggregator.run()

        # Late report for the already invoiced month
        add_transaction(db_session, "job_late", "emp_1", "4.00")
        report = aggregator.run()

        assert report.skipped == ["emp_1"]
        assert gateway.count("create_commission_invoice") == 1
        db_session.expire_all()
        late = db_session.query(JobTransaction).filter_by(job_id="job_late").one()
        assert late.status == JobTransactionStatus.PENDING.value
        assert late.monthly_invoice_id is None

    def test_zero_total_needs_no_provider_invoice(self, aggregator, db_session, gateway, make_account):
        make_account("emp_1")
        add_transaction(db_session, "job_tiny", "emp_1", "0.00")

        report = aggregator.run()

        assert report.invoiced == ["emp_1"]
        assert gateway.count("create_commission_invoice") == 0
        db_session.expire_all()
        assert db_session.query(MonthlyInvoice).one().payment_status == InvoicePaymentStatus.PAID.value

    def test_stop_event_interrupts_between_employers(self, session_factory, gateway, test_config,
                                                     db_session, make_account):
        make_account("emp_1")
        add_transaction(db_session, "job_1", "emp_1", "10.00")
        stop = threading.Event()
        stop.set()

        report = MonthlyAggregator(session_factory, gateway, test_config, stop_event=stop).run(now=RUN_AT)

        assert report.interrupted is True
        assert report.invoiced == []
        assert gateway.calls == []

    def test_manual_replay_of_explicit_month(self, aggregator, db_session, make_account):
        make_account("emp_1")
        add_transaction(db_session, "job_nov", "emp_1", "7.00", created_at=datetime(2025, 11, 3))

        report = aggregator.run_period("2025-11")

        assert report.invoiced == ["emp_1"]

    def test_invalid_month_key(self, aggregator):
        with pytest.raises(ValueError):
            aggregator.run_period("2025-13")

    def test_no_pending_commissions(self, aggregator, gateway):
        report = aggregator.run()
        assert report.to_dict() == {
            "period": "2025-12",
            "invoiced": [],
            "failed": [],
            "skipped": [],
            "errors": {},
            "interrupted": False,
        }
        assert gateway.calls == []


class TestStripeBackedResume:
    """Test resuming a month whose Stripe invoice was left half built"""

    @pytest.fixture
    def stripe_client(self):
        return Mock()

    @pytest.fixture
    def aggregator(self, session_factory, stripe_client, test_config):
        gateway = StripeGateway("sk_test_dummy", sleep=lambda delay: None, client=stripe_client)
        return MonthlyAggregator(session_factory, gateway, test_config, clock=lambda: RUN_AT)

    def test_empty_draft_is_completed_on_resume(self, aggregator, stripe_client, db_session, make_account):
        make_account("emp_1", external_customer_id="cus_1")
        add_transaction(db_session, "job_1", "emp_1", "24.50")
        empty_draft = SimpleNamespace(id="in_1", status="draft", total=0, auto_advance=False, due_date=None)
        stripe_client.invoices.search.return_value = SimpleNamespace(data=[])
        stripe_client.invoices.create.return_value = empty_draft
        stripe_client.invoice_items.create.side_effect = [
            stripe.InvalidRequestError("Customer has no default currency", param=None),
            SimpleNamespace(id="ii_1"),
        ]
        stripe_client.invoices.update.return_value = SimpleNamespace(
            id="in_1", status="draft", total=2450, auto_advance=True, due_date=None
        )

        report = aggregator.run()

        assert report.failed == ["emp_1"]
        assert not stripe_client.invoices.update.called
        db_session.expire_all()
        assert db_session.query(MonthlyInvoice).one().payment_status == InvoicePaymentStatus.REQUESTED.value
        assert db_session.query(JobTransaction).one().status == JobTransactionStatus.PENDING.value

        # Stripe now finds the empty draft by its idempotency key
        stripe_client.invoices.search.return_value = SimpleNamespace(data=[empty_draft])
        resumed = aggregator.run()

        assert resumed.invoiced == ["emp_1"]
        assert stripe_client.invoices.create.call_count == 1
        assert stripe_client.invoice_items.create.call_count == 2
        item = stripe_client.invoice_items.create.call_args.kwargs
        assert item["params"]["invoice"] == "in_1"
        assert item["params"]["amount"] == 2450
        assert item["options"] == {"idempotency_key": "commission-emp_1-2025-12-item"}
        assert stripe_client.invoices.update.call_args.kwargs["params"] == {"auto_advance": True}

        db_session.expire_all()
        invoice = db_session.query(MonthlyInvoice).one()
        assert invoice.payment_status == InvoicePaymentStatus.PROCESSING.value
        assert invoice.external_invoice_id == "in_1"
        assert db_session.query(JobTransaction).one().status == JobTransactionStatus.COLLECTED.value


class TestScheduledJobs:
    """Test scheduler wiring"""

    @pytest.fixture
    def aggregator(self, session_factory, gateway, test_config):
        return MonthlyAggregator(session_factory, gateway, test_config, clock=lambda: RUN_AT)

    def test_job_runs_aggregator(self, aggregator, db_session, make_account):
        make_account("emp_1")
        add_transaction(db_session, "job_1", "emp_1", "24.50")

        report = run_monthly_commission_job(aggregator)

        assert report.invoiced == ["emp_1"]

    def test_job_swallows_fatal_errors(self, aggregator):
        with patch.object(aggregator, "run", side_effect=RuntimeError("db down")):
            assert run_monthly_commission_job(aggregator) is None

    def test_monthly_trigger_registered(self, aggregator):
        start_scheduler(aggregator)
        try:
            job = get_scheduler().get_job(MONTHLY_COMMISSION_JOB_ID)
            assert job is not None
            assert "day='1'" in str(job.trigger)
            assert "hour='0'" in str(job.trigger)
            assert "minute='0'" in str(job.trigger)
        finally:
            stop_scheduler()

        assert aggregator.stop_event.is_set()
