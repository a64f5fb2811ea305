"""
Tests for commission calculator
"""
import pytest
from decimal import Decimal
from unittest.mock import Mock

from mutuus_billing.db.models import JobTransaction, JobTransactionStatus
from mutuus_billing.exceptions import AccountNotFound, InvalidAmount
from mutuus_billing.services.commission_calculator import (
    CommissionCalculator,
    CommissionRates,
    compute_commission,
    to_amount,
)


class TestCommissionMath:
    """Test rate selection and rounding"""

    def test_default_rates(self):
        rates = CommissionRates()
        assert rates.rate_for(True) == Decimal("0.05")
        assert rates.rate_for(False) == Decimal("0.098")

    def test_rates_from_config(self, test_config):
        rates = CommissionRates.from_config(test_config)
        assert rates.standard == Decimal("0.098")
        assert rates.premium == Decimal("0.05")

    def test_round_half_up_to_cents(self):
        assert compute_commission(Decimal("100.00"), Decimal("0.098")) == Decimal("9.80")
        assert compute_commission(Decimal("100.00"), Decimal("0.05")) == Decimal("5.00")
        # 10.25 * 0.098 = 1.0045
        assert compute_commission(Decimal("10.25"), Decimal("0.098")) == Decimal("1.00")
        # 0.10 * 0.05 = 0.005
        assert compute_commission(Decimal("0.10"), Decimal("0.05")) == Decimal("0.01")

    @pytest.mark.parametrize("value", [0, -1, "-0.01", "0.001", "10.005", "abc", "NaN", "Infinity", None])
    def test_invalid_amounts(self, value):
        with pytest.raises(InvalidAmount):
            to_amount(value)

    def test_amount_from_float_keeps_cents(self):
        assert to_amount(19.99) == Decimal("19.99")


class TestCommissionCalculator:
    """Test commission recording against the ledger"""

    @pytest.fixture
    def calculator(self, db_session):
        return CommissionCalculator(db_session, CommissionRates())

    def test_premium_employer_pays_five_percent(self, calculator, make_account):
        make_account("emp_premium", is_premium=True)

        commission = calculator.calculate("job_1", "emp_premium", "worker_1", Decimal("100.00"))

        assert commission == Decimal("5.00")

    def test_standard_employer_pays_standard_rate(self, calculator, make_account, db_session):
        make_account("emp_standard")

        commission = calculator.calculate("job_1", "emp_standard", "worker_1", "100.00")

        assert commission == Decimal("9.80")
        transaction = db_session.query(JobTransaction).filter_by(job_id="job_1").one()
        assert transaction.status == JobTransactionStatus.PENDING.value
        assert transaction.commission_rate == Decimal("0.0980")
        assert transaction.monthly_invoice_id is None

    def test_sub_cent_amount_records_nothing(self, calculator, make_account, db_session):
        make_account("emp_1")

        with pytest.raises(InvalidAmount):
            calculator.record("job_1", "emp_1", "worker_1", "0.001")

        assert db_session.query(JobTransaction).count() == 0

    def test_stored_row_is_consistent(self, calculator, make_account, db_session):
        make_account("emp_1")

        calculator.record("job_1", "emp_1", "worker_1", "10.5")

        db_session.expire_all()
        transaction = db_session.query(JobTransaction).filter_by(job_id="job_1").one()
        assert transaction.job_amount == Decimal("10.50")
        # 10.50 * 0.098 = 1.029
        assert transaction.commission_amount == Decimal("1.03")
        assert transaction.commission_amount == compute_commission(transaction.job_amount, transaction.commission_rate)

    def test_unknown_employer(self, calculator):
        with pytest.raises(AccountNotFound):
            calculator.calculate("job_1", "nobody", "worker_1", Decimal("100.00"))

    def test_invalid_amount_records_nothing(self, calculator, make_account, db_session):
        make_account("emp_1")

        with pytest.raises(InvalidAmount):
            calculator.calculate("job_1", "emp_1", "worker_1", Decimal("0"))

        assert db_session.query(JobTransaction).count() == 0

    def test_redelivered_job_returns_original_commission(self, calculator, make_account, db_session):
        account = make_account("emp_1")
        first = calculator.calculate("job_1", "emp_1", "worker_1", Decimal("100.00"))

        # Tier change between deliveries must not re-price the job
        account.is_premium = True
        db_session.commit()
        second = calculator.calculate("job_1", "emp_1", "worker_1", Decimal("100.00"))

        assert first == second == Decimal("9.80")
        assert db_session.query(JobTransaction).count() == 1

    def test_does_not_touch_account(self, calculator, make_account, db_session):
        account = make_account("emp_1", points_balance=10)
        version = account.version

        calculator.calculate("job_1", "emp_1", "worker_1", Decimal("50.00"))

        db_session.refresh(account)
        assert account.version == version
        assert account.points_balance == 10

    def test_commit_failure_is_rolled_back(self):
        from sqlalchemy.exc import OperationalError
        from mutuus_billing.exceptions import PersistenceError

        mock_db = Mock()
        employer = Mock()
        employer.is_premium = False
        mock_db.query().filter().first.side_effect = [employer, None]
        mock_db.commit.side_effect = OperationalError("INSERT", {}, Exception("disk full"))

        calculator = CommissionCalculator(mock_db, CommissionRates())
        with pytest.raises(PersistenceError):
            calculator.calculate("job_1", "emp_1", "worker_1", Decimal("10.00"))

        assert mock_db.rollback.called
