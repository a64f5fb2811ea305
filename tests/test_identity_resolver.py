"""
Tests for customer identity resolution
"""
import pytest

from mutuus_billing.db.models import Account
from mutuus_billing.exceptions import AccountNotFound, ExternalProviderError
from mutuus_billing.services.identity_resolver import CustomerIdentityResolver


class TestCustomerIdentityResolver:
    """Test lazy creation of provider customers"""

    def test_creates_and_stores_customer(self, db_session, gateway, make_account):
        make_account("acct_1", email="a@example.com")

        customer_id = CustomerIdentityResolver(db_session, gateway).resolve("acct_1")

        assert customer_id.startswith("cus_")
        assert gateway.calls == [("create_customer", "customer-acct_1")]
        stored = db_session.query(Account).filter_by(id="acct_1").one()
        assert stored.external_customer_id == customer_id

    def test_existing_customer_skips_provider(self, db_session, gateway, make_account):
        make_account("acct_1", external_customer_id="cus_existing")

        customer_id = CustomerIdentityResolver(db_session, gateway).resolve("acct_1")

        assert customer_id == "cus_existing"
        assert gateway.calls == []

    def test_repeated_resolution_is_stable(self, db_session, gateway, make_account):
        make_account("acct_1")
        resolver = CustomerIdentityResolver(db_session, gateway)

        first = resolver.resolve("acct_1")
        second = resolver.resolve("acct_1")

        assert first == second
        assert gateway.count("create_customer") == 1

    def test_unknown_account(self, db_session, gateway):
        with pytest.raises(AccountNotFound):
            CustomerIdentityResolver(db_session, gateway).resolve("missing")
        assert gateway.calls == []

    def test_concurrent_resolver_wins(self, db_session, session_factory, gateway, make_account):
        """A resolver that loses the compare-and-set returns the stored id"""
        make_account("acct_1")
        original_create = gateway.create_customer

        def racing_create(email, metadata=None, idempotency_key=None):
            # Another request stores its customer while ours is in flight
            other = session_factory()
            try:
                winner = other.query(Account).filter_by(id="acct_1").one()
                winner.external_customer_id = "cus_winner"
                other.commit()
            finally:
                other.close()
            return original_create(email, metadata=metadata, idempotency_key=idempotency_key)

        gateway.create_customer = racing_create

        customer_id = CustomerIdentityResolver(db_session, gateway).resolve("acct_1")

        assert customer_id == "cus_winner"
        db_session.expire_all()
        assert db_session.query(Account).filter_by(id="acct_1").one().external_customer_id == "cus_winner"

    def test_provider_failure_stores_nothing(self, db_session, gateway, make_account):
        make_account("acct_1")
        gateway.failures["create_customer"] = [ExternalProviderError("down", retryable=True)]

        with pytest.raises(ExternalProviderError):
            CustomerIdentityResolver(db_session, gateway).resolve("acct_1")

        db_session.expire_all()
        assert db_session.query(Account).filter_by(id="acct_1").one().external_customer_id is None
