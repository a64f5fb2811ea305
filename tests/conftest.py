"""
Pytest configuration and fixtures
"""
import hashlib
import hmac
import json
import os
import sys
import time
from datetime import date, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Add src to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Set test environment variables before importing
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRIPE_TEST_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_TEST_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce log noise in tests

# Import after setting env vars
from mutuus_billing.app import create_app
from mutuus_billing.config import Config
from mutuus_billing.db.base import Base
from mutuus_billing.db.engine import create_db_engine, create_session_factory
from mutuus_billing.db.models import Account
from mutuus_billing.services.billing_gateway import BillingGateway
from mutuus_billing.services.metrics import get_metrics_collector

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(BillingGateway):
    """
    In-memory payment provider

    Records every call; ``failures`` maps an operation name to a list of
    exceptions raised (in order) before the operation starts succeeding.
    """

    def __init__(self):
        self.calls = []
        self.customers = {}
        self.invoices = {}
        self.failures = {}
        self._counter = 0

    def _next_id(self, prefix):
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _maybe_fail(self, operation):
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def create_customer(self, email, metadata=None, idempotency_key=None):
        self.calls.append(("create_customer", idempotency_key))
        self._maybe_fail("create_customer")
        # Stripe returns the same customer for a repeated idempotency key
        if idempotency_key and idempotency_key in self.customers:
            return {"customer_id": self.customers[idempotency_key], "provider": "fake"}
        customer_id = self._next_id("cus")
        if idempotency_key:
            self.customers[idempotency_key] = customer_id
        return {"customer_id": customer_id, "provider": "fake"}

    def create_checkout_session(self, customer_id, price_id, mode, success_url, cancel_url, metadata=None):
        self.calls.append(("create_checkout_session", customer_id, price_id, mode, metadata))
        self._maybe_fail("create_checkout_session")
        session_id = self._next_id("cs")
        return {"session_id": session_id, "url": f"https://checkout.test/{session_id}", "mode": mode}

    def cancel_subscription(self, subscription_id):
        self.calls.append(("cancel_subscription", subscription_id))
        self._maybe_fail("cancel_subscription")
        return {
            "subscription_id": subscription_id,
            "status": "active",
            "cancel_at_period_end": True,
            "provider": "fake",
        }

    def find_commission_invoice(self, idempotency_key):
        self.calls.append(("find_commission_invoice", idempotency_key))
        self._maybe_fail("find_commission_invoice")
        return self.invoices.get(idempotency_key)

    def create_commission_invoice(self, customer_id, amount_cents, currency, description,
                                  idempotency_key, days_until_due, metadata=None):
        self.calls.append(("create_commission_invoice", customer_id, amount_cents, currency, idempotency_key))
        self._maybe_fail("create_commission_invoice")
        if idempotency_key not in self.invoices:
            self.invoices[idempotency_key] = {
                "invoice_id": self._next_id("in"),
                "status": "open",
                "due_date": date(2026, 1, 1) + timedelta(days=days_until_due),
                "provider": "fake",
                "amount_cents": amount_cents,
                "auto_advance": True,
                "customer_id": customer_id,
            }
        return self.invoices[idempotency_key]

    def pay_invoice(self, invoice_id):
        self.calls.append(("pay_invoice", invoice_id))
        self._maybe_fail("pay_invoice")
        return {"invoice_id": invoice_id, "status": "paid", "due_date": None, "provider": "fake"}

    def count(self, operation):
        return sum(1 for call in self.calls if call[0] == operation)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header for ``payload``"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_id: str, event_type: str, obj: dict, created: int = None) -> str:
    """Serialized Stripe event envelope"""
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": {"object": obj},
    })


@pytest.fixture
def test_config():
    """Configuration for tests"""
    return Config()


@pytest.fixture
def engine(test_config):
    """In-memory SQLite engine shared by every session of a test"""
    test_engine = create_db_engine(test_config)
    Base.metadata.create_all(bind=test_engine)

    yield test_engine

    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    """Database session for a test"""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_account(db_session):
    """Factory creating committed accounts"""
    def _make(account_id="acct_1", **fields):
        fields.setdefault("email", f"{account_id}@example.com")
        account = Account(id=account_id, **fields)
        db_session.add(account)
        db_session.commit()
        return account
    return _make


@pytest.fixture
def app(test_config, gateway, session_factory):
    return create_app(config=test_config, gateway=gateway, session_factory=session_factory)


@pytest.fixture
def client(app):
    """Create test client"""
    return TestClient(app)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Reset metrics before each test"""
    get_metrics_collector().reset()
    yield
