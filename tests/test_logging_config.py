"""
Tests for request-labelled logging
"""
import logging
from datetime import datetime
from unittest.mock import patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from mutuus_billing.logging_config import (
    RequestContextFilter,
    RequestIDMiddleware,
    bind_request_id,
    get_request_id,
)
from mutuus_billing.services.monthly_aggregator import MonthlyAggregator


def make_record(message="hello"):
    return logging.LogRecord("mutuus_billing.test", logging.INFO, __file__, 1, message, None, None)


class TestRequestContextFilter:
    """Test labels added to log records"""

    def test_labels_outside_a_request(self):
        record = make_record()

        assert RequestContextFilter(env="test").filter(record) is True
        assert record.env == "test"
        assert record.request_id == "-"
        assert record.provider_request_id == "-"

    def test_labels_inside_a_request(self):
        record = make_record()

        with bind_request_id("req_1", "req_stripe_9"):
            RequestContextFilter(env="prod").filter(record)

        assert record.request_id == "req_1"
        assert record.provider_request_id == "req_stripe_9"
        assert get_request_id() is None


class TestRequestIDMiddleware:
    """Test request id binding per HTTP request"""

    def _client(self, seen):
        app = FastAPI()
        app.add_middleware(RequestIDMiddleware)

        @app.get("/echo")
        def echo():
            record = make_record()
            RequestContextFilter().filter(record)
            seen.append(record)
            return {}

        return TestClient(app)

    def test_stripe_request_id_is_logged_next_to_request_id(self):
        seen = []

        response = self._client(seen).get(
            "/echo", headers={"X-Request-ID": "req_1", "Stripe-Request-Id": "req_stripe_9"}
        )

        assert response.headers["X-Request-ID"] == "req_1"
        assert seen[0].request_id == "req_1"
        assert seen[0].provider_request_id == "req_stripe_9"

    def test_request_id_generated_when_missing(self):
        seen = []

        response = self._client(seen).get("/echo")

        assert response.headers["X-Request-ID"] == seen[0].request_id
        assert seen[0].request_id != "-"
        assert seen[0].provider_request_id == "-"


class TestScheduledRunLabel:
    """Test the request id bound for scheduled aggregation runs"""

    def test_run_is_labelled_with_its_period(self, session_factory, gateway, test_config):
        aggregator = MonthlyAggregator(session_factory, gateway, test_config, clock=lambda: datetime(2026, 1, 1))
        seen = []

        def employers(*args):
            seen.append(get_request_id())
            return []

        with patch.object(aggregator, "_employers_to_bill", side_effect=employers):
            aggregator.run()

        assert seen == ["aggregation-2025-12"]
        assert get_request_id() is None
