"""
Logging setup - every record is labelled with the environment and the id of
the request (or scheduled run) it was emitted for
"""
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(env)s] [%(request_id)s|%(provider_request_id)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "apscheduler": logging.WARNING,
    "stripe": logging.WARNING,
}

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_provider_request_id: ContextVar[Optional[str]] = ContextVar("provider_request_id", default=None)


def get_request_id() -> Optional[str]:
    return _request_id.get()


@contextmanager
def bind_request_id(request_id: str, provider_request_id: Optional[str] = None) -> Iterator[str]:
    """Label log records emitted inside the block with ``request_id``"""
    token = _request_id.set(request_id)
    provider_token = _provider_request_id.set(provider_request_id)
    try:
        yield request_id
    finally:
        _provider_request_id.reset(provider_token)
        _request_id.reset(token)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Bind a request id for the duration of each request

    The caller's ``X-Request-ID`` is honoured and echoed back. Webhook
    deliveries also carry Stripe's ``Stripe-Request-Id``, kept next to it in
    the logs so a delivery can be traced in the Stripe dashboard.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        with bind_request_id(request_id, request.headers.get("Stripe-Request-Id")):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        return response


class RequestContextFilter(logging.Filter):
    """Copy the bound request ids and the environment onto each record"""

    def __init__(self, env: str = "dev"):
        super().__init__()
        self.env = env

    def filter(self, record: logging.LogRecord) -> bool:
        record.env = self.env
        record.request_id = _request_id.get() or "-"
        record.provider_request_id = _provider_request_id.get() or "-"
        return True


def setup_logging(env: str = "dev", log_level: str = "INFO") -> logging.Logger:
    """
    Send all logging to stdout with request and environment labels

    Args:
        env: Environment name (dev, test, staging, prod)
        log_level: Root level name; unknown names fall back to INFO
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(RequestContextFilter(env))
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    return root_logger
