"""
Billing exception taxonomy and FastAPI exception handlers
Standardized error response format: { code, message, details?, request_id }
"""
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
from typing import Optional, Dict, Any

from .logging_config import get_request_id

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for billing subsystem errors"""

    code = "BILLING_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class VerificationError(BillingError):
    """Webhook payload is unsigned, wrongly signed or malformed"""

    code = "WEBHOOK_VERIFICATION_FAILED"
    status_code = status.HTTP_400_BAD_REQUEST


class AccountNotFound(BillingError):
    """No account matches the given identifier"""

    code = "ACCOUNT_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found", {"account_id": account_id})
        self.account_id = account_id


class InvalidAmount(BillingError):
    """Job amount is not a positive, finite number"""

    code = "INVALID_AMOUNT"
    status_code = status.HTTP_400_BAD_REQUEST


class NoActiveSubscription(BillingError):
    """Account has no provider subscription to act on"""

    code = "NO_SUBSCRIPTION"
    status_code = status.HTTP_400_BAD_REQUEST


class UnknownProduct(BillingError):
    """Requested points package does not exist"""

    code = "UNKNOWN_PRODUCT"
    status_code = status.HTTP_400_BAD_REQUEST


class InvoiceNotFound(BillingError):
    """No monthly invoice with the given id"""

    code = "INVOICE_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class InvoiceNotPayable(BillingError):
    """Invoice has no provider invoice yet or is already paid"""

    code = "INVOICE_NOT_PAYABLE"
    status_code = status.HTTP_409_CONFLICT


class ExternalProviderError(BillingError):
    """
    Payment provider call failed

    ``retryable`` is True for timeouts, connection errors, rate limits and
    provider-side 5xx responses.
    """

    code = "PAYMENT_PROVIDER_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, retryable: bool = False, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.retryable = retryable


class PersistenceError(BillingError):
    """Database read or write failed"""

    code = "PERSISTENCE_ERROR"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ErrorResponse:
    """
    Standard error response format

    Schema: { code, message, details?, request_id }
    """

    @staticmethod
    def create(
        message: str,
        code: str,
        status_code: int,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> dict:
        if request_id is None:
            request_id = get_request_id()

        response = {
            "code": code,
            "message": message,
            "status_code": status_code,
        }
        if request_id:
            response["request_id"] = request_id
        if details:
            response["details"] = details
        return response


async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render domain errors with their own status code"""
    request_id = get_request_id()

    if exc.status_code >= 500:
        logger.error(
            f"{exc.code}: {exc.message}",
            extra={"request_id": request_id, "path": request.url.path}
        )
    else:
        logger.warning(
            f"{exc.code}: {exc.message}",
            extra={"request_id": request_id, "path": request.url.path}
        )

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse.create(
            message=exc.message,
            code=exc.code,
            status_code=exc.status_code,
            request_id=request_id,
            details=exc.details,
        )
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with request ID"""
    request_id = get_request_id()

    error_code_map = {
        400: "BAD_REQUEST",
        401: "AUTH_ERROR",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        500: "INTERNAL_ERROR",
        503: "SERVICE_UNAVAILABLE",
    }
    error_code = error_code_map.get(exc.status_code, "HTTP_ERROR")
    error_message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code} error"

    logger.warning(
        f"HTTP {exc.status_code}: {exc.detail}",
        extra={"request_id": request_id, "path": request.url.path}
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse.create(
            message=error_message,
            code=error_code,
            status_code=exc.status_code,
            request_id=request_id,
        )
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle validation exceptions with request ID"""
    request_id = get_request_id()

    errors = exc.errors()
    detail = "; ".join(f"{err['loc']}: {err['msg']}" for err in errors)

    logger.warning(
        f"Validation error: {detail}",
        extra={"request_id": request_id, "path": request.url.path}
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse.create(
            message=f"Validation error: {detail}",
            code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            request_id=request_id,
            details={"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in errors]},
        )
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle general exceptions with request ID"""
    request_id = get_request_id()

    logger.error(
        f"Unhandled exception: {str(exc)}",
        exc_info=exc,
        extra={"request_id": request_id, "path": request.url.path}
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse.create(
            message="Internal server error",
            code="INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            request_id=request_id,
        )
    )


def register_exception_handlers(app: FastAPI):
    """Attach all handlers to the application"""
    app.add_exception_handler(BillingError, billing_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
