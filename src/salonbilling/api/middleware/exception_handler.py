"""Exception handlers for FastAPI.

Every error leaves the API in the same envelope::

    {"success": false, "error": {"code", "message", "details"}, "correlation_id"}

Entitlement denials put the stable denial code, the tenant's tier, the tier
that would unlock the request and the upgrade link into ``details``.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from salonbilling.core.exceptions import (
    EntitlementDeniedError,
    ErrorCode,
    PaymentProcessorError,
    SalonBillingException,
    get_http_status_for_exception,
)
from salonbilling.core.logging import get_correlation_id, get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = get_logger(__name__)

# Seconds a client should wait before resending a retryable processor failure.
PROCESSOR_RETRY_AFTER = "5"

_STATUS_CODES: dict[int, ErrorCode] = {
    HTTPStatus.BAD_REQUEST: ErrorCode.INVALID_INPUT,
    HTTPStatus.UNAUTHORIZED: ErrorCode.TENANT_REQUIRED,
    HTTPStatus.FORBIDDEN: ErrorCode.ENTITLEMENT_DENIED,
    HTTPStatus.NOT_FOUND: ErrorCode.RESOURCE_NOT_FOUND,
    HTTPStatus.METHOD_NOT_ALLOWED: ErrorCode.INVALID_INPUT,
    HTTPStatus.CONFLICT: ErrorCode.INVALID_TRANSITION,
    HTTPStatus.BAD_GATEWAY: ErrorCode.PAYMENT_PROCESSOR_ERROR,
    HTTPStatus.SERVICE_UNAVAILABLE: ErrorCode.CIRCUIT_BREAKER_OPEN,
    HTTPStatus.GATEWAY_TIMEOUT: ErrorCode.PROCESSOR_TIMEOUT,
}


def error_envelope(
    code: ErrorCode | str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the error body. Empty ``details`` are left out."""
    error: dict[str, Any] = {"code": getattr(code, "value", code), "message": message}
    if details:
        error["details"] = details
    body: dict[str, Any] = {"success": False, "error": error}
    correlation_id = get_correlation_id()
    if correlation_id:
        body["correlation_id"] = correlation_id
    return body


async def billing_error_handler(request: Request, exc: SalonBillingException) -> JSONResponse:
    status = exc.http_status.value
    if isinstance(exc, EntitlementDeniedError):
        # Denials are routine; the gate already logged the decision.
        logger.info("entitlement_denied_response", code=exc.code, path=request.url.path)
    else:
        log = logger.error if status >= 500 else logger.warning
        log(
            "billing_error",
            error_code=exc.error_code.value,
            error_message=exc.message,
            http_status=status,
            path=request.url.path,
            details=exc.details,
        )

    headers = None
    if isinstance(exc, PaymentProcessorError) and exc.retryable:
        headers = {"Retry-After": PROCESSOR_RETRY_AFTER}

    return JSONResponse(
        status_code=status,
        content=error_envelope(exc.error_code, exc.user_message, exc.details),
        headers=headers,
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Field-level errors, addressed like ``body.amount`` or ``query.staff_count``."""
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        "request_validation_failed",
        path=request.url.path,
        error_count=len(errors),
        errors=errors[:5],
    )
    return JSONResponse(
        status_code=HTTPStatus.BAD_REQUEST,
        content=error_envelope(
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed",
            {"validation_errors": errors},
        ),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown routes and disallowed methods, in the same envelope."""
    code = _STATUS_CODES.get(exc.status_code, ErrorCode.UNKNOWN_ERROR)
    logger.warning(
        "http_error", status_code=exc.status_code, detail=exc.detail, path=request.url.path
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(code, str(exc.detail) if exc.detail else "An error occurred"),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception",
        error_type=type(exc).__name__,
        error_message=str(exc),
        path=request.url.path,
    )
    return JSONResponse(
        status_code=get_http_status_for_exception(exc).value,
        content=error_envelope(
            ErrorCode.INTERNAL_ERROR,
            "An unexpected error occurred. Please try again later.",
        ),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the envelope handlers on ``app``."""
    app.add_exception_handler(SalonBillingException, billing_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
