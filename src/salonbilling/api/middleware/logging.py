"""Request logging middleware.

Every log line emitted while a request is handled carries the correlation
id, the salon and, for lifecycle calls, the client's idempotency key.
"""

from __future__ import annotations

import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from salonbilling.core.logging import (
    bind_contextvars,
    clear_contextvars,
    get_logger,
    set_correlation_id,
)

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"
TENANT_HEADER = "X-Salon-Id"
IDEMPOTENCY_HEADER = "Idempotency-Key"

# Probed every few seconds by the orchestrator and Prometheus.
QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def client_ip(request: Request) -> str | None:
    """First hop of ``X-Forwarded-For`` when behind the platform gateway."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


class LoggingMiddleware(BaseHTTPMiddleware):
    """Structured request logging with correlation ids."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        clear_contextvars()
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        request_id = uuid4().hex
        bind_contextvars(
            correlation_id=correlation_id,
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            salon_id=request.headers.get(TENANT_HEADER),
            idempotency_key=request.headers.get(IDEMPOTENCY_HEADER),
            client_ip=client_ip(request),
        )

        started = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            if response.status_code >= 500:
                logger.error(
                    "request_completed", status_code=response.status_code, duration_ms=elapsed_ms
                )
            elif request.url.path not in QUIET_PATHS:
                log = logger.warning if response.status_code >= 400 else logger.info
                log("request_completed", status_code=response.status_code, duration_ms=elapsed_ms)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        except Exception as exc:
            logger.exception(
                "request_failed",
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                error_type=type(exc).__name__,
            )
            raise
        finally:
            clear_contextvars()
