"""Request metrics middleware."""

import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from salonbilling.api.middleware.logging import QUIET_PATHS
from salonbilling.core.metrics import active_requests, request_latency_seconds, request_total


def route_template(request: Request) -> str:
    """Matched route pattern, so ``/subscriptions/{salon_id}`` stays one label."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Latency, request count and in-flight gauge per route.

    Probe and scrape paths are not counted.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in QUIET_PATHS:
            return await call_next(request)

        active_requests.inc()
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            endpoint = route_template(request)
            request_latency_seconds.labels(endpoint=endpoint, method=request.method).observe(
                time.perf_counter() - started
            )
            request_total.labels(
                endpoint=endpoint, method=request.method, status=str(status_code)
            ).inc()
            active_requests.dec()
