"""FastAPI middleware components."""

from salonbilling.api.middleware.exception_handler import setup_exception_handlers
from salonbilling.api.middleware.logging import LoggingMiddleware
from salonbilling.api.middleware.metrics import MetricsMiddleware

__all__ = [
    "LoggingMiddleware",
    "MetricsMiddleware",
    "setup_exception_handlers",
]
