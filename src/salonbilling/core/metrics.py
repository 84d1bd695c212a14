"""Prometheus metrics for the billing engine."""

from collections.abc import Iterator
from contextlib import contextmanager
from time import time

from prometheus_client import Counter, Gauge, Histogram

# Request metrics
request_latency_seconds = Histogram(
    "salonbilling_request_latency_seconds",
    "Latency of HTTP requests in seconds",
    ["endpoint", "method"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

request_total = Counter(
    "salonbilling_request_total",
    "Total number of HTTP requests",
    ["endpoint", "method", "status"],
)

active_requests = Gauge(
    "salonbilling_active_requests",
    "Number of active HTTP requests",
)

# Entitlement metrics
entitlement_decisions_total = Counter(
    "salonbilling_entitlement_decisions_total",
    "Entitlement gate decisions",
    ["check", "outcome"],
)

# Lifecycle metrics
lifecycle_operations_total = Counter(
    "salonbilling_lifecycle_operations_total",
    "Subscription lifecycle operations by outcome",
    ["operation", "outcome"],
)

# Payment processor metrics
processor_call_latency_seconds = Histogram(
    "salonbilling_processor_call_latency_seconds",
    "Latency of payment processor calls in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

processor_errors_total = Counter(
    "salonbilling_processor_errors_total",
    "Payment processor call failures",
    ["operation", "error_type"],
)

# Reconciliation metrics
snapshot_drift_total = Counter(
    "salonbilling_snapshot_drift_total",
    "Snapshots found diverging from the payment processor",
    ["field"],
)

snapshots_needing_reconciliation = Gauge(
    "salonbilling_snapshots_needing_reconciliation",
    "Snapshots flagged for reconciliation at the last pass",
)


def track_entitlement(check: str, outcome: str) -> None:
    """Count a gate decision.

    Args:
        check: Which check ran (``access``, ``any_access``, ``minimum_tier``, ``soft``).
        outcome: ``allowed`` or the denial code.
    """
    entitlement_decisions_total.labels(check=check, outcome=outcome).inc()


def track_lifecycle(operation: str, outcome: str) -> None:
    """Count a lifecycle operation outcome (``ok``, ``rejected``, ``failed``, ``replayed``)."""
    lifecycle_operations_total.labels(operation=operation, outcome=outcome).inc()


def track_drift(field: str) -> None:
    snapshot_drift_total.labels(field=field).inc()


@contextmanager
def track_processor_call(operation: str) -> Iterator[None]:
    """Context manager timing one processor call and counting its failures.

    Example:
        with track_processor_call("create_subscription"):
            result = client.subscriptions.create(params)
    """
    start = time()
    try:
        yield
    except Exception as exc:
        processor_errors_total.labels(
            operation=operation, error_type=type(exc).__name__
        ).inc()
        raise
    finally:
        processor_call_latency_seconds.labels(operation=operation).observe(time() - start)
