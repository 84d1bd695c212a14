"""Snapshot drift detection.

Compares each snapshot with the processor's subscription, matched by
external subscription id. Drift is reported loudly and left alone: fixing
it is an operator decision, made through ``SnapshotReconciler.repair``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from salonbilling.billing.lifecycle import SubscriptionLifecycle
from salonbilling.billing.models import SubscriptionSnapshot
from salonbilling.billing.processor import (
    PaymentProcessorClient,
    PriceTable,
    ProcessorSubscription,
    to_subscription_status,
)
from salonbilling.billing.repository import SnapshotRepository
from salonbilling.core.exceptions import PaymentProcessorError, SubscriptionNotFoundError
from salonbilling.core.logging import LoggerMixin
from salonbilling.core.metrics import snapshots_needing_reconciliation, track_drift
from salonbilling.core.retry import CircuitBreaker, RetryConfig, call_processor


@dataclass(frozen=True)
class FieldDrift:
    field: str
    local: str | None
    processor: str | None


@dataclass
class DriftReport:
    """Differences found for one tenant."""

    tenant_id: str
    subscription_id: str
    differences: list[FieldDrift] = field(default_factory=list)
    flagged: bool = False

    @property
    def has_drift(self) -> bool:
        return bool(self.differences)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def compare_snapshot(
    snapshot: SubscriptionSnapshot, sub: ProcessorSubscription, price_table: PriceTable
) -> list[FieldDrift]:
    """Fields where the snapshot and the processor disagree."""
    differences: list[FieldDrift] = []
    priced = price_table.lookup(sub.price_ref)
    if priced is None:
        differences.append(FieldDrift("price", snapshot.tier, sub.price_ref))
    else:
        tier, cycle = priced
        if tier != snapshot.tier:
            differences.append(FieldDrift("tier", snapshot.tier, tier))
        if cycle != snapshot.billing_cycle:
            differences.append(
                FieldDrift("billing_cycle", snapshot.billing_cycle.value, cycle.value)
            )

    status = to_subscription_status(sub.status)
    if status != snapshot.status:
        differences.append(FieldDrift("status", snapshot.status.value, sub.status))
    if sub.cancel_at_period_end != snapshot.cancel_at_period_end:
        differences.append(
            FieldDrift(
                "cancel_at_period_end",
                str(snapshot.cancel_at_period_end),
                str(sub.cancel_at_period_end),
            )
        )
    if sub.current_period_end and sub.current_period_end != snapshot.current_period_end:
        differences.append(
            FieldDrift(
                "current_period_end",
                _iso(snapshot.current_period_end),
                _iso(sub.current_period_end),
            )
        )
    return differences


class SnapshotReconciler(LoggerMixin):
    """Periodic pass that checks snapshots against the processor."""

    def __init__(
        self,
        lifecycle: SubscriptionLifecycle,
        *,
        retry_config: RetryConfig | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.processor: PaymentProcessorClient = lifecycle.processor
        self.price_table = lifecycle.price_table
        self.repository = SnapshotRepository(lifecycle.db)
        self.retry_config = retry_config or lifecycle.retry_config
        self.breaker = breaker or lifecycle.breaker

    async def _retrieve(self, subscription_id: str) -> ProcessorSubscription:
        return await call_processor(
            lambda: self.processor.retrieve_subscription(subscription_id),
            operation="reconcile.retrieve",
            idempotency_key=None,
            read_only=True,
            config=self.retry_config,
            breaker=self.breaker,
        )

    async def check(self, snapshot: SubscriptionSnapshot) -> DriftReport:
        """Compare one snapshot. Logs drift at error level; changes nothing."""
        subscription_id = snapshot.external_subscription_id
        report = DriftReport(
            tenant_id=snapshot.tenant_id,
            subscription_id=subscription_id or "",
            flagged=snapshot.needs_reconciliation,
        )
        if not subscription_id:
            return report
        sub = await self._retrieve(subscription_id)
        report.differences = compare_snapshot(snapshot, sub, self.price_table)
        for diff in report.differences:
            track_drift(diff.field)
        if report.has_drift:
            self.logger.error(
                "subscription_drift_detected",
                tenant_id=snapshot.tenant_id,
                subscription_id=subscription_id,
                fields={
                    d.field: {"local": d.local, "processor": d.processor}
                    for d in report.differences
                },
                page=True,
            )
        return report

    async def run(self, limit: int = 500) -> list[DriftReport]:
        """Check every snapshot linked to the processor, flagged ones first.

        A processor failure on one tenant is logged and the pass moves on.
        """
        snapshots = await self.repository.list_with_processor_handle(limit)
        snapshots_needing_reconciliation.set(sum(1 for s in snapshots if s.needs_reconciliation))
        reports: list[DriftReport] = []
        for snapshot in snapshots:
            try:
                reports.append(await self.check(snapshot))
            except PaymentProcessorError as exc:
                self.logger.warning(
                    "reconciliation_check_failed",
                    tenant_id=snapshot.tenant_id,
                    error=str(exc),
                )
        self.logger.info(
            "reconciliation_pass_completed",
            checked=len(reports),
            drifted=sum(1 for r in reports if r.has_drift),
        )
        return reports

    async def repair(self, tenant_id: str) -> SubscriptionSnapshot:
        """Overwrite the snapshot with the processor's state. Operator action.

        Raises:
            SubscriptionNotFoundError: No snapshot or no processor handle.
        """
        snapshot = await self.repository.get(tenant_id)
        if snapshot is None or not snapshot.external_subscription_id:
            raise SubscriptionNotFoundError(tenant_id)
        sub = await self._retrieve(snapshot.external_subscription_id)
        repaired = await self.lifecycle.sync_from_processor(sub, tenant_id=tenant_id)
        self.logger.warning(
            "subscription_repaired_from_processor",
            tenant_id=tenant_id,
            subscription_id=sub.subscription_id,
        )
        return repaired
