"""Operator and scheduler endpoints.

Mounted under ``/internal`` and expected to sit behind the platform's
service network; they are not exposed to salon clients.
"""

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from salonbilling.api.dependencies.billing import Lifecycle, get_reconciler
from salonbilling.billing.reconciliation import DriftReport, SnapshotReconciler
from salonbilling.billing.repository import SnapshotRepository
from salonbilling.billing.schemas import SubscriptionView
from salonbilling.core.exceptions import SalonBillingException
from salonbilling.core.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


class ScheduledChangesResponse(BaseModel):
    applied: list[str]
    failed: list[str]


class FieldDriftResponse(BaseModel):
    field: str
    local: str | None
    processor: str | None


class DriftReportResponse(BaseModel):
    tenant_id: str
    subscription_id: str
    flagged: bool
    differences: list[FieldDriftResponse]

    @classmethod
    def from_report(cls, report: DriftReport) -> "DriftReportResponse":
        return cls(
            tenant_id=report.tenant_id,
            subscription_id=report.subscription_id,
            flagged=report.flagged,
            differences=[
                FieldDriftResponse(field=d.field, local=d.local, processor=d.processor)
                for d in report.differences
            ],
        )


class ReconciliationResponse(BaseModel):
    checked: int
    drifted: list[DriftReportResponse]


@router.post("/scheduled-changes/apply", response_model=ScheduledChangesResponse)
async def apply_scheduled_changes(lifecycle: Lifecycle) -> ScheduledChangesResponse:
    """Apply every deferred downgrade that has reached its effective date.

    One tenant failing does not stop the others; it is retried on the next run.
    """
    now = datetime.now(UTC)
    due = await SnapshotRepository(lifecycle.db).list_due_scheduled_changes(now)
    applied: list[str] = []
    failed: list[str] = []
    for tenant_id in due:
        try:
            await lifecycle.apply_scheduled_tier_change(tenant_id, now)
            applied.append(tenant_id)
        except SalonBillingException as exc:
            logger.warning(
                "scheduled_change_failed",
                tenant_id=tenant_id,
                error_code=exc.error_code.value,
                error=exc.message,
            )
            failed.append(tenant_id)
    logger.info("scheduled_changes_processed", applied=len(applied), failed=len(failed))
    return ScheduledChangesResponse(applied=applied, failed=failed)


@router.post("/reconciliation/run", response_model=ReconciliationResponse)
async def run_reconciliation(
    reconciler: Annotated[SnapshotReconciler, Depends(get_reconciler)],
    limit: Annotated[int, Query(ge=1, le=5000)] = 500,
) -> ReconciliationResponse:
    """Compare snapshots with the processor. Reports drift; repairs nothing."""
    reports = await reconciler.run(limit)
    return ReconciliationResponse(
        checked=len(reports),
        drifted=[DriftReportResponse.from_report(r) for r in reports if r.has_drift],
    )


@router.post("/reconciliation/{tenant_id}/repair", response_model=SubscriptionView)
async def repair_snapshot(
    tenant_id: str,
    reconciler: Annotated[SnapshotReconciler, Depends(get_reconciler)],
) -> SubscriptionView:
    """Overwrite one tenant's snapshot with the processor's state."""
    snapshot = await reconciler.repair(tenant_id)
    return SubscriptionView.from_snapshot(snapshot, reconciler.lifecycle.catalog)
