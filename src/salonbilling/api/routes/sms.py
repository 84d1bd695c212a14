"""SMS budget routes used by the notification dispatcher.

The dispatcher knows the salon's current headcount, so it passes
``staff_count`` along instead of this service asking the booking system.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from salonbilling.api.dependencies.billing import get_catalog
from salonbilling.api.dependencies.database import get_db
from salonbilling.api.dependencies.tenant import TenantId
from salonbilling.billing.schemas import (
    ShouldSendSmsRequest,
    ShouldSendSmsResponse,
    SmsAllowanceResponse,
    SmsOverageResponse,
)
from salonbilling.billing.sms import (
    SmsBudgetAllocator,
    StaticStaffDirectory,
    overage_units,
    priority_for,
)
from salonbilling.billing.tiers import TierCatalog
from salonbilling.core.config import Settings, get_settings

router = APIRouter()

StaffCount = Annotated[int, Query(ge=0, le=10_000)]


def _allocator(
    db: AsyncSession, catalog: TierCatalog, settings: Settings, staff_count: int
) -> SmsBudgetAllocator:
    return SmsBudgetAllocator(db, catalog, StaticStaffDirectory(staff_count), settings)


@router.get("/allowance", response_model=SmsAllowanceResponse)
async def get_sms_allowance(
    tenant_id: TenantId,
    staff_count: StaffCount,
    db: Annotated[AsyncSession, Depends(get_db)],
    catalog: Annotated[TierCatalog, Depends(get_catalog)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SmsAllowanceResponse:
    budget = await _allocator(db, catalog, settings, staff_count).budget(tenant_id)
    return SmsAllowanceResponse(
        tenant_id=tenant_id, tier=budget.tier, monthly_allowance=budget.allowance
    )


@router.post("/should-send", response_model=ShouldSendSmsResponse)
async def should_send_sms(
    body: ShouldSendSmsRequest,
    tenant_id: TenantId,
    db: Annotated[AsyncSession, Depends(get_db)],
    catalog: Annotated[TierCatalog, Depends(get_catalog)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> ShouldSendSmsResponse:
    """Whether a notification goes out by SMS; otherwise the dispatcher falls back to email."""
    allocator = _allocator(db, catalog, settings, body.staff_count)
    send = await allocator.should_send_sms(
        body.notification_type, body.remaining_budget, tenant_id
    )
    return ShouldSendSmsResponse(
        send_sms=send, priority=priority_for(body.notification_type).value
    )


@router.get("/overage", response_model=SmsOverageResponse)
async def get_sms_overage(
    tenant_id: TenantId,
    staff_count: StaffCount,
    used: Annotated[int, Query(ge=0)],
    db: Annotated[AsyncSession, Depends(get_db)],
    catalog: Annotated[TierCatalog, Depends(get_catalog)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SmsOverageResponse:
    allocator = _allocator(db, catalog, settings, staff_count)
    budget = await allocator.budget(tenant_id)
    cost = await allocator.overage_cost(tenant_id, used)
    return SmsOverageResponse(
        tenant_id=tenant_id,
        used=used,
        allowance=budget.allowance,
        overage_units=overage_units(used, budget.allowance),
        cost=cost,
    )
