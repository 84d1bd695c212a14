"""SMS budget policy.

Only Enterprise tenants send SMS. The allowance grows with staff count, usage
above it is billed in tiered overage bands, and the send decision protects
the last part of the budget for imminent-appointment reminders.
"""

from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from salonbilling.billing.models import SubscriptionSnapshot, SubscriptionStatus
from salonbilling.billing.repository import SnapshotRepository
from salonbilling.billing.tiers import OverageBand, Tier, TierCatalog, TierDefinition
from salonbilling.core.config import Settings
from salonbilling.core.logging import LoggerMixin

MEDIUM_PRIORITY_CUTOFF = Decimal("0.8")


class SmsPriority(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


NOTIFICATION_PRIORITIES: dict[str, SmsPriority] = {
    "2h_reminder": SmsPriority.HIGH,
    "24h_reminder": SmsPriority.HIGH,
    "same_day_reminder": SmsPriority.MEDIUM,
    "booking_confirmation": SmsPriority.LOW,
    "booking_cancellation": SmsPriority.LOW,
    "booking_rescheduled": SmsPriority.LOW,
    "payment_received": SmsPriority.LOW,
    "payment_failed": SmsPriority.LOW,
}


def priority_for(notification_type: str) -> SmsPriority:
    """Priority of a notification type. Unknown types are low (email only)."""
    return NOTIFICATION_PRIORITIES.get(notification_type, SmsPriority.LOW)


def monthly_allowance(tier: TierDefinition, staff_count: int) -> int:
    """Included SMS per month: base plus a bonus per staff member beyond the included seats."""
    limits = tier.limits
    if limits.sms_per_month <= 0:
        return 0
    additional_staff = max(0, staff_count - limits.sms_included_staff)
    return limits.sms_per_month + additional_staff * limits.sms_per_additional_staff


def overage_units(used: int, allowance: int) -> int:
    return max(0, used - allowance)


def overage_cost(used: int, allowance: int, bands: Sequence[OverageBand]) -> Decimal:
    """Cost of SMS sent beyond ``allowance``, priced band by band.

    Bands cover absolute monthly usage. Each band only bills the units that
    fall inside it and above the allowance, so a larger allowance shifts the
    billable units toward the cheaper band.
    """
    if used <= allowance:
        return Decimal("0.00")
    total = sum(
        (band.price_per_unit * band.units(used, allowance) for band in bands),
        Decimal("0"),
    )
    return total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def should_send_sms(
    priority: SmsPriority | str,
    remaining_budget: int,
    tier: Tier | str,
    allowance: int,
    *,
    medium_cutoff: Decimal | float = MEDIUM_PRIORITY_CUTOFF,
) -> bool:
    """Decide whether a notification may spend SMS budget.

    High priority always sends while budget remains. Medium priority sends
    only while cumulative usage is under ``medium_cutoff`` of the allowance,
    leaving the rest for high priority. Low priority never sends.
    """
    tier_slug = tier.value if isinstance(tier, Tier) else tier
    if tier_slug != Tier.ENTERPRISE.value or remaining_budget <= 0:
        return False

    priority = SmsPriority(priority)
    if priority is SmsPriority.HIGH:
        return True
    if priority is SmsPriority.MEDIUM:
        if allowance <= 0:
            return False
        used = allowance - remaining_budget
        return Decimal(used) < Decimal(str(medium_cutoff)) * allowance
    return False


class StaffDirectory(Protocol):
    """Staff headcount, owned by the booking system."""

    async def staff_count(self, tenant_id: str) -> int: ...


class StaticStaffDirectory:
    """Headcount reported by the caller, for requests that already know it."""

    def __init__(self, count: int) -> None:
        self.count = count

    async def staff_count(self, tenant_id: str) -> int:
        return self.count


@dataclass(frozen=True)
class SmsBudget:
    tier: str
    allowance: int


class SmsBudgetAllocator(LoggerMixin):
    """Tenant-level SMS surface used by the notification dispatcher.

    Trials get a small fixed allowance at the trial access tier; tenants
    without a usable subscription get none.
    """

    def __init__(
        self,
        db: AsyncSession,
        catalog: TierCatalog,
        staff_directory: StaffDirectory,
        settings: Settings,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.staff_directory = staff_directory
        self.settings = settings
        self.repository = SnapshotRepository(db)

    async def budget(self, tenant_id: str) -> SmsBudget:
        snapshot = await self.repository.get(tenant_id)
        return await self._budget_for(tenant_id, snapshot)

    async def _budget_for(
        self, tenant_id: str, snapshot: SubscriptionSnapshot | None
    ) -> SmsBudget:
        if snapshot is None or not snapshot.is_usable():
            tier = self.catalog.effective_tier(snapshot.tier if snapshot else None)
            return SmsBudget(tier=tier.slug, allowance=0)
        if snapshot.status == SubscriptionStatus.TRIAL:
            trial_tier = self.catalog.effective_tier(self.settings.trial_access_tier)
            return SmsBudget(tier=trial_tier.slug, allowance=self.settings.trial_sms_allowance)

        tier = self.catalog.effective_tier(snapshot.tier)
        if tier.limits.sms_per_month <= 0:
            return SmsBudget(tier=tier.slug, allowance=0)
        staff = await self.staff_directory.staff_count(tenant_id)
        return SmsBudget(tier=tier.slug, allowance=monthly_allowance(tier, staff))

    async def monthly_allowance(self, tenant_id: str) -> int:
        return (await self.budget(tenant_id)).allowance

    async def should_send_sms(
        self, notification_type: str, remaining_budget: int, tenant_id: str
    ) -> bool:
        budget = await self.budget(tenant_id)
        priority = priority_for(notification_type)
        decision = should_send_sms(
            priority,
            remaining_budget,
            budget.tier,
            budget.allowance,
            medium_cutoff=self.settings.medium_priority_sms_cutoff,
        )
        self.logger.debug(
            "sms_send_decision",
            tenant_id=tenant_id,
            notification_type=notification_type,
            priority=priority.value,
            remaining_budget=remaining_budget,
            allowance=budget.allowance,
            send=decision,
        )
        return decision

    async def overage_cost(self, tenant_id: str, used: int) -> Decimal:
        budget = await self.budget(tenant_id)
        tier = self.catalog.effective_tier(budget.tier)
        return overage_cost(used, budget.allowance, tier.sms_overage)
