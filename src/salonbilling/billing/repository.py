"""Snapshot queries."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from salonbilling.billing.models import SubscriptionSnapshot, SubscriptionStatus


class SnapshotRepository:
    """Reads snapshots straight from the database.

    ``populate_existing`` makes every read refresh objects already held in
    the session's identity map, so callers never act on a copy loaded
    earlier in the same session.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, tenant_id: str) -> SubscriptionSnapshot | None:
        result = await self.db.execute(
            select(SubscriptionSnapshot)
            .where(SubscriptionSnapshot.tenant_id == tenant_id)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def get_by_external_subscription(
        self, external_subscription_id: str
    ) -> SubscriptionSnapshot | None:
        result = await self.db.execute(
            select(SubscriptionSnapshot)
            .where(SubscriptionSnapshot.external_subscription_id == external_subscription_id)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def get_by_external_customer(
        self, external_customer_id: str
    ) -> SubscriptionSnapshot | None:
        result = await self.db.execute(
            select(SubscriptionSnapshot)
            .where(SubscriptionSnapshot.external_customer_id == external_customer_id)
            .execution_options(populate_existing=True),
        )
        return result.scalars().first()

    async def list_with_processor_handle(self, limit: int = 500) -> list[SubscriptionSnapshot]:
        """Snapshots the reconciliation pass can compare, flagged ones first."""
        result = await self.db.execute(
            select(SubscriptionSnapshot)
            .where(SubscriptionSnapshot.external_subscription_id.is_not(None))
            .order_by(
                SubscriptionSnapshot.needs_reconciliation.desc(),
                SubscriptionSnapshot.last_synced_at.asc().nulls_first(),
            )
            .limit(limit),
        )
        return list(result.scalars().all())

    async def list_due_scheduled_changes(self, now: datetime) -> list[str]:
        """Tenants whose deferred downgrade has reached its effective date."""
        result = await self.db.execute(
            select(SubscriptionSnapshot.tenant_id).where(
                SubscriptionSnapshot.scheduled_tier.is_not(None),
                SubscriptionSnapshot.scheduled_effective_date <= now,
                SubscriptionSnapshot.status != SubscriptionStatus.CANCELED,
            ),
        )
        return list(result.scalars().all())
