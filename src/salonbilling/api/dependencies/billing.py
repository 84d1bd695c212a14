"""Service wiring for the billing routes.

Process-wide pieces (catalog, price table, processor client, tenant locks)
are built once; services holding a database session are built per request.
Tests replace ``get_processor`` and ``get_redis`` through
``app.dependency_overrides``.
"""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from salonbilling.api.dependencies.database import get_db
from salonbilling.billing.entitlements import EntitlementGate
from salonbilling.billing.idempotency import IdempotencyStore
from salonbilling.billing.lifecycle import SubscriptionLifecycle
from salonbilling.billing.locks import TenantLockRegistry
from salonbilling.billing.processor import PaymentProcessorClient, PriceTable
from salonbilling.billing.reconciliation import SnapshotReconciler
from salonbilling.billing.stripe_processor import StripeProcessor
from salonbilling.billing.tiers import DEFAULT_CATALOG, TierCatalog
from salonbilling.billing.webhooks import StripeWebhookHandler
from salonbilling.core.config import Settings, get_settings
from salonbilling.core.redis import get_redis

_tenant_locks = TenantLockRegistry()


def get_catalog() -> TierCatalog:
    return DEFAULT_CATALOG


def get_tenant_locks() -> TenantLockRegistry:
    """Lock arena shared by every request in this process."""
    return _tenant_locks


@lru_cache
def get_price_table() -> PriceTable:
    return PriceTable.from_settings(get_settings())


@lru_cache
def get_processor() -> PaymentProcessorClient:
    return StripeProcessor.from_settings(get_settings())


async def get_idempotency_store(
    redis: Annotated[Redis, Depends(get_redis)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> IdempotencyStore:
    return IdempotencyStore(redis, ttl_seconds=settings.idempotency_ttl_seconds)


async def get_entitlement_gate(
    db: Annotated[AsyncSession, Depends(get_db)],
    catalog: Annotated[TierCatalog, Depends(get_catalog)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> EntitlementGate:
    return EntitlementGate(db, catalog, settings)


async def get_lifecycle(
    db: Annotated[AsyncSession, Depends(get_db)],
    processor: Annotated[PaymentProcessorClient, Depends(get_processor)],
    catalog: Annotated[TierCatalog, Depends(get_catalog)],
    price_table: Annotated[PriceTable, Depends(get_price_table)],
    locks: Annotated[TenantLockRegistry, Depends(get_tenant_locks)],
    idempotency: Annotated[IdempotencyStore, Depends(get_idempotency_store)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(
        db, processor, catalog, price_table, locks, idempotency, settings
    )


async def get_reconciler(
    lifecycle: Annotated[SubscriptionLifecycle, Depends(get_lifecycle)],
) -> SnapshotReconciler:
    return SnapshotReconciler(lifecycle)


async def get_webhook_handler(
    lifecycle: Annotated[SubscriptionLifecycle, Depends(get_lifecycle)],
    idempotency: Annotated[IdempotencyStore, Depends(get_idempotency_store)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> StripeWebhookHandler:
    return StripeWebhookHandler(lifecycle, idempotency, settings.stripe_webhook_secret)


Gate = Annotated[EntitlementGate, Depends(get_entitlement_gate)]
Lifecycle = Annotated[SubscriptionLifecycle, Depends(get_lifecycle)]
