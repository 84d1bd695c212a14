"""Test configuration and fixtures."""

from __future__ import annotations

import os

# Settings are cached on first use; point them at test backends before any import.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_salonbilling"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_salonbilling"
os.environ["APP_ENV"] = "development"

from collections.abc import AsyncGenerator, Callable, Mapping
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from salonbilling.api.dependencies.billing import get_price_table, get_processor
from salonbilling.api.dependencies.database import get_db
from salonbilling.api.main import app
from salonbilling.billing.idempotency import IdempotencyStore
from salonbilling.billing.lifecycle import SubscriptionLifecycle
from salonbilling.billing.locks import TenantLockRegistry
from salonbilling.billing.models import SubscriptionSnapshot, SubscriptionStatus
from salonbilling.billing.processor import (
    InvoiceLineItem,
    PriceTable,
    ProcessorInvoice,
    ProcessorSubscription,
    ProrationPolicy,
    SetupIntentResult,
)
from salonbilling.billing.tiers import DEFAULT_CATALOG, BillingCycle, PaymentMethod
from salonbilling.core.config import Settings, get_settings
from salonbilling.core.exceptions import PaymentProcessorError
from salonbilling.core.redis import get_redis
from salonbilling.core.retry import CircuitBreaker, RetryConfig
from salonbilling.models.base import Base

PRICE_REFS: dict[tuple[str, str], str] = {
    (tier, cycle): f"price_{tier}_{cycle}"
    for tier in ("starter", "professional", "enterprise")
    for cycle in ("monthly", "yearly")
}

PROCESSOR_STATUS = {
    SubscriptionStatus.TRIAL: "trialing",
    SubscriptionStatus.ACTIVE: "active",
    SubscriptionStatus.PAST_DUE: "past_due",
    SubscriptionStatus.CANCELED: "canceled",
}


class StatefulRedisMock:
    """A stateful Redis mock covering the commands the engine uses."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(
        self,
        key: str,
        value: str,
        ex: int | None = None,
        px: int | None = None,
        nx: bool = False,
        xx: bool = False,
    ) -> bool | None:
        if nx and key in self._data:
            return None
        if xx and key not in self._data:
            return None
        self._data[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        count = 0
        for key in keys:
            if key in self._data:
                del self._data[key]
                count += 1
        return count

    async def exists(self, *keys: str) -> int:
        return sum(1 for k in keys if k in self._data)

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass

    def keys_matching(self, prefix: str) -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]


class FakeProcessor:
    """In-memory payment processor honoring idempotency keys.

    Failures queued with ``fail`` are raised by the next calls to that
    method, before the call has any effect.
    """

    def __init__(self, now: datetime) -> None:
        self.now = now
        self.customers: dict[str, str] = {}
        self.subscriptions: dict[str, ProcessorSubscription] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.proration_amount = Decimal("100.00")
        self._replies: dict[str, Any] = {}
        self._sequence = 0

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def calls_to(self, method: str) -> list[str | None]:
        return [key for name, key in self.calls if name == method]

    def _enter(self, method: str, key: str | None) -> Any:
        self.calls.append((method, key))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)
        return self._replies.get(key) if key else None

    def _remember(self, key: str | None, value: Any) -> Any:
        if key:
            self._replies[key] = value
        return value

    def _next_id(self, prefix: str) -> str:
        self._sequence += 1
        return f"{prefix}_{self._sequence}"

    def _store(self, sub: ProcessorSubscription) -> ProcessorSubscription:
        self.subscriptions[sub.subscription_id] = replace(sub, invoice_amount_due=None)
        return sub

    def _subscription(self, subscription_id: str) -> ProcessorSubscription:
        if subscription_id not in self.subscriptions:
            raise PaymentProcessorError(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    async def get_or_create_customer(
        self, tenant_id: str, email: str | None, *, idempotency_key: str
    ) -> str:
        if (reply := self._enter("get_or_create_customer", idempotency_key)) is not None:
            return reply
        customer_id = self.customers.setdefault(tenant_id, f"cus_{tenant_id}")
        return self._remember(idempotency_key, customer_id)

    async def attach_payment_method(
        self, customer_id: str, method_ref: str, *, idempotency_key: str
    ) -> None:
        self._enter("attach_payment_method", idempotency_key)

    async def set_default_payment_method(
        self, customer_id: str, method_ref: str, *, idempotency_key: str
    ) -> None:
        self._enter("set_default_payment_method", idempotency_key)

    async def create_subscription(
        self,
        customer_id: str,
        price_ref: str,
        *,
        trial_days: int | None,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> ProcessorSubscription:
        if (reply := self._enter("create_subscription", idempotency_key)) is not None:
            return reply
        trial_end = self.now + timedelta(days=trial_days) if trial_days else None
        sub = ProcessorSubscription(
            subscription_id=self._next_id("sub"),
            customer_id=customer_id,
            status="trialing" if trial_days else "active",
            price_ref=price_ref,
            current_period_start=self.now,
            current_period_end=trial_end or self.now + timedelta(days=30),
            trial_end=trial_end,
            client_secret=None if trial_days else "pi_secret",
        )
        return self._remember(idempotency_key, self._store(sub))

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        self._enter("retrieve_subscription", None)
        return self._subscription(subscription_id)

    async def update_subscription_price(
        self,
        subscription_id: str,
        price_ref: str,
        proration: ProrationPolicy,
        *,
        idempotency_key: str,
    ) -> ProcessorSubscription:
        if (reply := self._enter("update_subscription_price", idempotency_key)) is not None:
            return reply
        sub = replace(
            self._subscription(subscription_id),
            price_ref=price_ref,
            invoice_amount_due=(
                self.proration_amount if proration is ProrationPolicy.INVOICE_NOW else None
            ),
        )
        return self._remember(idempotency_key, self._store(sub))

    async def cancel_subscription(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProcessorSubscription:
        if (reply := self._enter("cancel_subscription", idempotency_key)) is not None:
            return reply
        sub = replace(self._subscription(subscription_id), status="canceled", canceled_at=self.now)
        return self._remember(idempotency_key, self._store(sub))

    async def schedule_cancel_at_period_end(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProcessorSubscription:
        if (reply := self._enter("schedule_cancel_at_period_end", idempotency_key)) is not None:
            return reply
        sub = replace(self._subscription(subscription_id), cancel_at_period_end=True)
        return self._remember(idempotency_key, self._store(sub))

    async def resume_subscription(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProcessorSubscription:
        if (reply := self._enter("resume_subscription", idempotency_key)) is not None:
            return reply
        sub = replace(self._subscription(subscription_id), cancel_at_period_end=False)
        return self._remember(idempotency_key, self._store(sub))

    async def end_trial_now(
        self,
        subscription_id: str,
        *,
        price_ref: str | None,
        idempotency_key: str,
    ) -> ProcessorSubscription:
        if (reply := self._enter("end_trial_now", idempotency_key)) is not None:
            return reply
        current = self._subscription(subscription_id)
        sub = replace(
            current,
            status="active",
            price_ref=price_ref or current.price_ref,
            trial_end=self.now,
            current_period_start=self.now,
            current_period_end=self.now + timedelta(days=30),
            invoice_amount_due=Decimal("169.00"),
        )
        return self._remember(idempotency_key, self._store(sub))

    async def create_setup_intent(
        self,
        customer_id: str,
        method_kind: str,
        details: Mapping[str, Any],
        *,
        idempotency_key: str,
    ) -> SetupIntentResult:
        if (reply := self._enter("create_setup_intent", idempotency_key)) is not None:
            return reply
        intent = SetupIntentResult(
            setup_intent_id=self._next_id("seti"),
            client_secret="seti_secret",
            status="requires_confirmation",
        )
        return self._remember(idempotency_key, intent)

    async def create_and_send_invoice(
        self,
        customer_id: str,
        line_item: InvoiceLineItem,
        days_until_due: int,
        *,
        idempotency_key: str,
    ) -> ProcessorInvoice:
        if (reply := self._enter("create_and_send_invoice", idempotency_key)) is not None:
            return reply
        invoice_id = self._next_id("in")
        invoice = ProcessorInvoice(
            invoice_id=invoice_id,
            hosted_url=f"https://invoice.example/{invoice_id}",
            pdf_url=f"https://invoice.example/{invoice_id}.pdf",
            due_date=self.now + timedelta(days=days_until_due),
            amount_due=line_item.amount,
            status="open",
        )
        return self._remember(idempotency_key, invoice)


@pytest.fixture
def now() -> datetime:
    """Current time without sub-second noise."""
    return datetime.now(UTC).replace(microsecond=0)


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def price_table() -> PriceTable:
    return PriceTable(PRICE_REFS)


@pytest.fixture
def processor(now: datetime) -> FakeProcessor:
    return FakeProcessor(now)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def redis_client() -> StatefulRedisMock:
    """Create a stateful Redis mock for testing."""
    return StatefulRedisMock()


@pytest.fixture
def idempotency(redis_client: StatefulRedisMock) -> IdempotencyStore:
    return IdempotencyStore(redis_client, ttl_seconds=3600)  # type: ignore[arg-type]


@pytest.fixture
def retry_config() -> RetryConfig:
    """Retries without waiting."""
    return RetryConfig(max_attempts=3, initial_delay=0, max_delay=0, jitter_max=0)


@pytest.fixture
def breaker() -> CircuitBreaker:
    return CircuitBreaker("test_processor")


@pytest.fixture
def lifecycle(
    db_session: AsyncSession,
    processor: FakeProcessor,
    price_table: PriceTable,
    idempotency: IdempotencyStore,
    settings: Settings,
    retry_config: RetryConfig,
    breaker: CircuitBreaker,
    now: datetime,
) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(
        db_session,
        processor,
        DEFAULT_CATALOG,
        price_table,
        TenantLockRegistry(),
        idempotency,
        settings,
        retry_config=retry_config,
        breaker=breaker,
        clock=lambda: now,
    )


@pytest.fixture
def seed_subscription(
    db_session: AsyncSession,
    processor: FakeProcessor,
    price_table: PriceTable,
    now: datetime,
) -> Callable[..., Any]:
    """Store a snapshot and, when linked, the matching processor subscription."""

    async def _seed(
        tenant_id: str = "salon-1",
        tier: str = "professional",
        *,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        linked: bool = True,
        **fields: Any,
    ) -> SubscriptionSnapshot:
        subscription_id = f"sub_{tenant_id}" if linked else None
        customer_id = f"cus_{tenant_id}" if linked else None
        values: dict[str, Any] = {
            "tenant_id": tenant_id,
            "tier": tier,
            "billing_cycle": billing_cycle,
            "status": status,
            "current_period_start": now,
            "current_period_end": now + timedelta(days=30),
            "cancel_at_period_end": False,
            "payment_method": PaymentMethod.CARD,
            "external_customer_id": customer_id,
            "external_subscription_id": subscription_id,
            "needs_reconciliation": False,
        }
        if status == SubscriptionStatus.TRIAL:
            values["trial_ends_at"] = now + timedelta(days=14)
        values.update(fields)
        snapshot = SubscriptionSnapshot(**values)
        db_session.add(snapshot)
        await db_session.commit()

        if linked:
            processor.customers[tenant_id] = customer_id
            processor.subscriptions[subscription_id] = ProcessorSubscription(
                subscription_id=subscription_id,
                customer_id=customer_id,
                status=PROCESSOR_STATUS[snapshot.status],
                price_ref=PRICE_REFS[(tier, billing_cycle.value)]
                if (tier, billing_cycle.value) in PRICE_REFS
                else None,
                current_period_start=snapshot.current_period_start,
                current_period_end=snapshot.current_period_end,
                cancel_at_period_end=snapshot.cancel_at_period_end,
                trial_end=snapshot.trial_ends_at,
            )
        return snapshot

    return _seed


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    redis_client: StatefulRedisMock,
    processor: FakeProcessor,
    price_table: PriceTable,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database, redis and processor overrides."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> StatefulRedisMock:
        return redis_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_price_table] = lambda: price_table

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
