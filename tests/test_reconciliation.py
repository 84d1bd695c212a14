"""Tests for snapshot drift detection and repair."""

from collections.abc import Callable
from dataclasses import replace
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from salonbilling.billing.lifecycle import SubscriptionLifecycle
from salonbilling.billing.models import SubscriptionStatus
from salonbilling.billing.processor import PriceTable
from salonbilling.billing.reconciliation import SnapshotReconciler, compare_snapshot
from salonbilling.billing.repository import SnapshotRepository
from salonbilling.billing.tiers import BillingCycle
from salonbilling.core.exceptions import SubscriptionNotFoundError
from conftest import FakeProcessor


class TestCompareSnapshot:
    """Tests for field-level comparison."""

    @pytest.mark.asyncio
    async def test_in_sync(
        self,
        processor: FakeProcessor,
        price_table: PriceTable,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test a freshly seeded snapshot matches the processor."""
        snapshot = await seed_subscription("salon-1", "professional")
        sub = processor.subscriptions["sub_salon-1"]
        assert compare_snapshot(snapshot, sub, price_table) == []

    @pytest.mark.asyncio
    async def test_tier_cycle_and_status_drift(
        self,
        processor: FakeProcessor,
        price_table: PriceTable,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test each disagreeing field is reported with both values."""
        snapshot = await seed_subscription("salon-1", "starter")
        sub = replace(
            processor.subscriptions["sub_salon-1"],
            price_ref="price_enterprise_yearly",
            status="past_due",
            cancel_at_period_end=True,
        )

        diffs = {d.field: d for d in compare_snapshot(snapshot, sub, price_table)}

        assert diffs["tier"].local == "starter"
        assert diffs["tier"].processor == "enterprise"
        assert diffs["billing_cycle"].processor == BillingCycle.YEARLY.value
        assert diffs["status"].local == "active"
        assert diffs["status"].processor == "past_due"
        assert diffs["cancel_at_period_end"].processor == "True"

    @pytest.mark.asyncio
    async def test_unknown_price(
        self,
        processor: FakeProcessor,
        price_table: PriceTable,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test a price outside the table is reported as price drift."""
        snapshot = await seed_subscription("salon-1", "starter")
        sub = replace(processor.subscriptions["sub_salon-1"], price_ref="price_legacy")

        diffs = compare_snapshot(snapshot, sub, price_table)

        assert [d.field for d in diffs] == ["price"]
        assert diffs[0].processor == "price_legacy"

    @pytest.mark.asyncio
    async def test_period_end_drift(
        self,
        processor: FakeProcessor,
        price_table: PriceTable,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test a moved billing period is detected."""
        snapshot = await seed_subscription("salon-1", "starter")
        current = processor.subscriptions["sub_salon-1"]
        sub = replace(current, current_period_end=current.current_period_end + timedelta(days=1))

        assert [d.field for d in compare_snapshot(snapshot, sub, price_table)] == [
            "current_period_end"
        ]


class TestSnapshotReconciler:
    """Tests for the reconciliation pass."""

    @pytest.mark.asyncio
    async def test_check_reports_but_does_not_change(
        self,
        db_session: AsyncSession,
        lifecycle: SubscriptionLifecycle,
        processor: FakeProcessor,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test drift is reported and the snapshot left untouched."""
        snapshot = await seed_subscription("salon-1", "starter")
        processor.subscriptions["sub_salon-1"] = replace(
            processor.subscriptions["sub_salon-1"], price_ref="price_professional_monthly"
        )
        reconciler = SnapshotReconciler(lifecycle)

        report = await reconciler.check(snapshot)

        assert report.has_drift
        assert report.subscription_id == "sub_salon-1"
        assert (await SnapshotRepository(db_session).get("salon-1")).tier == "starter"

    @pytest.mark.asyncio
    async def test_check_unlinked_snapshot(
        self,
        lifecycle: SubscriptionLifecycle,
        processor: FakeProcessor,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test snapshots without a processor handle are not looked up."""
        snapshot = await seed_subscription("salon-1", "starter", linked=False)

        report = await SnapshotReconciler(lifecycle).check(snapshot)

        assert not report.has_drift
        assert processor.calls == []

    @pytest.mark.asyncio
    async def test_run_continues_past_failures(
        self,
        lifecycle: SubscriptionLifecycle,
        processor: FakeProcessor,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test one failing lookup does not stop the pass."""
        await seed_subscription("salon-1", "starter")
        await seed_subscription("salon-2", "enterprise", needs_reconciliation=True)
        await seed_subscription("salon-3", "professional")
        del processor.subscriptions["sub_salon-3"]
        processor.subscriptions["sub_salon-2"] = replace(
            processor.subscriptions["sub_salon-2"], status="past_due"
        )

        reports = await SnapshotReconciler(lifecycle).run()

        by_tenant = {r.tenant_id: r for r in reports}
        assert set(by_tenant) == {"salon-1", "salon-2"}
        assert not by_tenant["salon-1"].has_drift
        assert by_tenant["salon-2"].has_drift
        assert by_tenant["salon-2"].flagged

    @pytest.mark.asyncio
    async def test_run_checks_flagged_first(
        self,
        lifecycle: SubscriptionLifecycle,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test flagged snapshots come first so a limited pass covers them."""
        await seed_subscription("salon-1", "starter")
        await seed_subscription("salon-2", "starter", needs_reconciliation=True)

        reports = await SnapshotReconciler(lifecycle).run(limit=1)

        assert [r.tenant_id for r in reports] == ["salon-2"]

    @pytest.mark.asyncio
    async def test_repair_overwrites_from_processor(
        self,
        db_session: AsyncSession,
        lifecycle: SubscriptionLifecycle,
        processor: FakeProcessor,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test repair adopts the processor state and clears the flag."""
        await seed_subscription("salon-1", "starter", needs_reconciliation=True)
        processor.subscriptions["sub_salon-1"] = replace(
            processor.subscriptions["sub_salon-1"],
            price_ref="price_enterprise_monthly",
            status="canceled",
        )

        repaired = await SnapshotReconciler(lifecycle).repair("salon-1")

        assert repaired.tier == "enterprise"
        assert repaired.status == SubscriptionStatus.CANCELED
        stored = await SnapshotRepository(db_session).get("salon-1")
        assert not stored.needs_reconciliation
        assert stored.canceled_at is not None

    @pytest.mark.asyncio
    async def test_repair_requires_linked_snapshot(
        self,
        lifecycle: SubscriptionLifecycle,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test repair of unknown or unlinked tenants."""
        await seed_subscription("salon-1", "starter", linked=False)
        reconciler = SnapshotReconciler(lifecycle)

        with pytest.raises(SubscriptionNotFoundError):
            await reconciler.repair("salon-1")
        with pytest.raises(SubscriptionNotFoundError):
            await reconciler.repair("nobody")
