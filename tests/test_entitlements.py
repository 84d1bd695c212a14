"""Tests for the entitlement gate."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from salonbilling.billing.entitlements import (
    FEATURE_MESSAGES,
    SOFT_GATE_WARNING,
    DenialCode,
    EntitlementGate,
)
from salonbilling.billing.models import SubscriptionSnapshot, SubscriptionStatus
from salonbilling.billing.tiers import DEFAULT_CATALOG, BillingCycle, PaymentMethod, Tier
from salonbilling.core.config import Settings
from salonbilling.core.exceptions import InvalidTierError


def make_snapshot(
    tier: str = "professional",
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    trial_ends_at: datetime | None = None,
) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        tenant_id="salon-1",
        tier=tier,
        billing_cycle=BillingCycle.MONTHLY,
        status=status,
        cancel_at_period_end=False,
        trial_ends_at=trial_ends_at,
        payment_method=PaymentMethod.CARD,
        needs_reconciliation=False,
    )


@pytest.fixture
def gate(settings: Settings) -> EntitlementGate:
    """Gate for pure decisions; no database access."""
    return EntitlementGate(MagicMock(), DEFAULT_CATALOG, settings)


class TestDecideAccess:
    """Tests for single-feature decisions."""

    def test_allowed_when_tier_has_feature(self, gate: EntitlementGate) -> None:
        """Test professional can use portfolio management."""
        decision = gate.decide_access(make_snapshot("professional"), "portfolioManagement")
        assert decision.allowed
        assert decision.current_tier == "professional"
        assert decision.status == "active"
        assert decision.code is None

    def test_denied_with_required_tier(self, gate: EntitlementGate, settings: Settings) -> None:
        """Test starter is told which tier unlocks the feature."""
        decision = gate.decide_access(make_snapshot("starter"), "portfolioManagement")
        assert not decision.allowed
        assert decision.code is DenialCode.FEATURE_NOT_AVAILABLE
        assert decision.required_tier == "professional"
        assert decision.message == FEATURE_MESSAGES["portfolioManagement"]
        assert decision.upgrade_url == settings.pricing_url

    def test_generic_message_for_uncustomized_feature(self, gate: EntitlementGate) -> None:
        """Test features without a custom message get a generated one."""
        decision = gate.decide_access(make_snapshot("starter"), "waitlistManagement")
        assert decision.message == (
            "This feature is not available in Starter tier. "
            "Upgrade to Professional to unlock this feature."
        )

    def test_unknown_feature_is_denied(self, gate: EntitlementGate) -> None:
        """Test a feature no tier offers is denied without a required tier."""
        decision = gate.decide_access(make_snapshot("enterprise"), "timeTravel")
        assert not decision.allowed
        assert decision.required_tier is None
        assert "not available on any plan" in decision.message

    def test_missing_snapshot_is_inactive(self, gate: EntitlementGate, settings: Settings) -> None:
        """Test tenants without a subscription are denied as inactive."""
        decision = gate.decide_access(None, "onlineBooking")
        assert not decision.allowed
        assert decision.code is DenialCode.SUBSCRIPTION_INACTIVE
        assert decision.current_tier == "starter"
        assert decision.status == "inactive"
        assert decision.upgrade_url == settings.pricing_url

    @pytest.mark.parametrize(
        "status", [SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED]
    )
    def test_inactive_statuses_are_denied(
        self, gate: EntitlementGate, settings: Settings, status: SubscriptionStatus
    ) -> None:
        """Test past-due and canceled deny even features of their tier."""
        decision = gate.decide_access(make_snapshot("enterprise", status), "onlineBooking")
        assert not decision.allowed
        assert decision.code is DenialCode.SUBSCRIPTION_INACTIVE
        assert decision.status == status.value
        assert decision.upgrade_url == settings.billing_settings_url

    def test_trial_evaluates_at_trial_access_tier(self, gate: EntitlementGate) -> None:
        """Test a running trial gets enterprise features whatever tier it bills."""
        snapshot = make_snapshot(
            "starter", SubscriptionStatus.TRIAL, datetime.now(UTC) + timedelta(days=5)
        )
        decision = gate.decide_access(snapshot, "smsNotifications")
        assert decision.allowed
        assert decision.current_tier == "enterprise"
        assert decision.status == "trial"

    def test_expired_trial_is_denied(self, gate: EntitlementGate) -> None:
        """Test a trial past its end date denies access."""
        snapshot = make_snapshot(
            "enterprise", SubscriptionStatus.TRIAL, datetime.now(UTC) - timedelta(minutes=1)
        )
        decision = gate.decide_access(snapshot, "onlineBooking")
        assert not decision.allowed
        assert decision.code is DenialCode.SUBSCRIPTION_INACTIVE
        assert "free trial has ended" in decision.message

    def test_unknown_tier_is_treated_as_lowest(self, gate: EntitlementGate) -> None:
        """Test an unrecognized stored tier gates like starter."""
        decision = gate.decide_access(make_snapshot("legacy-gold"), "advancedAnalytics")
        assert not decision.allowed
        assert decision.current_tier == "starter"


class TestDecideAnyAccess:
    """Tests for any-of decisions."""

    def test_allowed_when_one_feature_present(self, gate: EntitlementGate) -> None:
        """Test one matching feature is enough."""
        decision = gate.decide_any_access(
            make_snapshot("professional"), ["whiteLabel", "advancedAnalytics"]
        )
        assert decision.allowed

    def test_denied_lists_features(self, gate: EntitlementGate) -> None:
        """Test the denial names every requested feature and the cheapest unlock."""
        decision = gate.decide_any_access(make_snapshot("starter"), ["whiteLabel", "auditLogs"])
        assert not decision.allowed
        assert decision.code is DenialCode.FEATURE_NOT_AVAILABLE
        assert decision.required_tier == "professional"
        assert "White-Label Branding" in decision.message
        assert "Audit Logs" in decision.message

    def test_inactive_checked_first(self, gate: EntitlementGate) -> None:
        """Test inactive subscriptions are denied as inactive."""
        decision = gate.decide_any_access(
            make_snapshot("enterprise", SubscriptionStatus.PAST_DUE), ["onlineBooking"]
        )
        assert decision.code is DenialCode.SUBSCRIPTION_INACTIVE


class TestDecideMinimumTier:
    """Tests for minimum-tier decisions."""

    def test_equal_tier_is_allowed(self, gate: EntitlementGate) -> None:
        """Test the minimum itself passes."""
        assert gate.decide_minimum_tier(make_snapshot("professional"), "professional").allowed
        assert gate.decide_minimum_tier(make_snapshot("enterprise"), Tier.PROFESSIONAL).allowed

    def test_lower_tier_is_denied(self, gate: EntitlementGate) -> None:
        """Test a lower tier gets INSUFFICIENT_TIER."""
        decision = gate.decide_minimum_tier(make_snapshot("starter"), Tier.ENTERPRISE)
        assert not decision.allowed
        assert decision.code is DenialCode.INSUFFICIENT_TIER
        assert decision.required_tier == "enterprise"
        assert decision.message == (
            "This requires the Enterprise plan. You are currently on Starter."
        )

    def test_unknown_minimum_raises(self, gate: EntitlementGate) -> None:
        """Test an unknown minimum tier is a caller error."""
        with pytest.raises(InvalidTierError):
            gate.decide_minimum_tier(make_snapshot("enterprise"), "diamond")
        with pytest.raises(InvalidTierError):
            gate.decide_minimum_tier(None, "diamond")

    def test_trial_access_can_be_disabled(self, gate: EntitlementGate) -> None:
        """Test billing options evaluate the billed tier, not trial access."""
        snapshot = make_snapshot(
            "professional", SubscriptionStatus.TRIAL, datetime.now(UTC) + timedelta(days=3)
        )
        assert gate.decide_minimum_tier(snapshot, "enterprise").allowed
        billed = gate.decide_minimum_tier(snapshot, "enterprise", trial_access=False)
        assert not billed.allowed
        assert billed.current_tier == "professional"


class TestDecideSoft:
    """Tests for soft gating."""

    def test_soft_never_denies(self, gate: EntitlementGate) -> None:
        """Test a soft check allows but warns."""
        decision = gate.decide_soft(make_snapshot("starter"), "marketingAutomation")
        assert decision.allowed
        assert decision.warning == SOFT_GATE_WARNING
        assert decision.required_tier == "professional"

    def test_soft_entitled_has_no_warning(self, gate: EntitlementGate) -> None:
        """Test an entitled tenant gets no warning."""
        decision = gate.decide_soft(make_snapshot("professional"), "marketingAutomation")
        assert decision.allowed
        assert decision.warning is None


class TestGateChecks:
    """Tests for checks reading the snapshot store."""

    @pytest.mark.asyncio
    async def test_check_access_reads_current_snapshot(
        self,
        db_session: AsyncSession,
        settings: Settings,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test the gate sees a tier change on the next check."""
        snapshot = await seed_subscription("salon-1", "starter")
        gate = EntitlementGate(db_session, DEFAULT_CATALOG, settings)

        assert not (await gate.check_access("salon-1", "advancedAnalytics")).allowed

        snapshot.tier = "professional"
        await db_session.commit()

        assert (await gate.check_access("salon-1", "advancedAnalytics")).allowed

    @pytest.mark.asyncio
    async def test_check_any_and_minimum(
        self,
        db_session: AsyncSession,
        settings: Settings,
        seed_subscription: Callable[..., Any],
    ) -> None:
        """Test any-of and minimum-tier checks against the store."""
        await seed_subscription("salon-1", "professional")
        gate = EntitlementGate(db_session, DEFAULT_CATALOG, settings)

        assert (await gate.check_any_access("salon-1", ["apiAccess", "auditLogs"])).allowed
        denied = await gate.require_minimum_tier("salon-1", Tier.ENTERPRISE)
        assert denied.code is DenialCode.INSUFFICIENT_TIER

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_inactive(
        self, db_session: AsyncSession, settings: Settings
    ) -> None:
        """Test tenants that never subscribed fail closed."""
        gate = EntitlementGate(db_session, DEFAULT_CATALOG, settings)
        decision = await gate.check_access("nobody", "onlineBooking")
        assert decision.code is DenialCode.SUBSCRIPTION_INACTIVE

    @pytest.mark.asyncio
    async def test_soft_check_fails_open(self, settings: Settings) -> None:
        """Test a failing lookup never blocks a soft-gated request."""
        gate = EntitlementGate(MagicMock(), DEFAULT_CATALOG, settings)
        gate.repository.get = AsyncMock(side_effect=RuntimeError("database down"))

        decision = await gate.soft_check("salon-1", "apiAccess")
        assert decision.allowed
        assert decision.warning is None

    @pytest.mark.asyncio
    async def test_strict_check_propagates_lookup_failure(self, settings: Settings) -> None:
        """Test strict checks do not swallow store errors."""
        gate = EntitlementGate(MagicMock(), DEFAULT_CATALOG, settings)
        gate.repository.get = AsyncMock(side_effect=RuntimeError("database down"))

        with pytest.raises(RuntimeError):
            await gate.check_access("salon-1", "apiAccess")


class TestAccessDecision:
    """Tests for decision serialization."""

    def test_as_dict(self, gate: EntitlementGate) -> None:
        """Test the code is serialized as its string value."""
        data = gate.decide_access(make_snapshot("starter"), "apiAccess").as_dict()
        assert data["code"] == "FEATURE_NOT_AVAILABLE"
        assert data["allowed"] is False
        assert data["required_tier"] == "enterprise"
