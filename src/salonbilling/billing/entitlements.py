"""Entitlement gate: may this tenant use this capability right now?

Decisions are values, not exceptions. The HTTP layer turns a denial into a
403 carrying the stable denial code and the upgrade path.

The gate reads the snapshot store on every check. There is no cache in
front of it, so a tenant sees an upgrade or downgrade on the very next
request after the lifecycle commits it.
"""

from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from salonbilling.billing.models import SubscriptionSnapshot
from salonbilling.billing.repository import SnapshotRepository
from salonbilling.billing.tiers import Tier, TierCatalog
from salonbilling.core.config import Settings
from salonbilling.core.exceptions import InvalidTierError
from salonbilling.core.logging import LoggerMixin
from salonbilling.core.metrics import track_entitlement

INACTIVE = "inactive"

SOFT_GATE_WARNING = (
    "This feature will be locked in the future. Please upgrade to continue using it."
)

FEATURE_MESSAGES: dict[str, str] = {
    "smsNotifications": (
        "SMS notifications are only available in Enterprise tier. Upgrade to send "
        "appointment reminders via SMS and reduce no-shows."
    ),
    "portfolioManagement": (
        "Portfolio management is available in Professional and Enterprise tiers. "
        "Upgrade to showcase your work and attract more clients."
    ),
    "apiAccess": (
        "API access is exclusive to Enterprise tier. Upgrade to integrate with your "
        "existing tools and build custom workflows."
    ),
    "multiLocation": (
        "Multi-location support is available in Enterprise tier. Upgrade to manage "
        "multiple salons from one dashboard."
    ),
    "whiteLabel": (
        "White-label branding is exclusive to Enterprise tier. Upgrade to remove "
        "platform branding and use your own logo."
    ),
    "customDomain": (
        "Custom domains are available in Enterprise tier. Upgrade to use your own "
        "domain (e.g., bookings.yoursalon.com)."
    ),
    "advancedAnalytics": (
        "Advanced analytics are available in Professional and Enterprise tiers. "
        "Upgrade to get detailed insights into your business performance."
    ),
    "marketingAutomation": (
        "Marketing automation is available in Professional and Enterprise tiers. "
        "Upgrade to send automated email campaigns and win-back sequences."
    ),
    "hipaaCompliance": (
        "HIPAA compliance features are exclusive to Enterprise tier. Upgrade to "
        "protect sensitive client records."
    ),
}


class DenialCode(str, enum.Enum):
    """Stable denial codes clients switch on."""

    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    FEATURE_NOT_AVAILABLE = "FEATURE_NOT_AVAILABLE"
    INSUFFICIENT_TIER = "INSUFFICIENT_TIER"


@dataclass(frozen=True)
class AccessDecision:
    """Result of an entitlement check.

    ``current_tier`` is the tier the check evaluated against; during a trial
    that is the trial access tier, not the tier the tenant will be billed at.
    """

    allowed: bool
    current_tier: str
    status: str
    code: DenialCode | None = None
    required_tier: str | None = None
    message: str | None = None
    upgrade_url: str | None = None
    warning: str | None = None

    def as_dict(self) -> dict:
        data = asdict(self)
        data["code"] = self.code.value if self.code else None
        return data


class EntitlementGate(LoggerMixin):
    """Grants or denies gated capabilities from the tenant's snapshot."""

    def __init__(self, db: AsyncSession, catalog: TierCatalog, settings: Settings) -> None:
        self.db = db
        self.catalog = catalog
        self.settings = settings
        self.repository = SnapshotRepository(db)

    # ------------------------------------------------------------------
    # Request-time checks
    # ------------------------------------------------------------------

    async def check_access(self, tenant_id: str, capability: str) -> AccessDecision:
        snapshot = await self.repository.get(tenant_id)
        decision = self.decide_access(snapshot, capability)
        self._record("access", tenant_id, decision, capability=capability)
        return decision

    async def check_any_access(
        self, tenant_id: str, capabilities: Sequence[str]
    ) -> AccessDecision:
        snapshot = await self.repository.get(tenant_id)
        decision = self.decide_any_access(snapshot, capabilities)
        self._record("any_access", tenant_id, decision, capabilities=list(capabilities))
        return decision

    async def require_minimum_tier(
        self, tenant_id: str, minimum: Tier | str
    ) -> AccessDecision:
        snapshot = await self.repository.get(tenant_id)
        decision = self.decide_minimum_tier(snapshot, minimum)
        self._record(
            "minimum_tier", tenant_id, decision, minimum=getattr(minimum, "value", minimum)
        )
        return decision

    async def soft_check(self, tenant_id: str, capability: str) -> AccessDecision:
        """Never denies. Annotates a warning when the tenant is not entitled.

        A failing lookup is logged and treated as entitled.
        """
        try:
            snapshot = await self.repository.get(tenant_id)
            decision = self.decide_soft(snapshot, capability)
        except Exception:
            self.logger.exception(
                "soft_entitlement_check_failed", tenant_id=tenant_id, capability=capability
            )
            return AccessDecision(allowed=True, current_tier="unknown", status="unknown")
        self._record("soft", tenant_id, decision, capability=capability)
        return decision

    # ------------------------------------------------------------------
    # Pure decisions on an already loaded snapshot
    # ------------------------------------------------------------------

    def decide_access(
        self, snapshot: SubscriptionSnapshot | None, capability: str
    ) -> AccessDecision:
        tier, status = self._evaluated(snapshot, trial_access=True)
        inactive = self._inactive_denial(snapshot, tier, status)
        if inactive:
            return inactive
        if self.catalog.has_feature(tier, capability):
            return AccessDecision(allowed=True, current_tier=tier, status=status)
        required = self.catalog.cheapest_tier_for(capability)
        return AccessDecision(
            allowed=False,
            current_tier=tier,
            status=status,
            code=DenialCode.FEATURE_NOT_AVAILABLE,
            required_tier=required,
            message=self.feature_message(capability, tier, required),
            upgrade_url=self.settings.pricing_url,
        )

    def decide_any_access(
        self, snapshot: SubscriptionSnapshot | None, capabilities: Sequence[str]
    ) -> AccessDecision:
        tier, status = self._evaluated(snapshot, trial_access=True)
        inactive = self._inactive_denial(snapshot, tier, status)
        if inactive:
            return inactive
        if any(self.catalog.has_feature(tier, c) for c in capabilities):
            return AccessDecision(allowed=True, current_tier=tier, status=status)
        required = self.catalog.cheapest_tier_for_any(capabilities)
        names = ", ".join(self.catalog.feature_display_name(c) for c in capabilities)
        return AccessDecision(
            allowed=False,
            current_tier=tier,
            status=status,
            code=DenialCode.FEATURE_NOT_AVAILABLE,
            required_tier=required,
            message=(
                f"None of these features are available in {self._name(tier)} tier: {names}. "
                f"Upgrade to {self._name(required)} to unlock them."
            ),
            upgrade_url=self.settings.pricing_url,
        )

    def decide_minimum_tier(
        self,
        snapshot: SubscriptionSnapshot | None,
        minimum: Tier | str,
        *,
        trial_access: bool = True,
    ) -> AccessDecision:
        """Compare tier ranks directly. An unknown ``minimum`` raises ``InvalidTierError``.

        ``trial_access=False`` evaluates the tier the tenant is billed at,
        which is what billing options (direct debit, invoices) depend on.
        """
        required_tier = self.catalog.tier_of(minimum)
        if required_tier is None:
            raise InvalidTierError(minimum, field="minimum_tier")
        required = required_tier.slug
        tier, status = self._evaluated(snapshot, trial_access=trial_access)
        inactive = self._inactive_denial(snapshot, tier, status)
        if inactive:
            return inactive
        if self.catalog.compare(tier, required) >= 0:
            return AccessDecision(allowed=True, current_tier=tier, status=status)
        return AccessDecision(
            allowed=False,
            current_tier=tier,
            status=status,
            code=DenialCode.INSUFFICIENT_TIER,
            required_tier=required,
            message=(
                f"This requires the {self._name(required)} plan. "
                f"You are currently on {self._name(tier)}."
            ),
            upgrade_url=self.settings.pricing_url,
        )

    def decide_soft(
        self, snapshot: SubscriptionSnapshot | None, capability: str
    ) -> AccessDecision:
        strict = self.decide_access(snapshot, capability)
        if strict.allowed:
            return strict
        return AccessDecision(
            allowed=True,
            current_tier=strict.current_tier,
            status=strict.status,
            required_tier=strict.required_tier,
            upgrade_url=strict.upgrade_url,
            warning=SOFT_GATE_WARNING,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _evaluated(
        self, snapshot: SubscriptionSnapshot | None, *, trial_access: bool
    ) -> tuple[str, str]:
        """Tier and status the checks run against. Missing snapshot fails closed."""
        if snapshot is None:
            return self.catalog.lowest.slug, INACTIVE
        status = snapshot.status.value
        if trial_access and snapshot.is_usable() and snapshot.status.value == "trial":
            return self.catalog.effective_tier(self.settings.trial_access_tier).slug, status
        return self.catalog.effective_tier(snapshot.tier).slug, status

    def _inactive_denial(
        self, snapshot: SubscriptionSnapshot | None, tier: str, status: str
    ) -> AccessDecision | None:
        if snapshot is not None and snapshot.is_usable():
            return None
        if snapshot is None:
            message = "No active subscription. Choose a plan to unlock this feature."
            url = self.settings.pricing_url
        elif snapshot.trial_expired(datetime.now(UTC)):
            message = "Your free trial has ended. Choose a plan to keep using this feature."
            url = self.settings.billing_settings_url
        else:
            message = (
                "Your subscription is not active. Please update your payment method "
                "or reactivate your subscription."
            )
            url = self.settings.billing_settings_url
        return AccessDecision(
            allowed=False,
            current_tier=tier,
            status=status,
            code=DenialCode.SUBSCRIPTION_INACTIVE,
            message=message,
            upgrade_url=url,
        )

    def _name(self, slug: str | None) -> str:
        tier = self.catalog.tier_of(slug)
        return tier.display_name if tier else "a higher"

    def feature_message(self, capability: str, current: str, required: str | None) -> str:
        if capability in FEATURE_MESSAGES:
            return FEATURE_MESSAGES[capability]
        if required is None:
            return f"{self.catalog.feature_display_name(capability)} is not available on any plan."
        return (
            f"This feature is not available in {self._name(current)} tier. "
            f"Upgrade to {self._name(required)} to unlock this feature."
        )

    def _record(self, check: str, tenant_id: str, decision: AccessDecision, **context) -> None:
        outcome = decision.code.value if decision.code else "allowed"
        track_entitlement(check, outcome)
        if decision.allowed:
            if decision.warning:
                self.logger.info(
                    "entitlement_soft_warning", tenant_id=tenant_id, tier=decision.current_tier,
                    **context,
                )
            return
        self.logger.info(
            "entitlement_denied",
            tenant_id=tenant_id,
            code=outcome,
            tier=decision.current_tier,
            status=decision.status,
            required_tier=decision.required_tier,
            **context,
        )
