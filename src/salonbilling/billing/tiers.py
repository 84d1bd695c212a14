"""Tier catalog: definitions, limits, feature flags and SMS pricing.

The catalog is a plain value. Nothing in the engine reads a module-level
catalog directly; ``DEFAULT_CATALOG`` is only the wiring default used by the
API layer and can be swapped for tests or for a new pricing version.

All lookups are total. Unknown tier slugs resolve to ``None`` from
``tier_of`` and rank as the lowest tier everywhere else, so callers that
must degrade gracefully never see an exception from the catalog.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType

UNLIMITED = -1
YEARLY_DISCOUNT = Decimal("0.17")
CURRENCY = "EUR"


class Tier(str, enum.Enum):
    """Subscription tier slugs in ascending order."""

    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class BillingCycle(str, enum.Enum):
    """Billing cycle enum."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentMethod(str, enum.Enum):
    """How a tenant pays."""

    CARD = "card"
    SEPA = "sepa"
    INVOICE = "invoice"


def _slug(tier: Tier | str | None) -> str | None:
    if tier is None:
        return None
    return tier.value if isinstance(tier, Tier) else str(tier)


@dataclass(frozen=True)
class TierLimits:
    """Resource limits for a tier. ``UNLIMITED`` (-1) means no cap."""

    staff: int
    locations: int
    bookings_per_month: int
    customers: int
    storage_gb: int
    sms_per_month: int = 0
    sms_per_additional_staff: int = 0
    # Staff seats covered by the base SMS allowance.
    sms_included_staff: int = 5

    def is_unlimited(self, name: str) -> bool:
        return getattr(self, name) == UNLIMITED


@dataclass(frozen=True)
class OverageBand:
    """Per-unit SMS price for usage between ``start`` and ``end`` (inclusive).

    ``end=None`` makes the band open-ended.
    """

    start: int
    end: int | None
    price_per_unit: Decimal

    def units(self, used: int, allowance: int) -> int:
        """Units of ``used`` that fall inside this band and above ``allowance``."""
        floor = max(allowance, self.start - 1)
        ceiling = used if self.end is None else min(used, self.end)
        return max(0, ceiling - floor)


@dataclass(frozen=True)
class TierDefinition:
    """Immutable definition of one tier."""

    slug: str
    display_name: str
    ordinal: int
    price_monthly: Decimal
    price_yearly: Decimal
    limits: TierLimits
    features: Mapping[str, bool]
    sms_overage: tuple[OverageBand, ...] = ()
    payment_methods: frozenset[str] = field(
        default_factory=lambda: frozenset({PaymentMethod.CARD.value})
    )

    def has_feature(self, key: str) -> bool:
        return self.features.get(key) is True

    def price(self, cycle: BillingCycle | str) -> Decimal:
        cycle = BillingCycle(cycle)
        return self.price_yearly if cycle is BillingCycle.YEARLY else self.price_monthly


def yearly_price(monthly: Decimal | int | float | str) -> Decimal:
    """Informational yearly price: ``round(monthly * 12 * 0.83)``.

    Half-up rounding to whole euros. The catalog's literal yearly prices are
    authoritative for billing and do not always match this figure.
    """
    raw = Decimal(str(monthly)) * 12 * (1 - YEARLY_DISCOUNT)
    return raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


class TierCatalog:
    """Ordered, validated collection of tier definitions.

    Construction enforces feature monotonicity: a feature enabled at some
    tier stays enabled at every higher tier. A catalog that breaks this is
    rejected with ``ValueError``.
    """

    def __init__(
        self,
        tiers: Iterable[TierDefinition],
        *,
        version: str,
        feature_names: Mapping[str, str] | None = None,
    ) -> None:
        ordered = tuple(sorted(tiers, key=lambda t: t.ordinal))
        if not ordered:
            raise ValueError("catalog needs at least one tier")
        if [t.ordinal for t in ordered] != list(range(len(ordered))):
            raise ValueError("tier ordinals must be 0..n-1 without gaps")
        slugs = [t.slug for t in ordered]
        if len(set(slugs)) != len(slugs):
            raise ValueError(f"duplicate tier slug in {slugs}")

        feature_keys = tuple(ordered[0].features)
        for tier in ordered[1:]:
            if set(tier.features) != set(feature_keys):
                missing = set(feature_keys) ^ set(tier.features)
                raise ValueError(f"tier {tier.slug!r} feature keys differ: {sorted(missing)}")

        violations = _monotonicity_violations(ordered, feature_keys)
        if violations:
            raise ValueError(f"features not monotonic across tiers: {violations}")

        self.version = version
        self._tiers = ordered
        self._by_slug = {t.slug: t for t in ordered}
        self._feature_keys = feature_keys
        self._feature_names = dict(feature_names or {})
        self._required: dict[str, str] = {}
        for key in feature_keys:
            for tier in ordered:
                if tier.has_feature(key):
                    self._required[key] = tier.slug
                    break

    @property
    def tiers(self) -> tuple[TierDefinition, ...]:
        return self._tiers

    @property
    def feature_keys(self) -> tuple[str, ...]:
        return self._feature_keys

    @property
    def lowest(self) -> TierDefinition:
        return self._tiers[0]

    def tier_of(self, slug: Tier | str | None) -> TierDefinition | None:
        """Look up a tier. Unknown slugs return ``None``."""
        return self._by_slug.get(_slug(slug) or "")

    def effective_tier(self, slug: Tier | str | None) -> TierDefinition:
        """Look up a tier, treating unknown slugs as the most restrictive tier."""
        return self.tier_of(slug) or self.lowest

    def ordinal(self, slug: Tier | str | None) -> int:
        return self.effective_tier(slug).ordinal

    def compare(self, a: Tier | str | None, b: Tier | str | None) -> int:
        """Return -1, 0 or 1 comparing two tiers by rank."""
        left, right = self.ordinal(a), self.ordinal(b)
        return (left > right) - (left < right)

    def has_feature(self, slug: Tier | str | None, key: str) -> bool:
        return self.effective_tier(slug).has_feature(key)

    def cheapest_tier_for(self, key: str) -> str | None:
        """Lowest-ranked tier unlocking ``key``, or ``None`` if no tier does."""
        return self._required.get(key)

    def cheapest_tier_for_any(self, keys: Iterable[str]) -> str | None:
        candidates = [self._required[k] for k in keys if k in self._required]
        if not candidates:
            return None
        return min(candidates, key=self.ordinal)

    def features_of(self, slug: Tier | str | None) -> frozenset[str]:
        tier = self.effective_tier(slug)
        return frozenset(k for k in self._feature_keys if tier.has_feature(k))

    def lost_features(self, current: Tier | str, new: Tier | str) -> list[str]:
        """Features enabled under ``current`` and disabled under ``new``, catalog order."""
        before = self.effective_tier(current)
        after = self.effective_tier(new)
        return [
            k for k in self._feature_keys if before.has_feature(k) and not after.has_feature(k)
        ]

    def price_for(self, slug: Tier | str, cycle: BillingCycle | str) -> Decimal | None:
        tier = self.tier_of(slug)
        return tier.price(cycle) if tier else None

    def yearly_price(self, monthly: Decimal | int | float | str) -> Decimal:
        return yearly_price(monthly)

    def feature_display_name(self, key: str) -> str:
        return self._feature_names.get(key, key)


def _monotonicity_violations(
    ordered: tuple[TierDefinition, ...],
    feature_keys: tuple[str, ...],
) -> list[str]:
    violations = []
    for key in feature_keys:
        unlocked = False
        for tier in ordered:
            if tier.has_feature(key):
                unlocked = True
            elif unlocked:
                violations.append(f"{key}@{tier.slug}")
    return violations


FEATURE_NAMES: dict[str, str] = {
    "onlineBooking": "Online Booking System",
    "calendar": "Staff Calendar",
    "customerCRM": "Customer Management",
    "publicSalonPage": "Public Booking Page",
    "emailNotifications": "Email Notifications",
    "smsNotifications": "SMS Notifications",
    "twoFactorAuth": "Two-Factor Authentication (2FA)",
    "stripeIntegration": "Stripe Payment Integration",
    "basicReports": "Basic Reports",
    "advancedAnalytics": "Advanced Analytics",
    "customReporting": "Custom Reports",
    "marketingAutomation": "Marketing Automation",
    "emailCampaigns": "Email Campaigns",
    "multiServiceBookings": "Multi-Service Bookings",
    "recurringAppointments": "Recurring Appointments",
    "waitlistManagement": "Waitlist Management",
    "noShowProtection": "No-Show Protection",
    "customBookingForms": "Custom Booking Forms",
    "beforeAfterPhotos": "Before/After Photos",
    "portfolioManagement": "Portfolio Gallery",
    "servicePackages": "Service Packages",
    "multiLocation": "Multi-Location Support",
    "multiLocationDashboard": "Multi-Location Dashboard",
    "whiteLabel": "White-Label Branding",
    "customDomain": "Custom Domain",
    "apiAccess": "API Access",
    "webhooks": "Webhooks",
    "hipaaCompliance": "HIPAA Compliance",
    "auditLogs": "Audit Logs",
    "teamPermissions": "Team Permissions",
}

# Tier at which each feature unlocks.
_STARTER_FEATURES = (
    "onlineBooking",
    "calendar",
    "customerCRM",
    "publicSalonPage",
    "emailNotifications",
    "stripeIntegration",
    "basicReports",
)
_PROFESSIONAL_FEATURES = _STARTER_FEATURES + (
    "twoFactorAuth",
    "advancedAnalytics",
    "marketingAutomation",
    "emailCampaigns",
    "multiServiceBookings",
    "recurringAppointments",
    "waitlistManagement",
    "noShowProtection",
    "customBookingForms",
    "beforeAfterPhotos",
    "portfolioManagement",
    "servicePackages",
    "auditLogs",
    "teamPermissions",
)


def _flags(enabled: Iterable[str]) -> Mapping[str, bool]:
    enabled = set(enabled)
    return MappingProxyType({key: key in enabled for key in FEATURE_NAMES})


TIER_DEFINITIONS: tuple[TierDefinition, ...] = (
    TierDefinition(
        slug=Tier.STARTER.value,
        display_name="Starter",
        ordinal=0,
        price_monthly=Decimal("69"),
        price_yearly=Decimal("690"),
        limits=TierLimits(
            staff=5,
            locations=1,
            bookings_per_month=200,
            customers=500,
            storage_gb=5,
        ),
        features=_flags(_STARTER_FEATURES),
    ),
    TierDefinition(
        slug=Tier.PROFESSIONAL.value,
        display_name="Professional",
        ordinal=1,
        price_monthly=Decimal("169"),
        price_yearly=Decimal("1690"),
        limits=TierLimits(
            staff=30,
            locations=1,
            bookings_per_month=1000,
            customers=UNLIMITED,
            storage_gb=25,
        ),
        features=_flags(_PROFESSIONAL_FEATURES),
    ),
    TierDefinition(
        slug=Tier.ENTERPRISE.value,
        display_name="Enterprise",
        ordinal=2,
        price_monthly=Decimal("399"),
        price_yearly=Decimal("3990"),
        limits=TierLimits(
            staff=UNLIMITED,
            locations=5,
            bookings_per_month=UNLIMITED,
            customers=UNLIMITED,
            storage_gb=100,
            sms_per_month=500,
            sms_per_additional_staff=50,
        ),
        features=_flags(FEATURE_NAMES),
        sms_overage=(
            OverageBand(start=501, end=1000, price_per_unit=Decimal("0.05")),
            OverageBand(start=1001, end=None, price_per_unit=Decimal("0.045")),
        ),
        payment_methods=frozenset(
            {PaymentMethod.CARD.value, PaymentMethod.SEPA.value, PaymentMethod.INVOICE.value}
        ),
    ),
)

DEFAULT_CATALOG = TierCatalog(
    TIER_DEFINITIONS,
    version="2025-12",
    feature_names=FEATURE_NAMES,
)
