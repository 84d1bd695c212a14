"""Pydantic schemas for the billing API and lifecycle results."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, EmailStr, Field

from salonbilling.billing.models import SubscriptionSnapshot, SubscriptionStatus
from salonbilling.billing.tiers import (
    CURRENCY,
    UNLIMITED,
    BillingCycle,
    PaymentMethod,
    TierCatalog,
    TierDefinition,
)

# ============================================================================
# Public subscription view
# ============================================================================


class ScheduledTierChangeView(BaseModel):
    """Deferred downgrade recorded on the subscription."""

    new_tier: str
    billing_cycle: BillingCycle
    effective_date: datetime


class SubscriptionView(BaseModel):
    """What callers see of a subscription. Never the raw processor object."""

    tenant_id: str
    tier: str
    tier_name: str
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial_ends_at: datetime | None = None
    scheduled_tier_change: ScheduledTierChangeView | None = None
    payment_method: PaymentMethod
    price: Decimal
    currency: str = CURRENCY
    pending_confirmation: bool = False

    @classmethod
    def from_snapshot(
        cls, snapshot: SubscriptionSnapshot, catalog: TierCatalog
    ) -> SubscriptionView:
        tier = catalog.effective_tier(snapshot.tier)
        scheduled = None
        if snapshot.has_scheduled_change:
            scheduled = ScheduledTierChangeView(
                new_tier=snapshot.scheduled_tier,
                billing_cycle=snapshot.scheduled_billing_cycle or snapshot.billing_cycle,
                effective_date=snapshot.scheduled_effective_date,
            )
        return cls(
            tenant_id=snapshot.tenant_id,
            tier=tier.slug,
            tier_name=tier.display_name,
            billing_cycle=snapshot.billing_cycle,
            status=snapshot.status,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            trial_ends_at=snapshot.trial_ends_at,
            scheduled_tier_change=scheduled,
            payment_method=snapshot.payment_method,
            price=tier.price(snapshot.billing_cycle),
            pending_confirmation=snapshot.needs_reconciliation,
        )


class ManualInvoiceView(BaseModel):
    invoice_id: str
    hosted_url: str | None = None
    pdf_url: str | None = None
    due_date: datetime | None = None
    amount_due: Decimal
    status: str


class SetupIntentView(BaseModel):
    setup_intent_id: str
    client_secret: str | None = None
    status: str


class LifecycleResult(BaseModel):
    """Outcome of a lifecycle operation.

    Stored verbatim under the request's idempotency key and replayed for
    repeated requests.
    """

    subscription: SubscriptionView
    prorated_amount: Decimal | None = None
    lost_features: list[str] | None = None
    client_secret: str | None = None
    invoice: ManualInvoiceView | None = None
    setup_intent: SetupIntentView | None = None


# ============================================================================
# Lifecycle requests
# ============================================================================


class SubscriptionCreateRequest(BaseModel):
    tier: str
    billing_cycle: str = BillingCycle.MONTHLY.value
    payment_method_ref: str | None = Field(None, max_length=255)
    email: EmailStr | None = None
    trial: bool = False


class UpgradeRequest(BaseModel):
    tier: str
    billing_cycle: str | None = None


class DowngradeRequest(BaseModel):
    tier: str
    billing_cycle: str | None = None
    immediate: bool = False


class CancelRequest(BaseModel):
    immediately: bool = False


class ConvertTrialRequest(BaseModel):
    tier: str | None = None


class SepaSetupRequest(BaseModel):
    iban: str = Field(..., min_length=15, max_length=34)
    account_holder_name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr


class ManualInvoiceRequest(BaseModel):
    amount: Decimal
    description: str = Field(..., max_length=500)
    due_in_days: int = 14


# ============================================================================
# Entitlement and SMS surfaces
# ============================================================================


class AccessDecisionResponse(BaseModel):
    allowed: bool
    code: str | None = None
    current_tier: str
    required_tier: str | None = None
    status: str
    message: str | None = None
    upgrade_url: str | None = None
    warning: str | None = None


class SmsAllowanceResponse(BaseModel):
    tenant_id: str
    tier: str
    monthly_allowance: int


class ShouldSendSmsRequest(BaseModel):
    notification_type: str
    remaining_budget: int
    staff_count: int = Field(..., ge=0)


class ShouldSendSmsResponse(BaseModel):
    send_sms: bool
    priority: str


class SmsOverageResponse(BaseModel):
    tenant_id: str
    used: int
    allowance: int
    overage_units: int
    cost: Decimal
    currency: str = CURRENCY


# ============================================================================
# Pricing listing
# ============================================================================


class TierLimitsResponse(BaseModel):
    staff: int
    locations: int
    bookings_per_month: int
    customers: int
    storage_gb: int
    sms_per_month: int


class TierResponse(BaseModel):
    slug: str
    name: str
    price_monthly: Decimal
    price_yearly: Decimal
    currency: str = CURRENCY
    limits: TierLimitsResponse
    features: list[str]
    payment_methods: list[str]
    unlimited: list[str]

    @classmethod
    def from_definition(cls, tier: TierDefinition, catalog: TierCatalog) -> TierResponse:
        limits = tier.limits
        return cls(
            slug=tier.slug,
            name=tier.display_name,
            price_monthly=tier.price_monthly,
            price_yearly=tier.price_yearly,
            limits=TierLimitsResponse(
                staff=limits.staff,
                locations=limits.locations,
                bookings_per_month=limits.bookings_per_month,
                customers=limits.customers,
                storage_gb=limits.storage_gb,
                sms_per_month=limits.sms_per_month,
            ),
            features=sorted(catalog.features_of(tier.slug)),
            payment_methods=sorted(tier.payment_methods),
            unlimited=[
                name
                for name in ("staff", "locations", "bookings_per_month", "customers")
                if getattr(limits, name) == UNLIMITED
            ],
        )
