"""Subscription snapshot model."""

import enum
from datetime import UTC, datetime

from sqlalchemy import Boolean, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from salonbilling.billing.tiers import BillingCycle, PaymentMethod
from salonbilling.models.base import Base, TimestampMixin, UTCDateTime


class SubscriptionStatus(str, enum.Enum):
    """Stored subscription status."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


def _values(enum_cls: type[enum.Enum]) -> list[str]:
    return [e.value for e in enum_cls]


class SubscriptionSnapshot(Base, TimestampMixin):
    """Local record of a tenant's subscription, one row per tenant.

    Written only by ``SubscriptionLifecycle``. Rows are never deleted; a
    finished subscription is kept with ``status=canceled``. ``version`` is
    bumped on every write and checked by the ORM, so a writer holding a stale
    copy fails instead of overwriting.
    """

    __tablename__ = "subscription_snapshots"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Plain string so an unknown slug still loads; readers map it to the lowest tier.
    tier: Mapped[str] = mapped_column(String(32), nullable=False)
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        Enum(BillingCycle, name="billingcycle", values_callable=_values),
        default=BillingCycle.MONTHLY,
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, name="subscriptionstatus", values_callable=_values),
        nullable=False,
        index=True,
    )
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True, index=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Deferred downgrade, applied by the period-end job.
    scheduled_tier: Mapped[str | None] = mapped_column(String(32), nullable=True)
    scheduled_billing_cycle: Mapped[BillingCycle | None] = mapped_column(
        Enum(BillingCycle, name="billingcycle", values_callable=_values),
        nullable=True,
    )
    scheduled_effective_date: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True, index=True
    )

    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, name="paymentmethod", values_callable=_values),
        default=PaymentMethod.CARD,
        nullable=False,
    )
    external_customer_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    external_subscription_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    needs_reconciliation: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, index=True
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def has_scheduled_change(self) -> bool:
        return self.scheduled_tier is not None

    def clear_scheduled_change(self) -> None:
        self.scheduled_tier = None
        self.scheduled_billing_cycle = None
        self.scheduled_effective_date = None

    def trial_expired(self, now: datetime | None = None) -> bool:
        """A trial whose end date has passed no longer grants access."""
        if self.status != SubscriptionStatus.TRIAL or self.trial_ends_at is None:
            return False
        return self.trial_ends_at <= (now or datetime.now(UTC))

    def is_usable(self, now: datetime | None = None) -> bool:
        """Active, or on a trial that has not run out."""
        if self.status == SubscriptionStatus.ACTIVE:
            return True
        return self.status == SubscriptionStatus.TRIAL and not self.trial_expired(now)
