"""Payment processor interface consumed by the subscription lifecycle.

The lifecycle only talks to ``PaymentProcessorClient``. Implementations map
their SDK errors onto ``PaymentProcessorError`` subclasses and return the
plain dataclasses below, never SDK objects.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from salonbilling.billing.models import SubscriptionStatus
from salonbilling.billing.tiers import BillingCycle, PaymentMethod, Tier
from salonbilling.core.config import Settings
from salonbilling.core.exceptions import ConfigurationError


class ProrationPolicy(str, enum.Enum):
    """How a mid-period price change is charged."""

    INVOICE_NOW = "always_invoice"
    NONE = "none"


class ProcessorStatus(str, enum.Enum):
    """Subscription states reported by the processor."""

    TRIALING = "trialing"
    ACTIVE = "active"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    PAUSED = "paused"


_STATUS_MAP: dict[str, SubscriptionStatus] = {
    ProcessorStatus.TRIALING.value: SubscriptionStatus.TRIAL,
    ProcessorStatus.ACTIVE.value: SubscriptionStatus.ACTIVE,
    ProcessorStatus.INCOMPLETE.value: SubscriptionStatus.PAST_DUE,
    ProcessorStatus.PAST_DUE.value: SubscriptionStatus.PAST_DUE,
    ProcessorStatus.UNPAID.value: SubscriptionStatus.PAST_DUE,
    ProcessorStatus.PAUSED.value: SubscriptionStatus.PAST_DUE,
    ProcessorStatus.CANCELED.value: SubscriptionStatus.CANCELED,
    ProcessorStatus.INCOMPLETE_EXPIRED.value: SubscriptionStatus.CANCELED,
}


def to_subscription_status(status: str) -> SubscriptionStatus:
    """Map a processor status onto the stored status. Unknown values count as past due."""
    return _STATUS_MAP.get(status, SubscriptionStatus.PAST_DUE)


def to_payment_method(method_type: str | None) -> PaymentMethod | None:
    if method_type == "sepa_debit":
        return PaymentMethod.SEPA
    if method_type == "card":
        return PaymentMethod.CARD
    return None


@dataclass(frozen=True)
class ProcessorSubscription:
    """Processor-side view of a subscription, enough to rebuild a snapshot."""

    subscription_id: str
    customer_id: str
    status: str
    price_ref: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool = False
    trial_end: datetime | None = None
    canceled_at: datetime | None = None
    client_secret: str | None = None
    invoice_amount_due: Decimal | None = None
    default_payment_method_type: str | None = None


@dataclass(frozen=True)
class SetupIntentResult:
    setup_intent_id: str
    client_secret: str | None
    status: str


@dataclass(frozen=True)
class InvoiceLineItem:
    amount: Decimal
    description: str
    currency: str = "eur"


@dataclass(frozen=True)
class ProcessorInvoice:
    invoice_id: str
    hosted_url: str | None
    pdf_url: str | None
    due_date: datetime | None
    amount_due: Decimal
    status: str


class PaymentProcessorClient(Protocol):
    """Operations the engine invokes on the external payment processor.

    Every mutating call takes an idempotency key; sending the same key twice
    must return the first result instead of repeating the side effect.
    """

    async def get_or_create_customer(
        self, tenant_id: str, email: str | None, *, idempotency_key: str
    ) -> str: ...

    async def attach_payment_method(
        self, customer_id: str, method_ref: str, *, idempotency_key: str
    ) -> None: ...

    async def set_default_payment_method(
        self, customer_id: str, method_ref: str, *, idempotency_key: str
    ) -> None: ...

    async def create_subscription(
        self,
        customer_id: str,
        price_ref: str,
        *,
        trial_days: int | None,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> ProcessorSubscription: ...

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription: ...

    async def update_subscription_price(
        self,
        subscription_id: str,
        price_ref: str,
        proration: ProrationPolicy,
        *,
        idempotency_key: str,
    ) -> ProcessorSubscription: ...

    async def cancel_subscription(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProcessorSubscription: ...

    async def schedule_cancel_at_period_end(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProcessorSubscription: ...

    async def resume_subscription(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProcessorSubscription: ...

    async def end_trial_now(
        self,
        subscription_id: str,
        *,
        price_ref: str | None,
        idempotency_key: str,
    ) -> ProcessorSubscription: ...

    async def create_setup_intent(
        self,
        customer_id: str,
        method_kind: str,
        details: Mapping[str, Any],
        *,
        idempotency_key: str,
    ) -> SetupIntentResult: ...

    async def create_and_send_invoice(
        self,
        customer_id: str,
        line_item: InvoiceLineItem,
        days_until_due: int,
        *,
        idempotency_key: str,
    ) -> ProcessorInvoice: ...


class PriceTable:
    """Processor price references for each (tier, billing cycle) pair."""

    def __init__(self, entries: Mapping[tuple[str, str], str]) -> None:
        self._refs: dict[tuple[str, str], str] = {}
        for (tier, cycle), ref in entries.items():
            key = (Tier(tier).value, BillingCycle(cycle).value)
            self._refs[key] = ref
        self._reverse = {ref: key for key, ref in self._refs.items() if ref}

    @classmethod
    def from_settings(cls, settings: Settings) -> PriceTable:
        return cls(settings.price_ids())

    def price_ref(self, tier: Tier | str, cycle: BillingCycle | str) -> str:
        """Price reference to bill ``tier`` on ``cycle``.

        Raises:
            ConfigurationError: If no reference is configured for the pair.
        """
        key = (Tier(tier).value, BillingCycle(cycle).value)
        ref = self._refs.get(key)
        if not ref:
            raise ConfigurationError(
                f"No processor price configured for {key[0]}/{key[1]}",
                details={"tier": key[0], "billing_cycle": key[1]},
            )
        return ref

    def lookup(self, price_ref: str | None) -> tuple[str, BillingCycle] | None:
        """Reverse lookup used when rebuilding a snapshot from the processor."""
        if not price_ref or price_ref not in self._reverse:
            return None
        tier, cycle = self._reverse[price_ref]
        return tier, BillingCycle(cycle)
