"""Subscription lifecycle: the only writer of subscription snapshots.

Every mutating operation follows the same sequence::

    lock tenant -> check idempotency key -> load snapshot -> validate
    -> processor call(s) -> write snapshot -> commit -> store result

Validation always happens before the first processor call, so a rejected
request leaves no trace at the processor. A processor call whose outcome is
unknown (timeout, dropped connection) flags the snapshot for reconciliation
instead of guessing.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from salonbilling.billing.entitlements import EntitlementGate
from salonbilling.billing.idempotency import PENDING, IdempotencyStore, processor_key
from salonbilling.billing.locks import TenantLockRegistry
from salonbilling.billing.models import SubscriptionSnapshot, SubscriptionStatus
from salonbilling.billing.processor import (
    InvoiceLineItem,
    PaymentProcessorClient,
    PriceTable,
    ProcessorSubscription,
    ProrationPolicy,
    to_payment_method,
    to_subscription_status,
)
from salonbilling.billing.repository import SnapshotRepository
from salonbilling.billing.schemas import (
    LifecycleResult,
    ManualInvoiceView,
    SetupIntentView,
    SubscriptionView,
)
from salonbilling.billing.tiers import (
    BillingCycle,
    PaymentMethod,
    Tier,
    TierCatalog,
    TierDefinition,
)
from salonbilling.core.config import Settings
from salonbilling.core.exceptions import (
    ConcurrentModificationError,
    DatabaseError,
    DuplicateRequestError,
    FeatureNotAvailableError,
    InvalidAmountError,
    InvalidBillingCycleError,
    InvalidDowngradeError,
    InvalidPaymentMethodError,
    InvalidTierError,
    InvalidTransitionError,
    InvalidUpgradeError,
    NoScheduledChangeError,
    NotOnTrialError,
    NotPendingCancellationError,
    ProcessorTimeoutError,
    SalonBillingException,
    SnapshotDriftError,
    SubscriptionCanceledError,
    SubscriptionNotFoundError,
    ValidationError,
)
from salonbilling.core.logging import LoggerMixin, tenant_context
from salonbilling.core.metrics import track_drift, track_lifecycle
from salonbilling.core.retry import (
    PROCESSOR_CIRCUIT,
    CircuitBreaker,
    RetryConfig,
    call_processor,
    get_circuit_breaker,
)

T = TypeVar("T")

MAX_INVOICE_DESCRIPTION = 500
MAX_INVOICE_DUE_DAYS = 365


@dataclass
class _Operation:
    """Bookkeeping for one lifecycle call."""

    tenant_id: str
    name: str
    request_key: str
    # Set once the processor has accepted a change to the subscription.
    processor_changed: bool = False


class SubscriptionLifecycle(LoggerMixin):
    """Creates and changes subscriptions at the processor and records the result."""

    def __init__(
        self,
        db: AsyncSession,
        processor: PaymentProcessorClient,
        catalog: TierCatalog,
        price_table: PriceTable,
        locks: TenantLockRegistry,
        idempotency: IdempotencyStore,
        settings: Settings,
        *,
        retry_config: RetryConfig | None = None,
        breaker: CircuitBreaker | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.processor = processor
        self.catalog = catalog
        self.price_table = price_table
        self.locks = locks
        self.idempotency = idempotency
        self.settings = settings
        self.retry_config = retry_config or RetryConfig(
            max_attempts=settings.processor_max_attempts
        )
        self.breaker = breaker or get_circuit_breaker("payment_processor", PROCESSOR_CIRCUIT)
        self.repository = SnapshotRepository(db)
        self.gate = EntitlementGate(db, catalog, settings)
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, tenant_id: str) -> SubscriptionView:
        """Public view of the tenant's subscription.

        Raises:
            SubscriptionNotFoundError: If the tenant never subscribed.
        """
        snapshot = await self.repository.get(tenant_id)
        if snapshot is None:
            raise SubscriptionNotFoundError(tenant_id)
        return SubscriptionView.from_snapshot(snapshot, self.catalog)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(
        self,
        tenant_id: str,
        tier: str,
        billing_cycle: str = BillingCycle.MONTHLY.value,
        *,
        payment_method_ref: str | None = None,
        email: str | None = None,
        trial: bool = False,
        idempotency_key: str | None = None,
    ) -> LifecycleResult:
        """Start a subscription, or re-price the tenant's live one.

        A tenant never holds two processor subscriptions: if the snapshot
        points at one that is still alive, its price is swapped instead.

        Args:
            tenant_id: Salon the subscription belongs to.
            tier: Tier slug to bill.
            billing_cycle: ``monthly`` or ``yearly``.
            payment_method_ref: Processor payment method to attach. Required
                unless starting a trial or re-pricing a live subscription.
            email: Billing contact used when creating the customer.
            trial: Start with a free trial at the trial access tier.
            idempotency_key: Client-supplied request key.

        Returns:
            The new subscription view and, when the first payment needs
            customer confirmation, its client secret.

        Raises:
            InvalidTierError: Unknown tier.
            InvalidBillingCycleError: Unknown billing cycle.
            InvalidTransitionError: Trial requested by a returning tenant.
        """
        target = self._parse_tier(tier)
        cycle = self._parse_cycle(billing_cycle)
        price_ref = self.price_table.price_ref(target.slug, cycle)

        async def body(op: _Operation) -> LifecycleResult:
            snapshot = await self.repository.get(tenant_id)
            if trial and snapshot is not None:
                raise InvalidTransitionError(
                    "Free trials are only available to new subscriptions",
                    current_tier=snapshot.tier,
                    requested_tier=target.slug,
                    status=snapshot.status.value,
                )

            live = await self._live_processor_subscription(op, snapshot)
            if live is None and not trial and not payment_method_ref:
                raise ValidationError(
                    "A payment method is required",
                    field="payment_method_ref",
                    constraint="required unless starting a trial",
                )

            customer_id = await self._ensure_customer(op, snapshot, email)
            if payment_method_ref:
                await self._call(
                    op,
                    "attach_payment_method",
                    lambda key: self.processor.attach_payment_method(
                        customer_id, payment_method_ref, idempotency_key=key
                    ),
                )
                await self._call(
                    op,
                    "default_payment_method",
                    lambda key: self.processor.set_default_payment_method(
                        customer_id, payment_method_ref, idempotency_key=key
                    ),
                )

            if live is not None:
                proration = (
                    ProrationPolicy.INVOICE_NOW
                    if self.catalog.compare(target.slug, snapshot.tier) > 0
                    else ProrationPolicy.NONE
                )
                sub = await self._call(
                    op,
                    "price",
                    lambda key: self.processor.update_subscription_price(
                        live.subscription_id, price_ref, proration, idempotency_key=key
                    ),
                )
            else:
                sub = await self._call(
                    op,
                    "subscription",
                    lambda key: self.processor.create_subscription(
                        customer_id,
                        price_ref,
                        trial_days=self.settings.trial_days if trial else None,
                        metadata={"tenant_id": tenant_id, "tier": target.slug},
                        idempotency_key=key,
                    ),
                )
            op.processor_changed = True

            if snapshot is None:
                snapshot = _new_snapshot(tenant_id)
                self.db.add(snapshot)
            snapshot.tier = target.slug
            snapshot.billing_cycle = cycle
            snapshot.external_customer_id = customer_id
            snapshot.canceled_at = None
            snapshot.clear_scheduled_change()
            if payment_method_ref:
                snapshot.payment_method = PaymentMethod.CARD
            self._apply_processor_state(snapshot, sub)
            if trial and snapshot.trial_ends_at is None:
                snapshot.trial_ends_at = self._trial_end()

            self.logger.info(
                "subscription_created",
                tier=target.slug,
                billing_cycle=cycle.value,
                status=snapshot.status.value,
                trial=trial,
                reused_subscription=live is not None,
            )
            return LifecycleResult(
                subscription=self._view(snapshot),
                client_secret=sub.client_secret,
            )

        return await self._run(tenant_id, "create", idempotency_key, body)

    async def upgrade(
        self,
        tenant_id: str,
        new_tier: str,
        billing_cycle: str | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> LifecycleResult:
        """Move to a higher tier now, invoicing the proration immediately.

        Raises:
            InvalidUpgradeError: Target does not rank strictly above the current tier.
        """
        target = self._parse_tier(new_tier, field="new_tier")
        requested_cycle = self._parse_cycle(billing_cycle) if billing_cycle else None

        async def body(op: _Operation) -> LifecycleResult:
            snapshot = await self._load_changeable(tenant_id)
            if self.catalog.compare(target.slug, snapshot.tier) <= 0:
                raise InvalidUpgradeError(
                    current_tier=snapshot.tier,
                    requested_tier=target.slug,
                    status=snapshot.status.value,
                )
            cycle = requested_cycle or snapshot.billing_cycle
            price_ref = self.price_table.price_ref(target.slug, cycle)
            subscription_id = self._require_handle(snapshot)
            # Nothing to prorate while the trial is free.
            proration = (
                ProrationPolicy.NONE
                if snapshot.status == SubscriptionStatus.TRIAL
                else ProrationPolicy.INVOICE_NOW
            )

            sub = await self._call(
                op,
                "price",
                lambda key: self.processor.update_subscription_price(
                    subscription_id, price_ref, proration, idempotency_key=key
                ),
            )
            op.processor_changed = True

            previous = snapshot.tier
            snapshot.tier = target.slug
            snapshot.billing_cycle = cycle
            snapshot.clear_scheduled_change()
            self._apply_processor_state(snapshot, sub)
            prorated = sub.invoice_amount_due
            if prorated is None:
                prorated = Decimal("0.00")

            self.logger.info(
                "subscription_upgraded",
                from_tier=previous,
                to_tier=target.slug,
                billing_cycle=cycle.value,
                prorated_amount=str(prorated),
            )
            return LifecycleResult(
                subscription=self._view(snapshot),
                prorated_amount=prorated,
                client_secret=sub.client_secret,
            )

        return await self._run(tenant_id, "upgrade", idempotency_key, body)

    async def downgrade(
        self,
        tenant_id: str,
        new_tier: str,
        billing_cycle: str | None = None,
        *,
        immediate: bool = False,
        idempotency_key: str | None = None,
    ) -> LifecycleResult:
        """Move to a lower tier, now or at the end of the paid period.

        An immediate downgrade swaps the price without proration. A deferred
        one only records the change; ``apply_scheduled_tier_change`` carries
        it out once the period ends.

        Raises:
            InvalidDowngradeError: Target does not rank strictly below the current tier.
        """
        target = self._parse_tier(new_tier, field="new_tier")
        requested_cycle = self._parse_cycle(billing_cycle) if billing_cycle else None

        async def body(op: _Operation) -> LifecycleResult:
            snapshot = await self._load_changeable(tenant_id)
            if self.catalog.compare(target.slug, snapshot.tier) >= 0:
                raise InvalidDowngradeError(
                    current_tier=snapshot.tier,
                    requested_tier=target.slug,
                    status=snapshot.status.value,
                )
            cycle = requested_cycle or snapshot.billing_cycle
            price_ref = self.price_table.price_ref(target.slug, cycle)
            lost = self.catalog.lost_features(snapshot.tier, target.slug)
            previous = snapshot.tier

            if not immediate:
                if snapshot.current_period_end is None:
                    raise InvalidTransitionError(
                        "Subscription has no billing period to defer the change to",
                        current_tier=snapshot.tier,
                        requested_tier=target.slug,
                        status=snapshot.status.value,
                    )
                snapshot.scheduled_tier = target.slug
                snapshot.scheduled_billing_cycle = cycle
                snapshot.scheduled_effective_date = snapshot.current_period_end
                self.logger.info(
                    "subscription_downgrade_scheduled",
                    from_tier=previous,
                    to_tier=target.slug,
                    effective_date=snapshot.current_period_end.isoformat(),
                )
                return LifecycleResult(subscription=self._view(snapshot), lost_features=lost)

            subscription_id = self._require_handle(snapshot)
            sub = await self._call(
                op,
                "price",
                lambda key: self.processor.update_subscription_price(
                    subscription_id, price_ref, ProrationPolicy.NONE, idempotency_key=key
                ),
            )
            op.processor_changed = True

            snapshot.tier = target.slug
            snapshot.billing_cycle = cycle
            snapshot.clear_scheduled_change()
            self._apply_processor_state(snapshot, sub)
            self.logger.info(
                "subscription_downgraded",
                from_tier=previous,
                to_tier=target.slug,
                lost_features=lost,
            )
            return LifecycleResult(subscription=self._view(snapshot), lost_features=lost)

        return await self._run(tenant_id, "downgrade", idempotency_key, body)

    async def cancel(
        self,
        tenant_id: str,
        *,
        immediately: bool = False,
        idempotency_key: str | None = None,
    ) -> LifecycleResult:
        """Cancel now, or at the end of the current period (the default)."""

        async def body(op: _Operation) -> LifecycleResult:
            snapshot = await self._load(tenant_id)
            self._ensure_not_canceled(snapshot)
            subscription_id = self._require_handle(snapshot)

            if immediately:
                sub = await self._call(
                    op,
                    "cancel",
                    lambda key: self.processor.cancel_subscription(
                        subscription_id, idempotency_key=key
                    ),
                )
                op.processor_changed = True
                snapshot.clear_scheduled_change()
                self._apply_processor_state(snapshot, sub)
                snapshot.status = SubscriptionStatus.CANCELED
                snapshot.canceled_at = snapshot.canceled_at or self._clock()
            elif not snapshot.cancel_at_period_end:
                sub = await self._call(
                    op,
                    "cancel_at_period_end",
                    lambda key: self.processor.schedule_cancel_at_period_end(
                        subscription_id, idempotency_key=key
                    ),
                )
                op.processor_changed = True
                self._apply_processor_state(snapshot, sub)
                snapshot.cancel_at_period_end = True

            self.logger.info(
                "subscription_canceled",
                tier=snapshot.tier,
                immediately=immediately,
                effective_date=(
                    None
                    if immediately or snapshot.current_period_end is None
                    else snapshot.current_period_end.isoformat()
                ),
            )
            return LifecycleResult(subscription=self._view(snapshot))

        return await self._run(tenant_id, "cancel", idempotency_key, body)

    async def reactivate(
        self, tenant_id: str, *, idempotency_key: str | None = None
    ) -> LifecycleResult:
        """Undo a cancellation scheduled for the end of the period.

        Raises:
            NotPendingCancellationError: No cancellation is pending.
            SubscriptionCanceledError: The subscription already ended.
        """

        async def body(op: _Operation) -> LifecycleResult:
            snapshot = await self._load(tenant_id)
            self._ensure_not_canceled(snapshot)
            if not snapshot.cancel_at_period_end:
                raise NotPendingCancellationError(
                    current_tier=snapshot.tier, status=snapshot.status.value
                )
            subscription_id = self._require_handle(snapshot)
            sub = await self._call(
                op,
                "resume",
                lambda key: self.processor.resume_subscription(
                    subscription_id, idempotency_key=key
                ),
            )
            op.processor_changed = True
            self._apply_processor_state(snapshot, sub)
            snapshot.cancel_at_period_end = False
            self.logger.info("subscription_reactivated", tier=snapshot.tier)
            return LifecycleResult(subscription=self._view(snapshot))

        return await self._run(tenant_id, "reactivate", idempotency_key, body)

    async def convert_trial_to_paid(
        self,
        tenant_id: str,
        selected_tier: str | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> LifecycleResult:
        """End the trial now and start billing, optionally at another tier.

        Raises:
            NotOnTrialError: The subscription is not trialing.
        """
        target = self._parse_tier(selected_tier) if selected_tier else None

        async def body(op: _Operation) -> LifecycleResult:
            snapshot = await self._load(tenant_id)
            if snapshot.status != SubscriptionStatus.TRIAL:
                raise NotOnTrialError(current_tier=snapshot.tier, status=snapshot.status.value)
            tier = target or self.catalog.effective_tier(snapshot.tier)
            price_ref = None
            if tier.slug != snapshot.tier:
                price_ref = self.price_table.price_ref(tier.slug, snapshot.billing_cycle)
            subscription_id = self._require_handle(snapshot)

            sub = await self._call(
                op,
                "end_trial",
                lambda key: self.processor.end_trial_now(
                    subscription_id, price_ref=price_ref, idempotency_key=key
                ),
            )
            op.processor_changed = True

            previous = snapshot.tier
            snapshot.tier = tier.slug
            self._apply_processor_state(snapshot, sub)
            if snapshot.status == SubscriptionStatus.TRIAL:
                snapshot.status = SubscriptionStatus.ACTIVE
            # The processor echoes the old trial end; a converted trial has none.
            snapshot.trial_ends_at = None

            self.logger.info(
                "trial_converted",
                from_tier=previous,
                to_tier=tier.slug,
                status=snapshot.status.value,
            )
            return LifecycleResult(
                subscription=self._view(snapshot),
                prorated_amount=sub.invoice_amount_due,
                client_secret=sub.client_secret,
            )

        return await self._run(tenant_id, "convert_trial", idempotency_key, body)

    async def setup_alternate_payment_method(
        self,
        tenant_id: str,
        details: Mapping[str, Any],
        kind: str = "sepa",
        *,
        idempotency_key: str | None = None,
    ) -> LifecycleResult:
        """Start a SEPA Direct Debit mandate. Enterprise only.

        ``details`` carries ``iban``, ``account_holder_name`` and ``email``.
        Bank details go straight to the processor and are never logged.

        Raises:
            FeatureNotAvailableError: The billed tier is below Enterprise.
        """
        if kind != "sepa":
            raise InvalidPaymentMethodError(
                f"Unsupported payment method kind: {kind!r}",
                field="kind",
                value=kind,
                constraint="sepa",
            )
        missing = [k for k in ("iban", "account_holder_name", "email") if not details.get(k)]
        if missing:
            raise InvalidPaymentMethodError(
                "Incomplete bank details", field=missing[0], constraint="required"
            )

        async def body(op: _Operation) -> LifecycleResult:
            snapshot = await self._load(tenant_id)
            self._require_enterprise(snapshot, "sepa")
            customer_id = await self._ensure_customer(op, snapshot, details.get("email"))
            snapshot.external_customer_id = customer_id
            intent = await self._call(
                op,
                "setup_intent",
                lambda key: self.processor.create_setup_intent(
                    customer_id, kind, details, idempotency_key=key
                ),
            )
            op.processor_changed = True
            snapshot.payment_method = PaymentMethod.SEPA
            self.logger.info(
                "payment_method_setup_started",
                kind=kind,
                setup_intent_id=intent.setup_intent_id,
                status=intent.status,
            )
            return LifecycleResult(
                subscription=self._view(snapshot),
                client_secret=intent.client_secret,
                setup_intent=SetupIntentView(
                    setup_intent_id=intent.setup_intent_id,
                    client_secret=intent.client_secret,
                    status=intent.status,
                ),
            )

        return await self._run(tenant_id, "setup_payment_method", idempotency_key, body)

    async def create_manual_invoice(
        self,
        tenant_id: str,
        amount: Decimal | str | int | float,
        description: str,
        due_in_days: int | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> LifecycleResult:
        """Issue and send a one-off invoice. Enterprise only.

        Raises:
            InvalidAmountError: Amount not positive with at most two decimals,
                empty description, or due days out of range.
            FeatureNotAvailableError: The billed tier is below Enterprise.
        """
        value = _parse_amount(amount)
        text = (description or "").strip()
        if not text or len(text) > MAX_INVOICE_DESCRIPTION:
            raise InvalidAmountError(
                "Invoice description must be 1-500 characters",
                field="description",
                constraint=f"1..{MAX_INVOICE_DESCRIPTION} characters",
            )
        days = self.settings.default_invoice_due_days if due_in_days is None else due_in_days
        if not 1 <= days <= MAX_INVOICE_DUE_DAYS:
            raise InvalidAmountError(
                "Invoice due days out of range",
                field="due_in_days",
                value=days,
                constraint=f"1..{MAX_INVOICE_DUE_DAYS}",
            )

        async def body(op: _Operation) -> LifecycleResult:
            snapshot = await self._load(tenant_id)
            self._require_enterprise(snapshot, "invoice")
            customer_id = await self._ensure_customer(op, snapshot, None)
            snapshot.external_customer_id = customer_id
            invoice = await self._call(
                op,
                "invoice",
                lambda key: self.processor.create_and_send_invoice(
                    customer_id,
                    InvoiceLineItem(amount=value, description=text),
                    days,
                    idempotency_key=key,
                ),
            )
            op.processor_changed = True
            snapshot.payment_method = PaymentMethod.INVOICE
            self.logger.info(
                "manual_invoice_sent",
                invoice_id=invoice.invoice_id,
                amount=str(value),
                due_in_days=days,
            )
            return LifecycleResult(
                subscription=self._view(snapshot),
                invoice=ManualInvoiceView(
                    invoice_id=invoice.invoice_id,
                    hosted_url=invoice.hosted_url,
                    pdf_url=invoice.pdf_url,
                    due_date=invoice.due_date,
                    amount_due=invoice.amount_due,
                    status=invoice.status,
                ),
            )

        return await self._run(tenant_id, "manual_invoice", idempotency_key, body)

    async def apply_scheduled_tier_change(
        self, tenant_id: str, now: datetime | None = None
    ) -> LifecycleResult:
        """Carry out a deferred downgrade whose effective date has passed.

        Called by the period-end scheduler. Processor calls are keyed on the
        effective date, so running the job twice never swaps the price twice.

        Raises:
            NoScheduledChangeError: Nothing is scheduled, or not yet due.
        """
        moment = now or self._clock()

        async def body(op: _Operation) -> LifecycleResult:
            snapshot = await self._load(tenant_id)
            effective = snapshot.scheduled_effective_date
            if not snapshot.has_scheduled_change or effective is None or effective > moment:
                raise NoScheduledChangeError(
                    current_tier=snapshot.tier, status=snapshot.status.value
                )
            self._ensure_not_canceled(snapshot)
            target = self.catalog.effective_tier(snapshot.scheduled_tier)
            cycle = snapshot.scheduled_billing_cycle or snapshot.billing_cycle
            price_ref = self.price_table.price_ref(target.slug, cycle)
            subscription_id = self._require_handle(snapshot)
            op.request_key = f"effective-{effective:%Y%m%d}"

            sub = await self._call(
                op,
                "price",
                lambda key: self.processor.update_subscription_price(
                    subscription_id, price_ref, ProrationPolicy.NONE, idempotency_key=key
                ),
            )
            op.processor_changed = True

            previous = snapshot.tier
            lost = self.catalog.lost_features(previous, target.slug)
            snapshot.tier = target.slug
            snapshot.billing_cycle = cycle
            snapshot.clear_scheduled_change()
            self._apply_processor_state(snapshot, sub)
            self.logger.info(
                "scheduled_downgrade_applied",
                from_tier=previous,
                to_tier=target.slug,
                lost_features=lost,
            )
            return LifecycleResult(subscription=self._view(snapshot), lost_features=lost)

        return await self._run(tenant_id, "apply_scheduled_change", None, body)

    async def sync_from_processor(
        self, sub: ProcessorSubscription, *, tenant_id: str | None = None
    ) -> SubscriptionSnapshot | None:
        """Rewrite a snapshot from the processor's view of the subscription.

        Used by webhooks and by operator repair. The tenant is resolved from
        ``tenant_id``, then the subscription id, then the customer id.
        Returns ``None`` when no tenant can be resolved.
        """
        snapshot = None
        if tenant_id:
            snapshot = await self.repository.get(tenant_id)
        if snapshot is None:
            snapshot = await self.repository.get_by_external_subscription(sub.subscription_id)
        if snapshot is None and not tenant_id:
            snapshot = await self.repository.get_by_external_customer(sub.customer_id)
        resolved = tenant_id or (snapshot.tenant_id if snapshot else None)
        if resolved is None:
            self.logger.warning(
                "processor_subscription_unmatched",
                subscription_id=sub.subscription_id,
                customer_id=sub.customer_id,
            )
            return None

        async with self.locks.hold(resolved):
            with tenant_context(resolved):
                snapshot = await self.repository.get(resolved)
                created = snapshot is None
                if snapshot is None:
                    snapshot = _new_snapshot(resolved)
                    self.db.add(snapshot)

                priced = self.price_table.lookup(sub.price_ref)
                if priced is not None:
                    tier, cycle = priced
                    snapshot.tier = tier
                    snapshot.billing_cycle = cycle
                    if snapshot.scheduled_tier == tier:
                        snapshot.clear_scheduled_change()
                elif created:
                    snapshot.tier = self.catalog.lowest.slug
                    snapshot.billing_cycle = BillingCycle.MONTHLY
                self._apply_processor_state(snapshot, sub)
                if priced is None:
                    # Unknown price: keep the stored tier and leave it for an operator.
                    snapshot.needs_reconciliation = True
                    self.logger.warning(
                        "processor_price_unknown",
                        subscription_id=sub.subscription_id,
                        price_ref=sub.price_ref,
                    )
                if snapshot.status == SubscriptionStatus.CANCELED:
                    snapshot.clear_scheduled_change()

                await self._commit_sync(resolved)
                self.logger.info(
                    "subscription_synced",
                    subscription_id=sub.subscription_id,
                    tier=snapshot.tier,
                    status=snapshot.status.value,
                    created=created,
                )
                return snapshot

    async def record_payment_outcome(
        self, external_subscription_id: str, *, paid: bool
    ) -> SubscriptionSnapshot | None:
        """Flip status after an invoice was paid or its payment failed."""
        snapshot = await self.repository.get_by_external_subscription(external_subscription_id)
        if snapshot is None:
            self.logger.warning(
                "payment_outcome_unmatched", subscription_id=external_subscription_id
            )
            return None
        async with self.locks.hold(snapshot.tenant_id):
            with tenant_context(snapshot.tenant_id):
                snapshot = await self.repository.get(snapshot.tenant_id)
                if snapshot is None or snapshot.status == SubscriptionStatus.CANCELED:
                    return snapshot
                previous = snapshot.status
                if paid and previous == SubscriptionStatus.TRIAL:
                    # Trial start issues a zero invoice; only conversion ends a trial.
                    self.logger.info("trial_invoice_paid", subscription_id=external_subscription_id)
                    return snapshot
                snapshot.status = (
                    SubscriptionStatus.ACTIVE if paid else SubscriptionStatus.PAST_DUE
                )
                snapshot.last_synced_at = self._clock()
                await self._commit_sync(snapshot.tenant_id)
                self.logger.info(
                    "subscription_payment_recorded",
                    paid=paid,
                    from_status=previous.value,
                    to_status=snapshot.status.value,
                )
                return snapshot

    # ------------------------------------------------------------------
    # Operation runner
    # ------------------------------------------------------------------

    async def _run(
        self,
        tenant_id: str,
        operation: str,
        idempotency_key: str | None,
        body: Callable[[_Operation], Awaitable[LifecycleResult]],
    ) -> LifecycleResult:
        request_key = idempotency_key or uuid.uuid4().hex
        async with self.locks.hold(tenant_id):
            with tenant_context(tenant_id):
                stored = await self.idempotency.lookup(tenant_id, operation, request_key)
                if stored == PENDING:
                    raise DuplicateRequestError(details={"operation": operation})
                if stored is not None:
                    track_lifecycle(operation, "replayed")
                    self.logger.info("lifecycle_request_replayed", operation=operation)
                    return LifecycleResult.model_validate_json(stored)
                if not await self.idempotency.claim(tenant_id, operation, request_key):
                    raise DuplicateRequestError(details={"operation": operation})

                op = _Operation(tenant_id=tenant_id, name=operation, request_key=request_key)
                try:
                    result = await body(op)
                    await self._commit(op)
                except ProcessorTimeoutError:
                    await self.db.rollback()
                    await self._flag_for_reconciliation(op, reason="processor_timeout")
                    await self._release(op, request_key)
                    track_lifecycle(operation, "unknown")
                    raise
                except SalonBillingException as exc:
                    await self.db.rollback()
                    await self._release(op, request_key)
                    track_lifecycle(operation, "rejected" if exc.http_status < 500 else "failed")
                    raise
                except Exception:
                    await self.db.rollback()
                    await self._release(op, request_key)
                    track_lifecycle(operation, "failed")
                    raise

                await self.idempotency.complete(
                    tenant_id, operation, request_key, result.model_dump_json()
                )
                track_lifecycle(operation, "ok")
                return result

    async def _commit(self, op: _Operation) -> None:
        try:
            await self.db.commit()
        except StaleDataError as exc:
            await self.db.rollback()
            if op.processor_changed:
                raise await self._drift(op, exc) from exc
            raise ConcurrentModificationError(details={"operation": op.name}) from exc
        except SQLAlchemyError as exc:
            await self.db.rollback()
            if op.processor_changed:
                raise await self._drift(op, exc) from exc
            raise DatabaseError(f"Failed to record {op.name}") from exc

    async def _commit_sync(self, tenant_id: str) -> None:
        try:
            await self.db.commit()
        except StaleDataError as exc:
            await self.db.rollback()
            raise ConcurrentModificationError(details={"tenant_id": tenant_id}) from exc

    async def _drift(self, op: _Operation, exc: Exception) -> SnapshotDriftError:
        """Processor accepted a change the database could not record."""
        await self._flag_for_reconciliation(op, reason="local_write_failed")
        track_drift("commit")
        self.logger.error(
            "subscription_drift_detected",
            operation=op.name,
            error=str(exc),
            page=True,
        )
        return SnapshotDriftError(details={"operation": op.name})

    async def _flag_for_reconciliation(self, op: _Operation, *, reason: str) -> None:
        """Mark the snapshot in a fresh transaction. Never masks the original error."""
        try:
            snapshot = await self.repository.get(op.tenant_id)
            if snapshot is None:
                self.logger.error(
                    "subscription_outcome_unknown",
                    operation=op.name,
                    reason=reason,
                    page=True,
                )
                return
            snapshot.needs_reconciliation = True
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            self.logger.exception(
                "reconciliation_flag_failed", operation=op.name, reason=reason, page=True
            )
            return
        self.logger.warning(
            "subscription_flagged_for_reconciliation", operation=op.name, reason=reason
        )

    async def _release(self, op: _Operation, request_key: str) -> None:
        await self.idempotency.release(op.tenant_id, op.name, request_key)

    async def _call(
        self,
        op: _Operation,
        step: str,
        fn: Callable[[str | None], Awaitable[T]],
        *,
        read_only: bool = False,
    ) -> T:
        key = None if read_only else processor_key(op.tenant_id, op.name, op.request_key, step)
        return await call_processor(
            lambda: fn(key),
            operation=f"{op.name}.{step}",
            idempotency_key=key,
            read_only=read_only,
            config=self.retry_config,
            breaker=self.breaker,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _parse_tier(self, value: str | None, *, field: str = "tier") -> TierDefinition:
        tier = self.catalog.tier_of(value)
        if tier is None:
            raise InvalidTierError(value, field=field)
        return tier

    @staticmethod
    def _parse_cycle(value: str | None) -> BillingCycle:
        try:
            return BillingCycle(value)
        except ValueError:
            raise InvalidBillingCycleError(value) from None

    async def _load(self, tenant_id: str) -> SubscriptionSnapshot:
        snapshot = await self.repository.get(tenant_id)
        if snapshot is None:
            raise SubscriptionNotFoundError(tenant_id)
        return snapshot

    async def _load_changeable(self, tenant_id: str) -> SubscriptionSnapshot:
        """Snapshot that may change tier: live and not behind on payment."""
        snapshot = await self._load(tenant_id)
        self._ensure_not_canceled(snapshot)
        if snapshot.status == SubscriptionStatus.PAST_DUE:
            raise InvalidTransitionError(
                "Settle the outstanding payment before changing plans",
                current_tier=snapshot.tier,
                status=snapshot.status.value,
            )
        return snapshot

    @staticmethod
    def _ensure_not_canceled(snapshot: SubscriptionSnapshot) -> None:
        if snapshot.status == SubscriptionStatus.CANCELED:
            raise SubscriptionCanceledError(
                current_tier=snapshot.tier, status=snapshot.status.value
            )

    @staticmethod
    def _require_handle(snapshot: SubscriptionSnapshot) -> str:
        if not snapshot.external_subscription_id:
            raise InvalidTransitionError(
                "Subscription is not linked to the payment processor",
                current_tier=snapshot.tier,
                status=snapshot.status.value,
            )
        return snapshot.external_subscription_id

    def _require_enterprise(self, snapshot: SubscriptionSnapshot, option: str) -> None:
        # Billing options follow the billed tier, not trial access.
        decision = self.gate.decide_minimum_tier(snapshot, Tier.ENTERPRISE, trial_access=False)
        if not decision.allowed:
            raise FeatureNotAvailableError(
                decision.message,
                current_tier=snapshot.tier,
                requested_tier=Tier.ENTERPRISE.value,
                status=snapshot.status.value,
                details={"option": option, "code": decision.code.value},
            )

    async def _ensure_customer(
        self, op: _Operation, snapshot: SubscriptionSnapshot | None, email: str | None
    ) -> str:
        if snapshot is not None and snapshot.external_customer_id:
            return snapshot.external_customer_id
        return await self._call(
            op,
            "customer",
            lambda key: self.processor.get_or_create_customer(
                op.tenant_id, email, idempotency_key=key
            ),
        )

    async def _live_processor_subscription(
        self, op: _Operation, snapshot: SubscriptionSnapshot | None
    ) -> ProcessorSubscription | None:
        if snapshot is None or not snapshot.external_subscription_id:
            return None
        subscription_id = snapshot.external_subscription_id
        sub = await self._call(
            op,
            "retrieve",
            lambda _key: self.processor.retrieve_subscription(subscription_id),
            read_only=True,
        )
        if to_subscription_status(sub.status) == SubscriptionStatus.CANCELED:
            return None
        return sub

    def _apply_processor_state(
        self, snapshot: SubscriptionSnapshot, sub: ProcessorSubscription
    ) -> None:
        now = self._clock()
        snapshot.external_subscription_id = sub.subscription_id
        if sub.customer_id:
            snapshot.external_customer_id = sub.customer_id
        snapshot.status = to_subscription_status(sub.status)
        if sub.current_period_start is not None:
            snapshot.current_period_start = sub.current_period_start
        if sub.current_period_end is not None:
            snapshot.current_period_end = sub.current_period_end
        snapshot.cancel_at_period_end = sub.cancel_at_period_end
        if sub.trial_end is not None:
            snapshot.trial_ends_at = sub.trial_end
        if snapshot.status == SubscriptionStatus.CANCELED:
            snapshot.canceled_at = sub.canceled_at or snapshot.canceled_at or now
        method = to_payment_method(sub.default_payment_method_type)
        if method is not None:
            snapshot.payment_method = method
        snapshot.needs_reconciliation = False
        snapshot.last_synced_at = now

    def _trial_end(self) -> datetime:
        return self._clock() + timedelta(days=self.settings.trial_days)

    def _view(self, snapshot: SubscriptionSnapshot) -> SubscriptionView:
        return SubscriptionView.from_snapshot(snapshot, self.catalog)


def _parse_amount(amount: Decimal | str | int | float) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(
            "Invoice amount is not a number", field="amount", value=amount
        ) from None
    if not value.is_finite() or value <= 0:
        raise InvalidAmountError(
            "Invoice amount must be positive", field="amount", value=amount, constraint="> 0"
        )
    if value.as_tuple().exponent < -2:
        raise InvalidAmountError(
            "Invoice amount has more than two decimals",
            field="amount",
            value=amount,
            constraint="at most 2 decimal places",
        )
    return value.quantize(Decimal("0.01"))


def _new_snapshot(tenant_id: str) -> SubscriptionSnapshot:
    # Column defaults only apply at flush; the view is built before that.
    return SubscriptionSnapshot(
        tenant_id=tenant_id,
        payment_method=PaymentMethod.CARD,
        cancel_at_period_end=False,
        needs_reconciliation=False,
    )
