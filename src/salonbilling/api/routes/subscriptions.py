"""Subscription lifecycle routes.

Every mutating route accepts an ``Idempotency-Key`` header. Sending the same
key again returns the first result without touching the payment processor.
"""

from typing import Annotated

from fastapi import APIRouter, Header, status

from salonbilling.api.dependencies.billing import Lifecycle
from salonbilling.api.dependencies.tenant import TenantId
from salonbilling.billing.schemas import (
    CancelRequest,
    ConvertTrialRequest,
    DowngradeRequest,
    LifecycleResult,
    ManualInvoiceRequest,
    SepaSetupRequest,
    SubscriptionCreateRequest,
    SubscriptionView,
    UpgradeRequest,
)

router = APIRouter()

IdempotencyKey = Annotated[str | None, Header(alias="Idempotency-Key", max_length=255)]


@router.get("/status", response_model=SubscriptionView)
async def get_subscription_status(
    tenant_id: TenantId,
    lifecycle: Lifecycle,
) -> SubscriptionView:
    """Current subscription, including price and any scheduled change."""
    return await lifecycle.get_status(tenant_id)


@router.post("", response_model=LifecycleResult, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: SubscriptionCreateRequest,
    tenant_id: TenantId,
    lifecycle: Lifecycle,
    idempotency_key: IdempotencyKey = None,
) -> LifecycleResult:
    """Start a subscription or a free trial."""
    return await lifecycle.create(
        tenant_id,
        body.tier,
        body.billing_cycle,
        payment_method_ref=body.payment_method_ref,
        email=body.email,
        trial=body.trial,
        idempotency_key=idempotency_key,
    )


@router.post("/upgrade", response_model=LifecycleResult)
async def upgrade_subscription(
    body: UpgradeRequest,
    tenant_id: TenantId,
    lifecycle: Lifecycle,
    idempotency_key: IdempotencyKey = None,
) -> LifecycleResult:
    """Upgrade immediately; the response carries the prorated amount charged."""
    return await lifecycle.upgrade(
        tenant_id, body.tier, body.billing_cycle, idempotency_key=idempotency_key
    )


@router.post("/downgrade", response_model=LifecycleResult)
async def downgrade_subscription(
    body: DowngradeRequest,
    tenant_id: TenantId,
    lifecycle: Lifecycle,
    idempotency_key: IdempotencyKey = None,
) -> LifecycleResult:
    """Downgrade now or at period end; the response lists features that will be lost."""
    return await lifecycle.downgrade(
        tenant_id,
        body.tier,
        body.billing_cycle,
        immediate=body.immediate,
        idempotency_key=idempotency_key,
    )


@router.post("/cancel", response_model=LifecycleResult)
async def cancel_subscription(
    body: CancelRequest,
    tenant_id: TenantId,
    lifecycle: Lifecycle,
    idempotency_key: IdempotencyKey = None,
) -> LifecycleResult:
    return await lifecycle.cancel(
        tenant_id, immediately=body.immediately, idempotency_key=idempotency_key
    )


@router.post("/reactivate", response_model=LifecycleResult)
async def reactivate_subscription(
    tenant_id: TenantId,
    lifecycle: Lifecycle,
    idempotency_key: IdempotencyKey = None,
) -> LifecycleResult:
    return await lifecycle.reactivate(tenant_id, idempotency_key=idempotency_key)


@router.post("/convert-trial", response_model=LifecycleResult)
async def convert_trial(
    body: ConvertTrialRequest,
    tenant_id: TenantId,
    lifecycle: Lifecycle,
    idempotency_key: IdempotencyKey = None,
) -> LifecycleResult:
    return await lifecycle.convert_trial_to_paid(
        tenant_id, body.tier, idempotency_key=idempotency_key
    )


@router.post("/sepa", response_model=LifecycleResult)
async def setup_sepa_debit(
    body: SepaSetupRequest,
    tenant_id: TenantId,
    lifecycle: Lifecycle,
    idempotency_key: IdempotencyKey = None,
) -> LifecycleResult:
    """Start a SEPA Direct Debit mandate (Enterprise)."""
    return await lifecycle.setup_alternate_payment_method(
        tenant_id,
        {
            "iban": body.iban.replace(" ", "").upper(),
            "account_holder_name": body.account_holder_name,
            "email": str(body.email),
        },
        "sepa",
        idempotency_key=idempotency_key,
    )


@router.post("/invoices", response_model=LifecycleResult, status_code=status.HTTP_201_CREATED)
async def create_manual_invoice(
    body: ManualInvoiceRequest,
    tenant_id: TenantId,
    lifecycle: Lifecycle,
    idempotency_key: IdempotencyKey = None,
) -> LifecycleResult:
    """Issue and email a one-off invoice (Enterprise)."""
    return await lifecycle.create_manual_invoice(
        tenant_id,
        body.amount,
        body.description,
        body.due_in_days,
        idempotency_key=idempotency_key,
    )
