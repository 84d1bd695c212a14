"""Entitlement introspection routes.

These answer "would this be allowed?" with a 200 and the decision in the
body. Routes that must be blocked use the gates in
``salonbilling.api.dependencies.entitlements`` instead.
"""

from typing import Annotated

from fastapi import APIRouter, Query

from salonbilling.api.dependencies.billing import Gate
from salonbilling.api.dependencies.tenant import TenantId
from salonbilling.billing.entitlements import AccessDecision
from salonbilling.billing.schemas import AccessDecisionResponse

router = APIRouter()


def _response(decision: AccessDecision) -> AccessDecisionResponse:
    return AccessDecisionResponse(**decision.as_dict())


@router.get("/check", response_model=AccessDecisionResponse)
async def check_feature(
    tenant_id: TenantId,
    gate: Gate,
    feature: Annotated[str, Query(min_length=1, max_length=64)],
) -> AccessDecisionResponse:
    return _response(await gate.check_access(tenant_id, feature))


@router.get("/check-any", response_model=AccessDecisionResponse)
async def check_any_feature(
    tenant_id: TenantId,
    gate: Gate,
    features: Annotated[list[str], Query(min_length=1)],
) -> AccessDecisionResponse:
    """Allowed if the tenant has at least one of ``features``."""
    return _response(await gate.check_any_access(tenant_id, features))


@router.get("/minimum-tier", response_model=AccessDecisionResponse)
async def check_minimum_tier(
    tenant_id: TenantId,
    gate: Gate,
    tier: Annotated[str, Query(min_length=1, max_length=32)],
) -> AccessDecisionResponse:
    return _response(await gate.require_minimum_tier(tenant_id, tier))


@router.get("/soft-check", response_model=AccessDecisionResponse)
async def soft_check_feature(
    tenant_id: TenantId,
    gate: Gate,
    feature: Annotated[str, Query(min_length=1, max_length=64)],
) -> AccessDecisionResponse:
    """Always allowed; carries a warning when the feature is not in the plan."""
    return _response(await gate.soft_check(tenant_id, feature))
