"""Feature gates for routes.

Usage::

    @router.get("/portfolio", dependencies=[Depends(require_feature("portfolioManagement"))])
    async def list_portfolio(...): ...

A denial becomes a 403 carrying the denial code and upgrade link. Every gate
leaves ``request.state.subscription = {"tier", "status"}`` for the handler.
"""

from collections.abc import Awaitable, Callable, Sequence

from fastapi import Request

from salonbilling.api.dependencies.billing import Gate
from salonbilling.api.dependencies.tenant import TenantId
from salonbilling.billing.entitlements import AccessDecision
from salonbilling.billing.tiers import Tier
from salonbilling.core.exceptions import EntitlementDeniedError

GateDependency = Callable[..., Awaitable[AccessDecision]]


def _attach(request: Request, decision: AccessDecision) -> None:
    request.state.subscription = {"tier": decision.current_tier, "status": decision.status}
    request.state.entitlement_warning = decision.warning


def _enforce(request: Request, decision: AccessDecision) -> AccessDecision:
    _attach(request, decision)
    if not decision.allowed:
        raise EntitlementDeniedError(
            decision.message or "Access denied by subscription",
            code=decision.code.value,
            current_tier=decision.current_tier,
            required_tier=decision.required_tier,
            upgrade_url=decision.upgrade_url,
            user_message=decision.message,
        )
    return decision


def require_feature(capability: str) -> GateDependency:
    async def dependency(request: Request, tenant_id: TenantId, gate: Gate) -> AccessDecision:
        return _enforce(request, await gate.check_access(tenant_id, capability))

    return dependency


def require_any_feature(*capabilities: str | Sequence[str]) -> GateDependency:
    keys: list[str] = []
    for item in capabilities:
        keys.extend([item] if isinstance(item, str) else item)

    async def dependency(request: Request, tenant_id: TenantId, gate: Gate) -> AccessDecision:
        return _enforce(request, await gate.check_any_access(tenant_id, keys))

    return dependency


def require_minimum_tier(tier: Tier | str) -> GateDependency:
    async def dependency(request: Request, tenant_id: TenantId, gate: Gate) -> AccessDecision:
        return _enforce(request, await gate.require_minimum_tier(tenant_id, tier))

    return dependency


def soft_feature(capability: str) -> GateDependency:
    """Never blocks; sets ``request.state.entitlement_warning`` when not entitled."""

    async def dependency(request: Request, tenant_id: TenantId, gate: Gate) -> AccessDecision:
        decision = await gate.soft_check(tenant_id, capability)
        _attach(request, decision)
        return decision

    return dependency
