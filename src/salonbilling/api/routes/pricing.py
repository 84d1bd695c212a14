"""Public tier catalog."""

from typing import Annotated

from fastapi import APIRouter, Depends

from salonbilling.api.dependencies.billing import get_catalog
from salonbilling.billing.schemas import TierResponse
from salonbilling.billing.tiers import TierCatalog

router = APIRouter()


@router.get("/tiers", response_model=list[TierResponse])
async def list_tiers(
    catalog: Annotated[TierCatalog, Depends(get_catalog)],
) -> list[TierResponse]:
    """Tiers in ascending order with prices, limits and enabled features."""
    return [TierResponse.from_definition(tier, catalog) for tier in catalog.tiers]
