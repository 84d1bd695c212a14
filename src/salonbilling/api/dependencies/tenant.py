"""Tenant identity dependency.

The authentication layer in front of this service resolves the salon and
forwards it in the ``X-Salon-Id`` header.
"""

from typing import Annotated

from fastapi import Depends, Header

from salonbilling.core.exceptions import TenantRequiredError

TENANT_HEADER = "X-Salon-Id"
MAX_TENANT_ID_LENGTH = 64


async def get_tenant_id(
    x_salon_id: Annotated[str | None, Header(alias=TENANT_HEADER)] = None,
) -> str:
    """Salon the request acts for.

    Raises:
        TenantRequiredError: Header missing, blank or too long.
    """
    tenant_id = (x_salon_id or "").strip()
    if not tenant_id or len(tenant_id) > MAX_TENANT_ID_LENGTH:
        raise TenantRequiredError(details={"header": TENANT_HEADER})
    return tenant_id


TenantId = Annotated[str, Depends(get_tenant_id)]
