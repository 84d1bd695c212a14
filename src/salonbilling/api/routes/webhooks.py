"""Payment processor webhooks."""

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request

from salonbilling.api.dependencies.billing import get_webhook_handler
from salonbilling.billing.webhooks import StripeWebhookHandler

router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    handler: Annotated[StripeWebhookHandler, Depends(get_webhook_handler)],
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> dict[str, str | bool]:
    """Verify and apply a Stripe event. Errors make Stripe redeliver it."""
    payload = await request.body()
    event = handler.verify(payload, stripe_signature)
    outcome = await handler.handle(event)
    return {"received": True, "outcome": outcome}
