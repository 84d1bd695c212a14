"""API routes module."""

from salonbilling.api.routes.entitlements import router as entitlements_router
from salonbilling.api.routes.health import router as health_router
from salonbilling.api.routes.internal import router as internal_router
from salonbilling.api.routes.pricing import router as pricing_router
from salonbilling.api.routes.sms import router as sms_router
from salonbilling.api.routes.subscriptions import router as subscriptions_router
from salonbilling.api.routes.webhooks import router as webhooks_router

__all__ = [
    "entitlements_router",
    "health_router",
    "internal_router",
    "pricing_router",
    "sms_router",
    "subscriptions_router",
    "webhooks_router",
]
