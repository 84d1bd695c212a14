"""FastAPI application factory and main entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from salonbilling import __version__
from salonbilling.api.middleware.exception_handler import setup_exception_handlers
from salonbilling.api.middleware.logging import (
    CORRELATION_ID_HEADER,
    IDEMPOTENCY_HEADER,
    REQUEST_ID_HEADER,
    LoggingMiddleware,
)
from salonbilling.api.middleware.metrics import MetricsMiddleware
from salonbilling.api.routes import (
    entitlements,
    health,
    internal,
    pricing,
    sms,
    subscriptions,
    webhooks,
)
from salonbilling.core.config import get_settings
from salonbilling.core.database import engine
from salonbilling.core.logging import configure_logging, get_logger
from salonbilling.core.redis import close_redis

settings = get_settings()

configure_logging(
    json_logs=settings.is_production,
    log_level="DEBUG" if settings.debug else "INFO",
)

logger = get_logger(__name__)

# (router, path under the versioned prefix, OpenAPI tag)
VERSIONED_ROUTERS: tuple[tuple[APIRouter, str, str], ...] = (
    (subscriptions.router, "/subscriptions", "Subscriptions"),
    (entitlements.router, "/entitlements", "Entitlements"),
    (sms.router, "/sms", "SMS"),
    (pricing.router, "/pricing", "Pricing"),
    (webhooks.router, "/webhooks", "Webhooks"),
)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        version=__version__,
    )
    if not settings.stripe_secret_key:
        logger.warning("stripe_secret_key_missing")
    missing_prices = sorted(
        f"{tier}_{cycle}" for (tier, cycle), ref in settings.price_ids().items() if not ref
    )
    if missing_prices:
        logger.warning("stripe_price_ids_missing", prices=missing_prices)

    yield

    logger.info("application_shutdown")
    await close_redis()
    await engine.dispose()


def create_app() -> FastAPI:
    """Build the billing API with its middleware, error envelope and routers."""
    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="Subscription entitlements and billing for salon booking tenants",
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[CORRELATION_ID_HEADER, REQUEST_ID_HEADER, IDEMPOTENCY_HEADER],
    )
    # Added last so it runs first and binds the correlation id for everything below.
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)

    setup_exception_handlers(app)

    app.include_router(health.router)
    for router, path, tag in VERSIONED_ROUTERS:
        app.include_router(router, prefix=settings.api_v1_prefix + path, tags=[tag])
    app.include_router(
        internal.router,
        prefix=f"{settings.api_v1_prefix}/internal",
        tags=["Internal"],
        include_in_schema=not settings.is_production,
    )

    return app


app = create_app()
