"""Liveness, readiness and Prometheus scrape endpoints.

These live outside ``/api/v1`` and need no tenant header.
"""

import asyncio

from fastapi import APIRouter, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from salonbilling import __version__
from salonbilling.core.database import check_database_connection
from salonbilling.core.redis import check_redis_connection

router = APIRouter(tags=["Health"])


class LivenessStatus(BaseModel):
    status: str = "healthy"
    version: str = __version__


class ReadinessStatus(BaseModel):
    """Snapshot store and idempotency store reachability."""

    status: str
    database: bool
    redis: bool

    @property
    def ready(self) -> bool:
        return self.database and self.redis


@router.get("/health", response_model=LivenessStatus)
async def liveness() -> LivenessStatus:
    return LivenessStatus()


@router.get(
    "/health/ready",
    response_model=ReadinessStatus,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ReadinessStatus}},
)
async def readiness(response: Response) -> ReadinessStatus:
    """Report ``degraded`` with 503 until both stores answer."""
    database_ok, redis_ok = await asyncio.gather(
        check_database_connection(), check_redis_connection()
    )
    report = ReadinessStatus(
        status="ready" if database_ok and redis_ok else "degraded",
        database=database_ok,
        redis=redis_ok,
    )
    if not report.ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return report


@router.get("/metrics", include_in_schema=False)
async def prometheus_scrape() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
