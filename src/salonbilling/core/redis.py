"""Redis client shared by the idempotency store and webhook deduplication."""

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from salonbilling.core.config import get_settings
from salonbilling.core.logging import get_logger

logger = get_logger(__name__)

_client: Redis | None = None


def _build_client() -> Redis:
    settings = get_settings()
    return redis.from_url(  # type: ignore[no-untyped-call]
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
        health_check_interval=30,
    )


async def get_redis() -> Redis:
    """Process-wide client; redis-py pools the connections."""
    global _client
    if _client is None:
        _client = _build_client()
    return _client


async def close_redis() -> None:
    global _client
    if _client is None:
        return
    client, _client = _client, None
    await client.aclose()


async def check_redis_connection() -> bool:
    """Readiness probe. Lifecycle operations cannot claim idempotency keys without Redis."""
    try:
        client = await get_redis()
        return bool(await client.ping())
    except (RedisError, OSError) as exc:
        logger.warning("redis_unreachable", error=str(exc))
        return False
