"""Idempotency-key bookkeeping backed by Redis.

Two layers use the same request key:

* the processor receives ``<tenant>:<operation>:<request key>:<step>`` on
  every mutating call, so a retried request never repeats a charge;
* this store keeps the finished result under the request key, so a replay
  returns the first response without touching the processor again.
"""

from __future__ import annotations

from redis.asyncio import Redis

from salonbilling.core.logging import LoggerMixin

PENDING = "__pending__"


def processor_key(tenant_id: str, operation: str, request_key: str, step: str) -> str:
    """Stable key for one processor call of one logical request."""
    return f"{tenant_id}:{operation}:{request_key}:{step}"


class IdempotencyStore(LoggerMixin):
    """Request results and processed webhook events, keyed in Redis."""

    def __init__(self, redis: Redis, *, ttl_seconds: int = 60 * 60 * 24) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _result_key(tenant_id: str, operation: str, request_key: str) -> str:
        return f"idemp:{tenant_id}:{operation}:{request_key}"

    async def lookup(self, tenant_id: str, operation: str, request_key: str) -> str | None:
        """Stored result payload, ``PENDING`` while in flight, or ``None``."""
        value = await self.redis.get(self._result_key(tenant_id, operation, request_key))
        if isinstance(value, bytes):
            value = value.decode()
        return value

    async def claim(self, tenant_id: str, operation: str, request_key: str) -> bool:
        """Mark the request as in flight. False if someone else holds it."""
        was_set = await self.redis.set(
            self._result_key(tenant_id, operation, request_key),
            PENDING,
            ex=self.ttl_seconds,
            nx=True,
        )
        return bool(was_set)

    async def complete(
        self, tenant_id: str, operation: str, request_key: str, payload: str
    ) -> None:
        await self.redis.set(
            self._result_key(tenant_id, operation, request_key),
            payload,
            ex=self.ttl_seconds,
        )

    async def release(self, tenant_id: str, operation: str, request_key: str) -> None:
        """Drop an in-flight claim after a failure so the caller can retry."""
        await self.redis.delete(self._result_key(tenant_id, operation, request_key))

    async def mark_event_processed(self, event_id: str) -> bool:
        """Record a processor event id. False if it was already handled."""
        was_set = await self.redis.set(
            f"webhook:event:{event_id}", "1", ex=self.ttl_seconds * 7, nx=True
        )
        if not was_set:
            self.logger.info("webhook_event_duplicate", event_id=event_id)
        return bool(was_set)

    async def forget_event(self, event_id: str) -> None:
        """Allow an event to be processed again after a handler failure."""
        await self.redis.delete(f"webhook:event:{event_id}")
