"""Per-tenant mutual exclusion for subscription writes."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class TenantLockRegistry:
    """Arena of ``asyncio.Lock`` objects keyed by tenant.

    Serializes lifecycle operations for one tenant inside this process while
    unrelated tenants proceed in parallel. Locks are dropped once no holder
    or waiter remains, so the arena does not grow with the tenant count.
    Cross-process races are caught by the snapshot's version column.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, tenant_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        self._users[tenant_id] = self._users.get(tenant_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[tenant_id] -= 1
            if self._users[tenant_id] == 0:
                del self._users[tenant_id]
                del self._locks[tenant_id]

    def __len__(self) -> int:
        return len(self._locks)
