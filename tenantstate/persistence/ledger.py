from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable


logger = logging.getLogger(__name__)

ProvisionFn = Callable[[], Awaitable[None]]
ReleaseFn = Callable[[], None]


class ResourceLedger:
    """Process-local record of schemas and tables believed to exist.

    Provisioning DDL is not linearizable under parallel cold starts, so the
    ledger funnels first use of each resource through a per-resource lock and
    runs the DDL at most once per process. Entries are never re-validated;
    callers drop them through the returned release handle when a statement
    proves the resource missing, and the next call provisions again.

    Growth is unbounded in the number of tenants served by the process.
    """

    def __init__(self) -> None:
        self._entries: dict[str, datetime] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def contains(self, resource_key: str) -> bool:
        return resource_key in self._entries

    def entries(self) -> dict[str, datetime]:
        return dict(self._entries)

    def _lock_for(self, resource_key: str) -> asyncio.Lock:
        # Double-checked creation keeps exactly one lock per key.
        lock = self._locks.get(resource_key)
        if lock is None:
            lock = self._locks.setdefault(resource_key, asyncio.Lock())
        return lock

    def _release_handle(self, resource_key: str) -> ReleaseFn:
        def release() -> None:
            if self._entries.pop(resource_key, None) is not None:
                logger.info("resource_ledger_released", extra={"resource_key": resource_key})

        return release

    async def ensure_exists(self, resource_key: str, provision: ProvisionFn) -> ReleaseFn:
        if resource_key in self._entries:
            return self._release_handle(resource_key)
        async with self._lock_for(resource_key):
            # Another request may have provisioned while this one waited on the lock.
            if resource_key not in self._entries:
                await provision()
                self._entries[resource_key] = datetime.now(timezone.utc)
                logger.info("resource_provisioned", extra={"resource_key": resource_key})
        return self._release_handle(resource_key)
