"""
services/booking/locks.py
Per-resource schedule locks. Booking creation holds the resource's lock
from the overlap re-check through commit.

PostgreSQL: pg_advisory_xact_lock, released by the store at commit/rollback,
so it serializes every worker process. Other backends: an in-process
asyncio.Lock per resource, reference counted so idle resources don't pile up.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def advisory_key(resource_id: uuid.UUID) -> int:
    """Signed 64-bit key for pg_advisory_xact_lock."""
    return (resource_id.int & 0xFFFFFFFFFFFFFFFF) - (1 << 63)


class ScheduleLocks:
    def __init__(self):
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}
        self._waiters: Dict[uuid.UUID, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, db: AsyncSession, resource_id: uuid.UUID) -> AsyncIterator[None]:
        """
        Serialize schedule writes for one resource. The caller must commit
        (or roll back) before leaving the block.
        """
        if db.get_bind().dialect.name == "postgresql":
            await db.execute(select(func.pg_advisory_xact_lock(advisory_key(resource_id))))
            yield
            return

        lock = self._locks.setdefault(resource_id, asyncio.Lock())
        self._waiters[resource_id] = self._waiters.get(resource_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[resource_id] -= 1
            if self._waiters[resource_id] == 0:
                del self._waiters[resource_id]
                del self._locks[resource_id]


schedule_locks = ScheduleLocks()
