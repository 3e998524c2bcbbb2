"""Per-user write serialization.

Every write to a user's facts (extraction, conflict resolution, deletion) and
every cache populate runs while holding that user's lock, so a populate can
never persist a view that predates a committed write. Users never contend
with each other.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from factmemory.utils.logging import get_logger

LOGGER = get_logger(__name__)


class UserLockRegistry:
    """Registry of asyncio locks keyed by user id."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks.setdefault(user_id, asyncio.Lock())
        return lock

    def is_locked(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def acquire(self, user_id: str) -> AsyncIterator[None]:
        """Hold the user's lock for the duration of the block."""
        lock = self.get(user_id)
        if lock.locked():
            LOGGER.debug("Waiting for user write lock", extra={"user_id": user_id})
        async with lock:
            yield
