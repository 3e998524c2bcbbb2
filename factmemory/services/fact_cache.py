"""Per-user read-through cache of critical-fact views.

A ``UserFactCache`` is bound to one session and one user. It never decides
what a fact is: every value it stores comes from a loader that reads the
Entity Store, so a row can always be thrown away and re-derived.
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from factmemory.database.models import utc_now
from factmemory.repositories.cache_repository import CacheRepository
from factmemory.utils.logging import get_logger

LOGGER = get_logger(__name__)

USER_NAME_KEY = "user_name"
PET_NAMES_KEY = "pet_names"
CRITICAL_FACTS_KEY = "critical_facts"
CACHE_KEYS = (USER_NAME_KEY, PET_NAMES_KEY, CRITICAL_FACTS_KEY)


class _Miss:
    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


class UserFactCache:
    """TTL-bound cache rows for a single user."""

    def __init__(self, session: AsyncSession, user_id: str, ttl_hours: float = 24):
        self.session = session
        self.user_id = user_id
        self.ttl = timedelta(hours=ttl_hours)
        self.repository = CacheRepository(session)

    def _check_key(self, cache_key: str) -> None:
        if cache_key not in CACHE_KEYS:
            raise KeyError(f"Unknown fact cache key: {cache_key}")

    async def lookup(self, cache_key: str) -> Any:
        """Return the cached value, or ``MISS`` if absent or expired."""
        self._check_key(cache_key)
        entry = await self.repository.get_valid(self.user_id, cache_key, utc_now())
        if entry is None:
            return MISS
        LOGGER.debug("Fact cache hit", extra={"user_id": self.user_id, "cache_key": cache_key})
        return entry.cache_value

    async def get_or_populate(self, cache_key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value, populating it from ``loader`` on a miss.

        Populating is idempotent: the row is upserted, so two racing populates
        for the same key both leave one row holding the same projection.
        Exceptions from the loader (e.g. NotFoundError) propagate and nothing
        is cached.
        """
        cached = await self.lookup(cache_key)
        if cached is not MISS:
            return cached

        value = await loader()
        await self.store(cache_key, value)
        LOGGER.debug("Fact cache populated", extra={"user_id": self.user_id, "cache_key": cache_key})
        return value

    async def store(self, cache_key: str, value: Any) -> None:
        self._check_key(cache_key)
        now = utc_now()
        await self.repository.upsert(
            user_id=self.user_id,
            cache_key=cache_key,
            cache_value=value,
            expires_at=now + self.ttl,
            now=now,
        )

    async def invalidate(self) -> int:
        """Delete every cache row of this user inside the caller's transaction."""
        deleted = await self.repository.delete_for_user(self.user_id)
        if deleted:
            LOGGER.debug("Fact cache invalidated", extra={"user_id": self.user_id, "rows": deleted})
        return deleted

    async def entry_count(self) -> int:
        return await self.repository.count_for_user(self.user_id)


async def purge_expired_entries(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Housekeeping: drop expired rows for all users."""
    deleted = await CacheRepository(session).delete_expired(now or utc_now())
    LOGGER.info("Purged expired fact cache rows", extra={"rows": deleted})
    return deleted
