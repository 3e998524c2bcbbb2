import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from factmemory.core.exceptions import ConfigurationError
from factmemory.database.models import FactCacheEntry
from factmemory.repositories.base_repository import BaseRepository

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class CacheRepository(BaseRepository[FactCacheEntry]):
    """Repository for fact_cache rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, FactCacheEntry)

    async def get_valid(self, user_id: str, cache_key: str, now: datetime) -> Optional[FactCacheEntry]:
        """Return the row only if it has not expired."""
        query = select(FactCacheEntry).where(
            FactCacheEntry.user_id == user_id,
            FactCacheEntry.cache_key == cache_key,
            FactCacheEntry.expires_at > now,
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def upsert(self, user_id: str, cache_key: str, cache_value: Any, expires_at: datetime, now: datetime) -> None:
        """Insert or overwrite the (user_id, cache_key) row."""
        dialect = self.session.get_bind().dialect.name
        insert = _INSERT_BY_DIALECT.get(dialect)
        if insert is None:
            raise ConfigurationError(
                f"Cache upsert is not supported on dialect {dialect}", details={"dialect": dialect}
            )

        stmt = insert(FactCacheEntry).values(
            id=uuid.uuid4(),
            user_id=user_id,
            cache_key=cache_key,
            cache_value=cache_value,
            expires_at=expires_at,
            last_updated=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[FactCacheEntry.user_id, FactCacheEntry.cache_key],
            set_={
                "cache_value": stmt.excluded.cache_value,
                "expires_at": stmt.excluded.expires_at,
                "last_updated": stmt.excluded.last_updated,
            },
        )
        await self.session.execute(stmt)

    async def delete_for_user(self, user_id: str) -> int:
        result = await self.session.execute(delete(FactCacheEntry).where(FactCacheEntry.user_id == user_id))
        return result.rowcount or 0

    async def delete_expired(self, now: datetime) -> int:
        result = await self.session.execute(delete(FactCacheEntry).where(FactCacheEntry.expires_at <= now))
        return result.rowcount or 0

    async def count_for_user(self, user_id: str) -> int:
        query = select(func.count()).select_from(FactCacheEntry).where(FactCacheEntry.user_id == user_id)
        result = await self.session.execute(query)
        return result.scalar_one()
