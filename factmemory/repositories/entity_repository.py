import uuid
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from factmemory.database.models import FactAlias, FactEntity
from factmemory.repositories.base_repository import BaseRepository

LIVE_STATUSES = ("proposed", "active")


class EntityRepository(BaseRepository[FactEntity]):
    """Repository for FactEntity records, always scoped by user_id."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, FactEntity)

    async def get_for_user(self, user_id: str, entity_id: uuid.UUID) -> Optional[FactEntity]:
        query = select(FactEntity).where(FactEntity.user_id == user_id, FactEntity.id == entity_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def find_live(
        self, user_id: str, entity_type: str, entity_subtype: str, canonical_name: str
    ) -> Optional[FactEntity]:
        """Exact match on the live-uniqueness key."""
        query = select(FactEntity).where(
            FactEntity.user_id == user_id,
            FactEntity.entity_type == entity_type,
            FactEntity.entity_subtype == entity_subtype,
            FactEntity.canonical_name == canonical_name,
            FactEntity.is_active.is_(True),
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def find_by_normalized_name(
        self,
        user_id: str,
        entity_type: str,
        normalized_name: str,
        entity_subtype: Optional[str] = None,
        active_only: bool = False,
    ) -> Sequence[FactEntity]:
        """Live entities whose normalized canonical name matches, best first."""
        query = select(FactEntity).where(
            FactEntity.user_id == user_id,
            FactEntity.entity_type == entity_type,
            FactEntity.normalized_name == normalized_name,
            FactEntity.status.in_(("active",) if active_only else LIVE_STATUSES),
        )
        if entity_subtype is not None:
            query = query.where(FactEntity.entity_subtype == entity_subtype)
        query = query.order_by(FactEntity.confidence.desc(), FactEntity.created_at.asc())
        result = await self.session.execute(query)
        return result.scalars().all()

    async def find_by_alias(
        self,
        user_id: str,
        entity_type: str,
        normalized_alias: str,
        entity_subtype: Optional[str] = None,
        active_only: bool = False,
    ) -> Sequence[FactEntity]:
        query = (
            select(FactEntity)
            .join(FactAlias, FactAlias.entity_id == FactEntity.id)
            .where(
                FactEntity.user_id == user_id,
                FactEntity.entity_type == entity_type,
                FactAlias.normalized_alias == normalized_alias,
                FactEntity.status.in_(("active",) if active_only else LIVE_STATUSES),
            )
            .distinct()
        )
        if entity_subtype is not None:
            query = query.where(FactEntity.entity_subtype == entity_subtype)
        query = query.order_by(FactEntity.confidence.desc(), FactEntity.created_at.asc())
        result = await self.session.execute(query)
        return result.scalars().all()

    async def list_live(
        self,
        user_id: str,
        entity_type: Optional[str] = None,
        entity_subtype: Optional[str] = None,
        include_proposed: bool = True,
    ) -> Sequence[FactEntity]:
        """Live entities for a user, oldest first."""
        statuses = LIVE_STATUSES if include_proposed else ("active",)
        query = select(FactEntity).where(FactEntity.user_id == user_id, FactEntity.status.in_(statuses))
        if entity_type is not None:
            query = query.where(FactEntity.entity_type == entity_type)
        if entity_subtype is not None:
            query = query.where(FactEntity.entity_subtype == entity_subtype)
        query = query.order_by(FactEntity.created_at.asc(), FactEntity.canonical_name.asc())
        result = await self.session.execute(query)
        return result.scalars().all()

    async def get_active_user_entity(self, user_id: str) -> Optional[FactEntity]:
        """The person/user entity used for get_user_name.

        Ordered by confidence then recency, so a single deterministic row wins
        even if a merge is still pending.
        """
        query = (
            select(FactEntity)
            .where(
                FactEntity.user_id == user_id,
                FactEntity.entity_type == "person",
                FactEntity.entity_subtype == "user",
                FactEntity.status == "active",
            )
            .order_by(
                FactEntity.confidence.desc(),
                FactEntity.updated_at.desc(),
                FactEntity.created_at.asc(),
                FactEntity.id.asc(),
            )
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def count_active(self, user_id: str) -> int:
        query = select(func.count()).select_from(FactEntity).where(
            FactEntity.user_id == user_id, FactEntity.status.in_(LIVE_STATUSES)
        )
        result = await self.session.execute(query)
        return result.scalar_one()

    async def last_updated(self, user_id: str) -> Optional[datetime]:
        query = select(func.max(FactEntity.updated_at)).where(FactEntity.user_id == user_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()


class AliasRepository(BaseRepository[FactAlias]):
    """Repository for FactAlias records."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, FactAlias)

    async def get(self, entity_id: uuid.UUID, alias_name: str) -> Optional[FactAlias]:
        query = select(FactAlias).where(FactAlias.entity_id == entity_id, FactAlias.alias_name == alias_name)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_for_entities(self, entity_ids: Iterable[uuid.UUID]) -> Sequence[FactAlias]:
        ids = list(entity_ids)
        if not ids:
            return []
        query = select(FactAlias).where(FactAlias.entity_id.in_(ids)).order_by(FactAlias.created_at.asc())
        result = await self.session.execute(query)
        return result.scalars().all()

    async def move(self, from_entity_id: uuid.UUID, to_entity_id: uuid.UUID) -> None:
        """Repoint aliases of a merged entity that the target does not already have."""
        existing = {a.alias_name for a in await self.list_for_entities([to_entity_id])}
        for alias in await self.list_for_entities([from_entity_id]):
            if alias.alias_name not in existing:
                alias.entity_id = to_entity_id
                existing.add(alias.alias_name)
        await self.session.flush()
