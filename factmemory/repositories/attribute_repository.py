import uuid
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from factmemory.database.models import FactAttribute
from factmemory.repositories.base_repository import BaseRepository


class AttributeRepository(BaseRepository[FactAttribute]):
    """Repository for FactAttribute records (current values and history)."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, FactAttribute)

    async def current(self, entity_id: uuid.UUID, attribute_name: str) -> Sequence[FactAttribute]:
        """Current value(s); more than one only for cumulative attributes."""
        query = (
            select(FactAttribute)
            .where(
                FactAttribute.entity_id == entity_id,
                FactAttribute.attribute_name == attribute_name,
                FactAttribute.is_current.is_(True),
            )
            .order_by(FactAttribute.created_at.asc())
        )
        result = await self.session.execute(query)
        return result.scalars().all()

    async def current_single(self, entity_id: uuid.UUID, attribute_name: str) -> Optional[FactAttribute]:
        rows = await self.current(entity_id, attribute_name)
        return rows[-1] if rows else None

    async def all_current(self, entity_id: uuid.UUID) -> Sequence[FactAttribute]:
        query = (
            select(FactAttribute)
            .where(FactAttribute.entity_id == entity_id, FactAttribute.is_current.is_(True))
            .order_by(FactAttribute.attribute_name.asc(), FactAttribute.created_at.asc())
        )
        result = await self.session.execute(query)
        return result.scalars().all()

    async def find_value(
        self, entity_id: uuid.UUID, attribute_name: str, attribute_value: str
    ) -> Optional[FactAttribute]:
        """Most recent row (current or historical) carrying exactly this value."""
        query = (
            select(FactAttribute)
            .where(
                FactAttribute.entity_id == entity_id,
                FactAttribute.attribute_name == attribute_name,
                FactAttribute.attribute_value == attribute_value,
            )
            .order_by(FactAttribute.is_current.desc(), FactAttribute.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def history(self, entity_id: uuid.UUID, attribute_name: str) -> Sequence[FactAttribute]:
        """Every value ever recorded for the attribute, oldest first."""
        query = (
            select(FactAttribute)
            .where(FactAttribute.entity_id == entity_id, FactAttribute.attribute_name == attribute_name)
            .order_by(FactAttribute.created_at.asc())
        )
        result = await self.session.execute(query)
        return result.scalars().all()
