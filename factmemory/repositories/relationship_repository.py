import uuid
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from factmemory.database.models import FactRelationship
from factmemory.repositories.base_repository import BaseRepository


class RelationshipRepository(BaseRepository[FactRelationship]):
    """Repository for FactRelationship records."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, FactRelationship)

    async def find(
        self,
        subject_entity_id: uuid.UUID,
        relationship_type: str,
        object_entity_id: Optional[uuid.UUID] = None,
        object_value: Optional[str] = None,
    ) -> Optional[FactRelationship]:
        """Find the edge matching subject, type and object form."""
        query = select(FactRelationship).where(
            FactRelationship.subject_entity_id == subject_entity_id,
            FactRelationship.relationship_type == relationship_type,
        )
        if object_entity_id is not None:
            query = query.where(FactRelationship.object_entity_id == object_entity_id)
        else:
            query = query.where(FactRelationship.object_value == object_value)
        result = await self.session.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def touching(self, entity_id: uuid.UUID) -> Sequence[FactRelationship]:
        query = select(FactRelationship).where(
            (FactRelationship.subject_entity_id == entity_id) | (FactRelationship.object_entity_id == entity_id)
        )
        result = await self.session.execute(query)
        return result.scalars().all()
