import uuid
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from factmemory.database.models import FactConflict
from factmemory.repositories.base_repository import BaseRepository


class ConflictRepository(BaseRepository[FactConflict]):
    """Repository for duplicate/contradiction records."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, FactConflict)

    async def get_for_user(self, user_id: str, conflict_id: uuid.UUID) -> Optional[FactConflict]:
        query = select(FactConflict).where(FactConflict.user_id == user_id, FactConflict.id == conflict_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def pending(self, user_id: str, attribute_name: Optional[str] = None) -> Sequence[FactConflict]:
        query = select(FactConflict).where(
            FactConflict.user_id == user_id, FactConflict.resolution_status == "pending_review"
        )
        if attribute_name is not None:
            query = query.where(FactConflict.attribute_name == attribute_name)
        result = await self.session.execute(query.order_by(FactConflict.created_at.asc()))
        return result.scalars().all()

    async def count_pending(self, user_id: str) -> int:
        query = select(func.count()).select_from(FactConflict).where(
            FactConflict.user_id == user_id, FactConflict.resolution_status == "pending_review"
        )
        result = await self.session.execute(query)
        return result.scalar_one()
