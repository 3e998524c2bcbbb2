import uuid
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from factmemory.database.models import FactAuditLog
from factmemory.repositories.base_repository import BaseRepository


class AuditRepository(BaseRepository[FactAuditLog]):
    """Append-only audit trail."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, FactAuditLog)

    async def record(
        self,
        user_id: str,
        action_type: str,
        entity_id: Optional[uuid.UUID] = None,
        old_value: Any = None,
        new_value: Any = None,
        source_message_id: Optional[str] = None,
    ) -> FactAuditLog:
        return await self.create(
            user_id=user_id,
            entity_id=entity_id,
            action_type=action_type,
            old_value=old_value,
            new_value=new_value,
            source_message_id=source_message_id,
        )

    async def for_entity(self, entity_id: uuid.UUID) -> Sequence[FactAuditLog]:
        query = select(FactAuditLog).where(FactAuditLog.entity_id == entity_id).order_by(FactAuditLog.created_at.asc())
        result = await self.session.execute(query)
        return result.scalars().all()
