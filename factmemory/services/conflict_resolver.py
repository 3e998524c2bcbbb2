"""Conflict resolution for duplicate entities and contradictory attributes.

Runs after every extraction batch and on demand. Merges never delete
anything: absorbed entities are marked ``merged`` with a back-reference and
their names survive as aliases of the primary.
"""

import uuid
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from factmemory.core.exceptions import ConflictUnresolvedError, NotFoundError, ValidationError
from factmemory.database.models import FactConflict, FactEntity, utc_now
from factmemory.repositories.conflict_repository import ConflictRepository
from factmemory.schemas.facts import (
    PROFILE_SUBTYPE,
    USER_SUBTYPE,
    AliasType,
    EntityCandidate,
    EntityType,
    PreferredNameAttribute,
    ResolutionReport,
    SourceType,
    ValuePolicy,
    make_attribute,
)
from factmemory.services.entity_store import AttributeChange, EntityStore
from factmemory.utils.logging import get_logger
from factmemory.utils.normalization import clean_name, normalize_name

LOGGER = get_logger(__name__)

PENDING = "pending_review"
RESOLVED = "resolved"


class _UnionFind:
    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self.parent[max(root_a, root_b)] = min(root_a, root_b)


class ConflictResolver:
    """Detects and reconciles duplicates and contradictions for one user at a time.

    Attributes:
        session: SQLAlchemy async session shared with the store
        store: Entity store used for every write
    """

    def __init__(self, session: AsyncSession, store: EntityStore):
        self.session = session
        self.store = store
        self.conflicts = ConflictRepository(session)

    @property
    def _contradiction_confidence(self) -> float:
        return self.store.settings.contradiction_confidence

    async def resolve_all(self, user_id: str) -> ResolutionReport:
        """Merge every duplicate set and reconcile stray current values."""
        report = ResolutionReport()

        for group in await self.find_duplicate_sets(user_id):
            await self.merge_duplicates(user_id, group)
            report.duplicate_sets += 1
            report.merged_entities += len(group) - 1

        report.contradictions_resolved += await self.reconcile_current_values(user_id)

        if report.duplicate_sets or report.contradictions_resolved:
            LOGGER.info("Conflict resolution completed", extra={"user_id": user_id, **report.model_dump()})
        return report

    # Duplicates

    async def find_duplicate_sets(self, user_id: str) -> List[List[FactEntity]]:
        """Group live entities whose normalized names or aliases overlap.

        Only entities of the same (type, subtype) can be duplicates of each
        other. Groups are returned in creation order of their first member.
        """
        entities = list(await self.store.entities.list_live(user_id, include_proposed=True))
        entities = [e for e in entities if e.entity_subtype != PROFILE_SUBTYPE]
        if len(entities) < 2:
            return []

        names_by_entity: Dict[uuid.UUID, set] = {e.id: {e.normalized_name} for e in entities}
        for alias in await self.store.list_aliases([e.id for e in entities]):
            names_by_entity[alias.entity_id].add(alias.normalized_alias)

        union_find = _UnionFind(len(entities))
        owner: Dict[Tuple[str, str, str], int] = {}
        for index, entity in enumerate(entities):
            for name in names_by_entity[entity.id]:
                key = (entity.entity_type, entity.entity_subtype, name)
                if key in owner:
                    union_find.union(owner[key], index)
                else:
                    owner[key] = index

        groups: Dict[int, List[FactEntity]] = defaultdict(list)
        for index, entity in enumerate(entities):
            groups[union_find.find(index)].append(entity)

        return [members for _, members in sorted(groups.items()) if len(members) > 1]

    @staticmethod
    def choose_primary(group: Sequence[FactEntity]) -> FactEntity:
        """Highest confidence wins; ties go to the entity stated first."""
        return sorted(group, key=lambda e: (-e.confidence, group.index(e)))[0]

    async def merge_duplicates(self, user_id: str, group: Sequence[FactEntity]) -> FactEntity:
        """Fold every other member of ``group`` into the primary.

        Args:
            user_id: Owner of the entities
            group: Duplicate set, ordered by creation time

        Returns:
            FactEntity: The surviving primary entity
        """
        primary = self.choose_primary(group)
        others = [e for e in group if e.id != primary.id]

        for other in others:
            await self.store.add_alias(user_id, primary, other.canonical_name, AliasType.VARIANT, other.confidence)
            await self.store.aliases.move(other.id, primary.id)
            await self.store.repoint_relationships(user_id, other, primary)
            await self._carry_attributes(user_id, other, primary)
            await self.store.mark_merged(user_id, other, primary)

        await self.conflicts.create(
            user_id=user_id,
            entities_involved=[str(e.id) for e in group],
            conflict_type="duplicate",
            details={
                "primary": str(primary.id),
                "names": [e.canonical_name for e in group],
            },
            resolution_status=RESOLVED,
            resolution_method="merged_into_highest_confidence",
            resolved_at=utc_now(),
        )
        LOGGER.info(
            "Merged duplicate entities",
            extra={"user_id": user_id, "primary": str(primary.id), "merged": len(others)},
        )
        return primary

    async def _carry_attributes(self, user_id: str, source: FactEntity, target: FactEntity) -> None:
        """Copy the absorbed entity's current attributes onto the primary.

        A value the primary lacks becomes current; a differing value is kept
        as history on the primary (the primary's own value stays current).
        """
        for row in await self.store.get_current_attributes(source):
            value = make_attribute(row.attribute_type, row.attribute_value, name=row.attribute_name)
            target_value = await self.store.get_current_value(target, row.attribute_name)
            differs = (
                row.value_policy != ValuePolicy.CUMULATIVE.value
                and target_value is not None
                and normalize_name(target_value) != normalize_name(row.attribute_value)
            )
            await self.store.set_attribute(
                user_id,
                target,
                value,
                confidence=row.confidence,
                source_message_id=row.source_message_id,
                historical=differs,
            )
            if differs and row.confidence >= self._contradiction_confidence:
                await self._record_contradiction(
                    user_id,
                    target,
                    row.attribute_name,
                    row.attribute_type,
                    row.value_policy,
                    values=[target_value, row.attribute_value],
                    current=target_value,
                    method="kept_primary_value",
                )

    # Contradictions

    async def handle_attribute_changes(self, user_id: str, changes: Iterable[AttributeChange]) -> ResolutionReport:
        """Classify value replacements produced by a write.

        Replacing a high-confidence value with a differing high-confidence
        value is a contradiction. Mutable kinds resolve to the most recent
        value; stable kinds keep the most recent as current but open a
        pending-review item until the user confirms.
        """
        report = ResolutionReport()
        for change in changes:
            if change.outcome != "replaced" or change.previous is None:
                continue
            previous, current = change.previous, change.attribute
            if min(previous.confidence, current.confidence) < self._contradiction_confidence:
                continue

            pending = current.value_policy == ValuePolicy.STABLE.value
            await self._record_contradiction(
                user_id,
                change.entity,
                current.attribute_name,
                current.attribute_type,
                current.value_policy,
                values=[previous.attribute_value, current.attribute_value],
                current=current.attribute_value,
                method=None if pending else "most_recent_wins",
            )
            if pending:
                report.contradictions_pending += 1
                LOGGER.warning(
                    "Contradictory stable fact needs confirmation",
                    extra={"user_id": user_id, "attribute": current.attribute_name},
                )
            else:
                report.contradictions_resolved += 1
        return report

    async def _record_contradiction(
        self,
        user_id: str,
        entity: FactEntity,
        attribute_name: str,
        attribute_type: str,
        value_policy: str,
        values: List[str],
        current: Optional[str],
        method: Optional[str],
    ) -> FactConflict:
        return await self.conflicts.create(
            user_id=user_id,
            entities_involved=[str(entity.id)],
            conflict_type="contradiction",
            attribute_name=attribute_name,
            details={
                "entity_id": str(entity.id),
                "attribute_type": attribute_type,
                "value_policy": value_policy,
                "values": values,
                "current": current,
            },
            resolution_status=PENDING if method is None else RESOLVED,
            resolution_method=method,
            resolved_at=None if method is None else utc_now(),
        )

    async def reconcile_current_values(self, user_id: str) -> int:
        """Demote extra current rows of single-value attributes, keeping the newest."""
        reconciled = 0
        for entity in await self.store.entities.list_live(user_id, include_proposed=True):
            rows_by_name = defaultdict(list)
            for row in await self.store.get_current_attributes(entity):
                if row.value_policy != ValuePolicy.CUMULATIVE.value:
                    rows_by_name[row.attribute_name].append(row)

            for name, rows in rows_by_name.items():
                if len(rows) < 2:
                    continue
                newest = rows[-1]
                for row in rows[:-1]:
                    await self.store.demote_attribute(user_id, row)
                await self._record_contradiction(
                    user_id,
                    entity,
                    name,
                    newest.attribute_type,
                    newest.value_policy,
                    values=[row.attribute_value for row in rows],
                    current=newest.attribute_value,
                    method="most_recent_wins",
                )
                reconciled += 1
        return reconciled

    async def pending_conflicts(self, user_id: str) -> Sequence[FactConflict]:
        return await self.conflicts.pending(user_id)

    async def ensure_no_pending(self, user_id: str, entity: FactEntity, attribute_name: str) -> None:
        """Raise if the attribute has an unconfirmed contradiction.

        Raises:
            ConflictUnresolvedError: Carrying the conflicting values and the current one
        """
        for conflict in await self.conflicts.pending(user_id, attribute_name):
            if (conflict.details or {}).get("entity_id") == str(entity.id):
                raise ConflictUnresolvedError(
                    f"Conflicting values for '{attribute_name}' need confirmation",
                    details={
                        "conflict_id": str(conflict.id),
                        "values": conflict.details.get("values"),
                        "current": conflict.details.get("current"),
                    },
                )

    async def resolve_pending(self, user_id: str, conflict_id: uuid.UUID, keep_value: str) -> FactConflict:
        """Close a pending contradiction with the value the user confirmed.

        Raises:
            NotFoundError: If the conflict does not exist for this user
            ValidationError: If it is not pending or ``keep_value`` is empty
        """
        conflict = await self.conflicts.get_for_user(user_id, conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found", details={"user_id": user_id})
        if conflict.resolution_status != PENDING:
            raise ValidationError(f"Conflict {conflict_id} is already {conflict.resolution_status}")
        if not clean_name(keep_value):
            raise ValidationError("keep_value must not be empty")

        details = dict(conflict.details or {})
        entity = await self.store.get_entity_by_id(user_id, uuid.UUID(details["entity_id"]))
        value = make_attribute(details["attribute_type"], keep_value, name=conflict.attribute_name)
        await self.store.set_attribute(user_id, entity, value, confidence=1.0)

        details["current"] = clean_name(keep_value)
        conflict.details = details
        conflict.resolution_status = RESOLVED
        conflict.resolution_method = "user_confirmed"
        conflict.resolved_at = utc_now()
        await self.conflicts.save(conflict)
        await self.store.audit.record(
            user_id,
            "conflict_resolved",
            entity_id=entity.id,
            old_value={"values": details.get("values")},
            new_value={"kept": details["current"]},
        )
        await self.store.invalidate(user_id)
        return conflict

    # Preferred name

    async def apply_preferred_name(
        self,
        user_id: str,
        preferred_name: str,
        confidence: float,
        source_message_id: Optional[str] = None,
    ) -> FactEntity:
        """Handle "call me X": X becomes the canonical name, the old name an alias."""
        name = clean_name(preferred_name)
        if not name:
            raise ValidationError("Preferred name must not be empty")

        user = await self.store.entities.get_active_user_entity(user_id)
        if user is None:
            user = await self.store.upsert_entity(
                user_id,
                EntityCandidate(
                    entity_type=EntityType.PERSON,
                    entity_subtype=USER_SUBTYPE,
                    name=name,
                    confidence=confidence,
                    source_type=SourceType.CORRECTED,
                ),
                source_message_id,
            )
        elif normalize_name(user.canonical_name) != normalize_name(name):
            clash = await self.store.entities.find_live(user_id, EntityType.PERSON.value, USER_SUBTYPE, name)
            if clash is not None:
                # Another record already carries X; reinforce it and let merging fold the old one in
                await self.store.add_alias(user_id, clash, user.canonical_name, AliasType.FORMAL, confidence)
                user = await self.store.upsert_entity(
                    user_id,
                    EntityCandidate(
                        entity_type=EntityType.PERSON,
                        entity_subtype=USER_SUBTYPE,
                        name=name,
                        confidence=max(confidence, user.confidence),
                        source_type=SourceType.CORRECTED,
                    ),
                    source_message_id,
                )
            else:
                user = await self.store.rename_entity(user_id, user, name, source_message_id)

        await self.store.set_attribute(
            user_id, user, PreferredNameAttribute(value=name), confidence, source_message_id
        )
        LOGGER.info("Preferred name applied", extra={"user_id": user_id, "entity_id": str(user.id)})
        return user
