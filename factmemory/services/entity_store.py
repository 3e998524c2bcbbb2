"""Entity Store: persisted entities, aliases, attributes and relationships.

All operations are scoped by ``user_id`` and run inside the caller's
transaction. Every write also invalidates the user's fact cache in that same
transaction, so a committed write can never be followed by a stale cached
read. Nothing is ever hard-deleted; superseded values become history rows
and every change is written to the audit log.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from factmemory.core.config import FactMemorySettings, settings
from factmemory.core.exceptions import NotFoundError, ValidationError
from factmemory.database.models import FactAlias, FactAttribute, FactEntity, FactRelationship, utc_now
from factmemory.repositories.attribute_repository import AttributeRepository
from factmemory.repositories.audit_repository import AuditRepository
from factmemory.repositories.entity_repository import AliasRepository, EntityRepository
from factmemory.repositories.relationship_repository import RelationshipRepository
from factmemory.schemas.facts import (
    PROFILE_NAME,
    PROFILE_SUBTYPE,
    AliasType,
    AttributeValue,
    CriticalFacts,
    EntityCandidate,
    EntityStatus,
    EntityType,
    FamilyMember,
    SourceType,
    ValuePolicy,
)
from factmemory.services.fact_cache import UserFactCache
from factmemory.utils.logging import get_logger
from factmemory.utils.normalization import clean_name, normalize_name, unique_preserving_order

LOGGER = get_logger(__name__)

PROFILE_FACT_KINDS = ("location", "occupation", "workplace")


@dataclass
class AttributeChange:
    """Outcome of a single ``set_attribute`` call."""

    entity: FactEntity
    attribute: FactAttribute
    outcome: str
    previous: Optional[FactAttribute] = None


class EntityStore:
    """Structured fact storage for one session."""

    def __init__(self, session: AsyncSession, fact_settings: Optional[FactMemorySettings] = None):
        """Initialize the store.

        Args:
            session: Async session; the caller owns commit/rollback
            fact_settings: Engine tunables (activation threshold, reinforcement step...)
        """
        self.session = session
        self.settings = fact_settings or settings.facts
        self.entities = EntityRepository(session)
        self.aliases = AliasRepository(session)
        self.attributes = AttributeRepository(session)
        self.relationships = RelationshipRepository(session)
        self.audit = AuditRepository(session)

    # Helpers

    def _check_confidence(self, confidence: float) -> None:
        if confidence is None or not 0.0 <= confidence <= 1.0:
            raise ValidationError(f"Confidence must be within [0, 1], got {confidence}")

    def reinforce(self, current: float, incoming: float) -> float:
        """Confidence after a restatement: the stronger value plus the tunable step, capped at 1."""
        return round(min(1.0, max(current, incoming) + self.settings.reinforcement_step), 4)

    async def invalidate(self, user_id: str) -> None:
        """Drop the user's cache rows as part of the current write."""
        await UserFactCache(self.session, user_id, self.settings.cache_ttl_hours).invalidate()

    # Entities

    async def upsert_entity(
        self,
        user_id: str,
        candidate: EntityCandidate,
        source_message_id: Optional[str] = None,
    ) -> FactEntity:
        """Create or reinforce the entity described by ``candidate``.

        Idempotent on (user_id, entity_type, entity_subtype, canonical_name):
        restating an entity raises its confidence instead of creating a
        duplicate. A spelling that differs only in case, or that matches a
        known alias, reinforces the existing entity and is kept as a variant
        alias. A proposed entity becomes active once its confidence
        reaches the activation threshold.

        Args:
            user_id: Owner of the fact
            candidate: Extracted entity with optional aliases and attributes
            source_message_id: Message the evidence came from

        Returns:
            FactEntity: The created or reinforced entity

        Raises:
            ValidationError: If the name is empty or the confidence is outside [0, 1]
        """
        self._check_confidence(candidate.confidence)
        name = clean_name(candidate.name)
        if not name:
            raise ValidationError("Entity name must not be empty")

        entity_type = EntityType(candidate.entity_type).value
        subtype = candidate.entity_subtype or ""
        entity = await self.entities.find_live(user_id, entity_type, subtype, name)
        if entity is None:
            entity = await self._find_equivalent(user_id, entity_type, subtype, name)
            if entity is not None:
                await self.add_alias(user_id, entity, name, AliasType.VARIANT, candidate.confidence)

        if entity is None:
            status = self._status_for(candidate.confidence)
            entity = await self.entities.create(
                user_id=user_id,
                entity_type=entity_type,
                entity_subtype=subtype,
                canonical_name=name,
                normalized_name=normalize_name(name),
                confidence=candidate.confidence,
                source_type=SourceType(candidate.source_type).value,
                status=status,
                is_active=True,
            )
            await self.audit.record(
                user_id,
                "create",
                entity_id=entity.id,
                new_value={"name": name, "type": entity_type, "subtype": subtype, "status": status},
                source_message_id=source_message_id,
            )
            LOGGER.info(
                "Created entity",
                extra={"user_id": user_id, "entity_type": entity_type, "status": status},
            )
        else:
            await self._reinforce_entity(user_id, entity, candidate.confidence, source_message_id)

        for alias in candidate.aliases:
            await self.add_alias(user_id, entity, alias.name, alias.alias_type, candidate.confidence)

        await self.invalidate(user_id)
        return entity

    async def _find_equivalent(
        self, user_id: str, entity_type: str, subtype: str, name: str
    ) -> Optional[FactEntity]:
        normalized = normalize_name(name)
        matches = await self.entities.find_by_normalized_name(user_id, entity_type, normalized, subtype)
        if not matches:
            matches = await self.entities.find_by_alias(user_id, entity_type, normalized, subtype)
        return matches[0] if matches else None

    def _status_for(self, confidence: float) -> str:
        if confidence >= self.settings.activation_threshold:
            return EntityStatus.ACTIVE.value
        return EntityStatus.PROPOSED.value

    async def _reinforce_entity(
        self, user_id: str, entity: FactEntity, confidence: float, source_message_id: Optional[str]
    ) -> None:
        old_confidence = entity.confidence
        entity.confidence = self.reinforce(old_confidence, confidence)
        await self.audit.record(
            user_id,
            "reinforce",
            entity_id=entity.id,
            old_value={"confidence": old_confidence},
            new_value={"confidence": entity.confidence},
            source_message_id=source_message_id,
        )

        if entity.status == EntityStatus.PROPOSED.value and entity.confidence >= self.settings.activation_threshold:
            entity.status = EntityStatus.ACTIVE.value
            await self.audit.record(
                user_id,
                "activate",
                entity_id=entity.id,
                old_value={"status": EntityStatus.PROPOSED.value},
                new_value={"status": EntityStatus.ACTIVE.value},
                source_message_id=source_message_id,
            )
            LOGGER.info("Entity activated", extra={"user_id": user_id, "entity_id": str(entity.id)})

        await self.entities.save(entity)

    async def get_entity(
        self,
        user_id: str,
        entity_type: str,
        name: str,
        entity_subtype: Optional[str] = None,
        active_only: bool = False,
    ) -> FactEntity:
        """Exact lookup by normalized canonical name, then by alias.

        Raises:
            NotFoundError: If no live entity carries the name
        """
        normalized = normalize_name(name)
        matches = await self.entities.find_by_normalized_name(
            user_id, entity_type, normalized, entity_subtype, active_only=active_only
        )
        if not matches:
            matches = await self.entities.find_by_alias(
                user_id, entity_type, normalized, entity_subtype, active_only=active_only
            )
        if not matches:
            raise NotFoundError(f"No {entity_type} named '{name}' for user", details={"user_id": user_id})
        return matches[0]

    async def get_entity_by_id(self, user_id: str, entity_id: uuid.UUID) -> FactEntity:
        entity = await self.entities.get_for_user(user_id, entity_id)
        if entity is None:
            raise NotFoundError(f"Entity {entity_id} not found", details={"user_id": user_id})
        return entity

    async def list_entities(
        self,
        user_id: str,
        entity_type: Optional[str] = None,
        include_proposed: bool = False,
    ) -> Sequence[FactEntity]:
        return await self.entities.list_live(user_id, entity_type, include_proposed=include_proposed)

    async def mark_merged(self, user_id: str, entity: FactEntity, into: FactEntity) -> FactEntity:
        """Mark ``entity`` as absorbed by ``into``. Only the conflict resolver calls this."""
        if entity.id == into.id:
            raise ValidationError("An entity cannot be merged into itself")

        old_status = entity.status
        entity.status = EntityStatus.MERGED.value
        entity.is_active = False
        entity.merged_into_id = into.id
        await self.entities.save(entity)
        await self.audit.record(
            user_id,
            "merge",
            entity_id=entity.id,
            old_value={"status": old_status, "name": entity.canonical_name},
            new_value={"status": entity.status, "merged_into": str(into.id)},
        )
        await self.invalidate(user_id)
        return entity

    async def deactivate_entity(self, user_id: str, entity_id: uuid.UUID) -> FactEntity:
        """User-initiated deletion: soft-deactivate, keep history.

        Raises:
            NotFoundError: If the entity does not belong to the user
        """
        entity = await self.get_entity_by_id(user_id, entity_id)
        if not entity.is_active:
            return entity

        old_status = entity.status
        entity.status = EntityStatus.INACTIVE.value
        entity.is_active = False
        await self.entities.save(entity)
        await self.audit.record(
            user_id,
            "deactivate",
            entity_id=entity.id,
            old_value={"status": old_status},
            new_value={"status": entity.status},
        )
        await self.invalidate(user_id)
        LOGGER.info("Entity deactivated by user", extra={"user_id": user_id, "entity_id": str(entity_id)})
        return entity

    async def rename_entity(
        self,
        user_id: str,
        entity: FactEntity,
        new_name: str,
        source_message_id: Optional[str] = None,
    ) -> FactEntity:
        """Change the canonical name, keeping the old name as a formal alias."""
        name = clean_name(new_name)
        if not name:
            raise ValidationError("Entity name must not be empty")

        old_name = entity.canonical_name
        if old_name == name:
            return entity

        entity.canonical_name = name
        entity.normalized_name = normalize_name(name)
        entity.source_type = SourceType.CORRECTED.value
        await self.entities.save(entity)
        await self.add_alias(user_id, entity, old_name, AliasType.FORMAL, entity.confidence)
        await self.audit.record(
            user_id,
            "rename",
            entity_id=entity.id,
            old_value={"name": old_name},
            new_value={"name": name},
            source_message_id=source_message_id,
        )
        await self.invalidate(user_id)
        return entity

    # Aliases

    async def add_alias(
        self,
        user_id: str,
        entity: FactEntity,
        alias_name: str,
        alias_type: AliasType = AliasType.VARIANT,
        confidence: float = 0.9,
    ) -> Optional[FactAlias]:
        """Attach an alias; idempotent per (entity, alias_name).

        An alias equal to the canonical name (exact spelling) is not stored.
        """
        self._check_confidence(confidence)
        name = clean_name(alias_name)
        if not name or name == entity.canonical_name:
            return None

        alias = await self.aliases.get(entity.id, name)
        if alias is not None:
            alias.confidence = max(alias.confidence, confidence)
            await self.aliases.save(alias)
            return alias

        alias = await self.aliases.create(
            entity_id=entity.id,
            alias_name=name,
            normalized_alias=normalize_name(name),
            alias_type=AliasType(alias_type).value,
            confidence=confidence,
        )
        await self.audit.record(
            user_id,
            "alias",
            entity_id=entity.id,
            new_value={"alias": name, "alias_type": alias.alias_type},
        )
        await self.invalidate(user_id)
        return alias

    async def list_aliases(self, entity_ids: Sequence[uuid.UUID]) -> Sequence[FactAlias]:
        return await self.aliases.list_for_entities(entity_ids)

    # Attributes

    async def set_attribute(
        self,
        user_id: str,
        entity: FactEntity,
        value: AttributeValue,
        confidence: float = 0.9,
        source_message_id: Optional[str] = None,
        historical: bool = False,
    ) -> AttributeChange:
        """Record an attribute value according to its kind's policy.

        Single-value policies keep one current row: a differing value becomes
        current and the previous row is demoted to history (never updated in
        place). Cumulative kinds append. Restating the current value raises
        its confidence. ``historical`` records a past value without touching
        the current one.

        Raises:
            ValidationError: If the value is empty or the confidence is outside [0, 1]
        """
        self._check_confidence(confidence)
        text = clean_name(value.value)
        if not text:
            raise ValidationError(f"Attribute '{value.attribute_name}' must have a value")

        name = value.attribute_name
        policy = ValuePolicy(value.policy)
        now = utc_now()

        if historical:
            change = await self._record_historical(user_id, entity, value, text, confidence, source_message_id, now)
            await self.invalidate(user_id)
            return change

        current_rows = await self.attributes.current(entity.id, name)
        same = [row for row in current_rows if normalize_name(row.attribute_value) == normalize_name(text)]
        if same:
            row = same[-1]
            old_confidence = row.confidence
            row.confidence = self.reinforce(old_confidence, confidence)
            await self.attributes.save(row)
            await self.audit.record(
                user_id,
                "attribute_reinforce",
                entity_id=entity.id,
                old_value={"name": name, "confidence": old_confidence},
                new_value={"name": name, "confidence": row.confidence},
                source_message_id=source_message_id,
            )
            await self.invalidate(user_id)
            return AttributeChange(entity=entity, attribute=row, outcome="reinforced")

        previous = None
        if policy != ValuePolicy.CUMULATIVE and current_rows:
            previous = current_rows[-1]
            for row in current_rows:
                row.is_current = False
                row.superseded_at = now
            # Demote before inserting so the one-current-value index holds
            await self.session.flush()

        created = await self.attributes.create(
            entity_id=entity.id,
            attribute_name=name,
            attribute_value=text,
            attribute_type=value.kind,
            value_policy=policy.value,
            confidence=confidence,
            is_current=True,
            source_message_id=source_message_id,
            created_at=now,
        )
        await self.audit.record(
            user_id,
            "attribute_set",
            entity_id=entity.id,
            old_value={"name": name, "value": previous.attribute_value} if previous else None,
            new_value={"name": name, "value": text, "policy": policy.value},
            source_message_id=source_message_id,
        )
        await self.invalidate(user_id)

        if previous is not None:
            outcome = "replaced"
        elif policy == ValuePolicy.CUMULATIVE and current_rows:
            outcome = "appended"
        else:
            outcome = "created"
        return AttributeChange(entity=entity, attribute=created, outcome=outcome, previous=previous)

    async def _record_historical(
        self,
        user_id: str,
        entity: FactEntity,
        value: AttributeValue,
        text: str,
        confidence: float,
        source_message_id: Optional[str],
        now: datetime,
    ) -> AttributeChange:
        name = value.attribute_name
        existing = await self.attributes.find_value(entity.id, name, text)
        if existing is not None:
            existing.confidence = self.reinforce(existing.confidence, confidence)
            await self.attributes.save(existing)
            return AttributeChange(entity=entity, attribute=existing, outcome="reinforced")

        created = await self.attributes.create(
            entity_id=entity.id,
            attribute_name=name,
            attribute_value=text,
            attribute_type=value.kind,
            value_policy=ValuePolicy(value.policy).value,
            confidence=confidence,
            is_current=False,
            source_message_id=source_message_id,
            created_at=now,
            superseded_at=now,
        )
        await self.audit.record(
            user_id,
            "attribute_history",
            entity_id=entity.id,
            new_value={"name": name, "value": text},
            source_message_id=source_message_id,
        )
        return AttributeChange(entity=entity, attribute=created, outcome="historical")

    async def demote_attribute(self, user_id: str, row: FactAttribute) -> None:
        """Move a current value to history (used when reconciling duplicates)."""
        if not row.is_current:
            return
        row.is_current = False
        row.superseded_at = utc_now()
        await self.attributes.save(row)
        await self.audit.record(
            user_id,
            "attribute_demote",
            entity_id=row.entity_id,
            old_value={"name": row.attribute_name, "value": row.attribute_value},
        )
        await self.invalidate(user_id)

    async def get_current_attributes(self, entity: FactEntity) -> Sequence[FactAttribute]:
        return await self.attributes.all_current(entity.id)

    async def get_current_value(self, entity: FactEntity, attribute_name: str) -> Optional[str]:
        row = await self.attributes.current_single(entity.id, attribute_name)
        return row.attribute_value if row else None

    async def get_attribute_history(self, entity: FactEntity, attribute_name: str) -> Sequence[FactAttribute]:
        """Every recorded value for the attribute, oldest first, current included."""
        return await self.attributes.history(entity.id, attribute_name)

    # Relationships

    async def add_relationship(
        self,
        user_id: str,
        subject: FactEntity,
        relationship_type: str,
        object_entity: Optional[FactEntity] = None,
        object_value: Optional[str] = None,
        confidence: float = 0.9,
        source_message_id: Optional[str] = None,
    ) -> FactRelationship:
        """Link ``subject`` to another entity or to a literal value.

        Raises:
            ValidationError: Unless exactly one of object_entity/object_value is given
        """
        self._check_confidence(confidence)
        if object_value is not None:
            object_value = clean_name(object_value) or None
        if (object_entity is None) == (object_value is None):
            raise ValidationError("Relationship needs exactly one of object_entity or object_value")
        if not relationship_type:
            raise ValidationError("Relationship type must not be empty")

        object_entity_id = object_entity.id if object_entity is not None else None
        existing = await self.relationships.find(subject.id, relationship_type, object_entity_id, object_value)
        if existing is not None:
            existing.confidence = self.reinforce(existing.confidence, confidence)
            await self.relationships.save(existing)
            await self.invalidate(user_id)
            return existing

        relationship = await self.relationships.create(
            user_id=user_id,
            subject_entity_id=subject.id,
            relationship_type=relationship_type,
            object_entity_id=object_entity_id,
            object_value=object_value,
            confidence=confidence,
            source_message_id=source_message_id,
        )
        await self.audit.record(
            user_id,
            "relationship",
            entity_id=subject.id,
            new_value={
                "type": relationship_type,
                "object_entity_id": str(object_entity_id) if object_entity_id else None,
                "object_value": object_value,
            },
            source_message_id=source_message_id,
        )
        await self.invalidate(user_id)
        return relationship

    async def repoint_relationships(self, user_id: str, old: FactEntity, new: FactEntity) -> int:
        """Move every edge touching ``old`` onto ``new``; returns the number moved.

        Edges that would duplicate one ``new`` already has stay on ``old``.
        """
        moved = 0
        for relationship in await self.relationships.touching(old.id):
            subject_id = new.id if relationship.subject_entity_id == old.id else relationship.subject_entity_id
            object_id = new.id if relationship.object_entity_id == old.id else relationship.object_entity_id
            duplicate = await self.relationships.find(
                subject_id, relationship.relationship_type, object_id, relationship.object_value
            )
            if duplicate is not None:
                continue
            relationship.subject_entity_id = subject_id
            relationship.object_entity_id = object_id
            moved += 1
        if moved:
            await self.session.flush()
            await self.invalidate(user_id)
        return moved

    # Profile anchor

    async def get_profile(self, user_id: str, create: bool = False) -> Optional[FactEntity]:
        """The per-user anchor holding user-level attributes and relationships."""
        profile = await self.entities.find_live(user_id, EntityType.THING.value, PROFILE_SUBTYPE, PROFILE_NAME)
        if profile is None and create:
            profile = await self.upsert_entity(
                user_id,
                EntityCandidate(
                    entity_type=EntityType.THING,
                    entity_subtype=PROFILE_SUBTYPE,
                    name=PROFILE_NAME,
                    confidence=1.0,
                    source_type=SourceType.INFERRED,
                ),
            )
        return profile

    async def link_to_user(
        self,
        user_id: str,
        entity: FactEntity,
        relationship_type: str,
        confidence: float = 0.9,
        source_message_id: Optional[str] = None,
    ) -> FactRelationship:
        profile = await self.get_profile(user_id, create=True)
        return await self.add_relationship(
            user_id,
            profile,
            relationship_type,
            object_entity=entity,
            confidence=confidence,
            source_message_id=source_message_id,
        )

    # Guaranteed-path reads

    async def get_user_name(self, user_id: str) -> str:
        """Canonical name of the active person/user entity.

        Raises:
            NotFoundError: If the user has never stated a name
        """
        entity = await self.entities.get_active_user_entity(user_id)
        if entity is None:
            raise NotFoundError("No canonical user name stored", details={"user_id": user_id})
        return entity.canonical_name

    async def get_pet_names(self, user_id: str) -> List[str]:
        """Canonical names of active pets in the order they were first stated."""
        pets = await self.entities.list_live(user_id, EntityType.PET.value, include_proposed=False)
        return unique_preserving_order(pet.canonical_name for pet in pets)

    async def get_family_members(self, user_id: str) -> List[FamilyMember]:
        people = await self.entities.list_live(
            user_id, EntityType.PERSON.value, entity_subtype="family", include_proposed=False
        )
        members = []
        for person in people:
            relation = await self.get_current_value(person, "relation")
            members.append(FamilyMember(name=person.canonical_name, relation=relation))
        return members

    async def read_critical_facts(self, user_id: str) -> CriticalFacts:
        """Build every critical-fact category from the store in one pass."""
        try:
            user_name = await self.get_user_name(user_id)
        except NotFoundError:
            user_name = None

        facts = CriticalFacts(
            user_name=user_name,
            pet_names=await self.get_pet_names(user_id),
            family_members=await self.get_family_members(user_id),
        )

        profile = await self.get_profile(user_id)
        if profile is not None:
            for kind in PROFILE_FACT_KINDS:
                setattr(facts, kind, await self.get_current_value(profile, kind))
        return facts

    async def count_active_entities(self, user_id: str) -> int:
        return await self.entities.count_active(user_id)

    async def last_updated(self, user_id: str) -> Optional[datetime]:
        return await self.entities.last_updated(user_id)
