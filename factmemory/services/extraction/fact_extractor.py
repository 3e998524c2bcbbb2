"""
Fact Extractor: patterns first, LLM fallback second.

The extractor produces candidates; ``persist`` turns them into store
writes. Deterministic pattern matches are always kept; the LLM can only add
facts the patterns missed or reinforce the ones they found.
"""

import re
from typing import Dict, List, Optional, Tuple

from factmemory.core.config import FactMemorySettings, settings
from factmemory.core.exceptions import APIClientError, ExtractionTimeoutError, NotFoundError
from factmemory.schemas.facts import (
    AttributeCandidate,
    EntityCandidate,
    EntityRef,
    ExtractionResult,
)
from factmemory.services.conflict_resolver import ConflictResolver
from factmemory.services.entity_store import AttributeChange, EntityStore
from factmemory.services.extraction.llm_extractor import LLMFactExtractor
from factmemory.services.extraction.pattern_extractor import PatternExtractor
from factmemory.utils.logging import get_logger
from factmemory.utils.normalization import normalize_name

LOGGER = get_logger(__name__)

# Words that suggest a message states something about the user
FACT_CUES = re.compile(
    r"(?i:\b(?:my|i'm|i\s+am|i've|i\s+have|i\s+live|i\s+lived|i\s+moved|i\s+work|i\s+used\s+to|"
    r"we\s+have|our|call\s+me|named|called|born)\b)"
)
COMPOUND_MARKERS = re.compile(r"(?i:\band\b|\bbut\b|;)")
LONG_MESSAGE_WORDS = 15


class FactExtractor:
    """Turns a message into fact candidates and writes them through the store."""

    def __init__(
        self,
        pattern_extractor: Optional[PatternExtractor] = None,
        llm_extractor: Optional[LLMFactExtractor] = None,
        fact_settings: Optional[FactMemorySettings] = None,
    ):
        self.settings = fact_settings or settings.facts
        self.patterns = pattern_extractor or PatternExtractor(self.settings)
        self.llm = llm_extractor

    def should_use_llm(self, content: str, pattern_result: ExtractionResult) -> bool:
        """Decide whether a message is worth an LLM call.

        ``always``/``never`` force the decision. In ``auto`` mode the LLM is
        consulted only for messages that look like they state facts and that
        the patterns either missed entirely or may have covered only in part
        (long or compound messages).
        """
        if self.llm is None:
            return False
        mode = self.settings.llm_fallback_mode
        if mode == "never":
            return False
        if mode == "always":
            return True
        if not FACT_CUES.search(content):
            return False
        if pattern_result.is_empty:
            return True
        return len(content.split()) >= LONG_MESSAGE_WORDS or bool(COMPOUND_MARKERS.search(content))

    async def extract(self, content: str) -> ExtractionResult:
        """
        Extract candidates from a message.

        An LLM timeout or provider failure degrades to the pattern result;
        it never fails the message.
        """
        pattern_result = self.patterns.extract(content)
        if not self.should_use_llm(content, pattern_result):
            return pattern_result

        try:
            llm_result = await self.llm.extract(content)
        except ExtractionTimeoutError as e:
            LOGGER.warning(
                "LLM extraction timed out, using pattern results",
                extra={"timeout_seconds": self.llm.timeout_seconds, "error": str(e)},
            )
            return pattern_result
        except APIClientError as e:
            LOGGER.warning("LLM extraction failed, using pattern results", extra={"error": str(e)})
            return pattern_result

        return self.merge_results(pattern_result, llm_result)

    @staticmethod
    def merge_results(primary: ExtractionResult, secondary: ExtractionResult) -> ExtractionResult:
        """Union two results; entities with the same identity are combined at the higher confidence."""
        if secondary.is_empty:
            return primary
        if primary.is_empty:
            return secondary

        merged = ExtractionResult(method="hybrid", preferred_name=primary.preferred_name or secondary.preferred_name)
        by_key: Dict[Tuple[str, str, str], EntityCandidate] = {}
        for candidate in primary.entities + secondary.entities:
            key = (candidate.entity_type.value, candidate.entity_subtype, normalize_name(candidate.name))
            existing = by_key.get(key)
            if existing is None:
                by_key[key] = candidate.model_copy(deep=True)
                continue
            existing.confidence = max(existing.confidence, candidate.confidence)
            known_aliases = {normalize_name(a.name) for a in existing.aliases}
            existing.aliases.extend(a for a in candidate.aliases if normalize_name(a.name) not in known_aliases)
            known_attributes = {(a.value.attribute_name, normalize_name(a.value.value)) for a in existing.attributes}
            existing.attributes.extend(
                a for a in candidate.attributes
                if (a.value.attribute_name, normalize_name(a.value.value)) not in known_attributes
            )
            existing.relation_to_user = existing.relation_to_user or candidate.relation_to_user
        merged.entities = list(by_key.values())

        seen = set()
        for attribute in primary.profile_attributes + secondary.profile_attributes:
            key = (attribute.value.attribute_name, normalize_name(attribute.value.value), attribute.historical)
            if key not in seen:
                seen.add(key)
                merged.profile_attributes.append(attribute)

        merged.relationships = primary.relationships + secondary.relationships
        return merged

    async def persist(
        self,
        store: EntityStore,
        resolver: ConflictResolver,
        user_id: str,
        result: ExtractionResult,
        source_message_id: Optional[str] = None,
    ) -> List[AttributeChange]:
        """
        Write an extraction result through the store.

        Args:
            store: Entity store bound to the caller's transaction
            resolver: Resolver used for preferred-name handling
            user_id: Owner of the facts
            result: Candidates to persist
            source_message_id: Message the evidence came from

        Returns:
            List[AttributeChange]: Attribute outcomes for contradiction handling
        """
        changes: List[AttributeChange] = []

        for candidate in result.entities:
            entity = await store.upsert_entity(user_id, candidate, source_message_id)
            for attribute in candidate.attributes:
                changes.append(await self._set(store, user_id, entity, attribute, source_message_id))
            if candidate.relation_to_user:
                await store.link_to_user(
                    user_id, entity, candidate.relation_to_user, candidate.confidence, source_message_id
                )

        if result.preferred_name:
            await resolver.apply_preferred_name(
                user_id, result.preferred_name, self.settings.pattern_confidence, source_message_id
            )

        if result.profile_attributes:
            profile = await store.get_profile(user_id, create=True)
            for attribute in result.profile_attributes:
                changes.append(await self._set(store, user_id, profile, attribute, source_message_id))

        for relationship in result.relationships:
            try:
                subject = await self._resolve_ref(store, user_id, relationship.subject)
                object_entity = (
                    await self._resolve_ref(store, user_id, relationship.object_entity)
                    if relationship.object_entity is not None
                    else None
                )
            except NotFoundError:
                LOGGER.debug(
                    "Skipping relationship to unknown entity",
                    extra={"user_id": user_id, "relationship_type": relationship.relationship_type},
                )
                continue
            await store.add_relationship(
                user_id,
                subject,
                relationship.relationship_type,
                object_entity=object_entity,
                object_value=relationship.object_value,
                confidence=relationship.confidence,
                source_message_id=source_message_id,
            )

        return changes

    async def _set(self, store, user_id, entity, attribute: AttributeCandidate, source_message_id):
        return await store.set_attribute(
            user_id,
            entity,
            attribute.value,
            confidence=attribute.confidence,
            source_message_id=source_message_id,
            historical=attribute.historical,
        )

    async def _resolve_ref(self, store: EntityStore, user_id: str, ref: EntityRef):
        return await store.get_entity(user_id, ref.entity_type.value, ref.name, entity_subtype=ref.entity_subtype)
