"""
LLM fallback extraction.

Used for messages the regex patterns cannot cover (compound statements,
unusual phrasing). The model returns a small JSON document which is mapped
onto the same candidate models the pattern extractor produces.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from factmemory.core.exceptions import ExtractionTimeoutError
from factmemory.schemas.facts import (
    USER_SUBTYPE,
    AttributeCandidate,
    EntityCandidate,
    EntityType,
    ExtractionResult,
    RelationAttribute,
    SpeciesAttribute,
    make_attribute,
)
from factmemory.utils.json_parser import parse_json_safely
from factmemory.utils.logging import get_logger
from factmemory.utils.normalization import clean_name

LOGGER = get_logger(__name__)


class ContentGenerator(Protocol):
    async def generate_content(
        self, contents: str, system_instruction: Optional[str] = None, json_mode: bool = False
    ) -> str: ...


SYSTEM_INSTRUCTION = """You extract personal facts a user states about themselves.
Only extract facts the user states as true about their own life. Ignore questions,
hypotheticals and facts about other people's pets or relatives. Never invent values.
Respond with JSON only."""

EXTRACTION_PROMPT = """Extract facts from the message below.

Return a JSON object with exactly these keys:
{{
  "user_name": string or null,
  "preferred_name": string or null,
  "pets": [{{"name": string, "species": string or null, "confidence": number}}],
  "family": [{{"name": string, "relation": string, "confidence": number}}],
  "profile": [{{"kind": "location" | "occupation" | "workplace" | "birthday" | "preference" | "personal_fact" | "other",
               "name": string or null, "value": string, "historical": boolean, "confidence": number}}]
}}

Use "historical": true for things that used to be true ("I used to live in Boston").
Use "name" only when kind is "other" (e.g. "favorite_color").
Confidence is between 0 and 1.

Message:
{message}
"""


class LLMFactExtractor:
    """Asks an LLM for structured facts under a hard timeout."""

    def __init__(self, client: ContentGenerator, timeout_seconds: float = 8.0, max_confidence: float = 0.9):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.max_confidence = max_confidence

    async def extract(self, content: str) -> ExtractionResult:
        """
        Extract candidates from ``content``.

        Raises:
            ExtractionTimeoutError: If the model does not answer in time
            APIClientError: If the provider call fails
        """
        prompt = EXTRACTION_PROMPT.format(message=content)
        try:
            response = await asyncio.wait_for(
                self.client.generate_content(
                    contents=prompt,
                    system_instruction=SYSTEM_INSTRUCTION,
                    json_mode=True,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ExtractionTimeoutError(
                f"LLM extraction did not finish within {self.timeout_seconds}s",
                original_error=e,
            ) from e

        payload = parse_json_safely(response)
        if not isinstance(payload, dict):
            LOGGER.warning("LLM extraction returned invalid format", extra={"response_preview": (response or "")[:200]})
            return ExtractionResult()

        result = self.to_result(payload)
        LOGGER.info(
            "LLM facts extracted",
            extra={"entities": len(result.entities), "profile_attributes": len(result.profile_attributes)},
        )
        return result

    def _confidence(self, raw: Any) -> float:
        try:
            value = float(raw)
        except (TypeError, ValueError):
            value = self.max_confidence
        return round(min(self.max_confidence, max(0.0, value)), 4)

    def _items(self, payload: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
        items = payload.get(key) or []
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    def to_result(self, payload: Dict[str, Any]) -> ExtractionResult:
        """Map the model's JSON onto candidates, dropping malformed items."""
        result = ExtractionResult(method="llm")

        user_name = clean_name(payload.get("user_name") or "")
        if user_name:
            result.entities.append(
                EntityCandidate(
                    entity_type=EntityType.PERSON,
                    entity_subtype=USER_SUBTYPE,
                    name=user_name,
                    confidence=self.max_confidence,
                )
            )

        preferred_name = clean_name(payload.get("preferred_name") or "")
        if preferred_name:
            result.preferred_name = preferred_name

        for pet in self._items(payload, "pets"):
            name = clean_name(str(pet.get("name") or ""))
            if not name:
                continue
            confidence = self._confidence(pet.get("confidence"))
            attributes = []
            if pet.get("species"):
                attributes.append(
                    AttributeCandidate(value=SpeciesAttribute(value=str(pet["species"]).lower()), confidence=confidence)
                )
            result.entities.append(
                EntityCandidate(
                    entity_type=EntityType.PET,
                    name=name,
                    confidence=confidence,
                    attributes=attributes,
                    relation_to_user="owns",
                )
            )

        for member in self._items(payload, "family"):
            name = clean_name(str(member.get("name") or ""))
            relation = str(member.get("relation") or "").strip().lower()
            if not name or not relation:
                continue
            confidence = self._confidence(member.get("confidence"))
            result.entities.append(
                EntityCandidate(
                    entity_type=EntityType.PERSON,
                    entity_subtype="family",
                    name=name,
                    confidence=confidence,
                    attributes=[AttributeCandidate(value=RelationAttribute(value=relation), confidence=confidence)],
                    relation_to_user="family",
                )
            )

        for item in self._items(payload, "profile"):
            kind = str(item.get("kind") or "").strip().lower()
            value = str(item.get("value") or "").strip()
            if not kind or not value:
                continue
            name = item.get("name") if kind == "other" else None
            try:
                attribute = make_attribute(kind, value, name=name)
                result.profile_attributes.append(
                    AttributeCandidate(
                        value=attribute,
                        confidence=self._confidence(item.get("confidence")),
                        historical=bool(item.get("historical", False)),
                    )
                )
            except PydanticValidationError as e:
                LOGGER.warning(
                    "Dropping malformed LLM profile fact",
                    extra={"item": json.dumps(item, default=str)[:200], "error": str(e)},
                )

        return result
