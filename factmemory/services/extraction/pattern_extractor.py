"""
Deterministic fact extraction from user messages

Recognizes the common statement forms people use to tell an assistant about
themselves:
- Names ("my name is X", "call me X", and the weaker "I'm X")
- Pets ("I have a cat named X", "my dog is called X", "my cats are X and Y")
- Family ("my sister is called X")
- Location ("I live in X", "I moved to X", "I used to live in X")
- Work ("I work as X", "I work at X")
- Birthday, preferences, allergies, favorites

Questions are never mined for facts.
"""

import re
import unicodedata
from typing import Iterator, List, Optional

from factmemory.core.config import FactMemorySettings, settings
from factmemory.schemas.facts import (
    USER_SUBTYPE,
    AttributeCandidate,
    BirthdayAttribute,
    EntityCandidate,
    EntityType,
    ExtractionResult,
    GenericAttribute,
    LocationAttribute,
    OccupationAttribute,
    PersonalFactAttribute,
    PreferenceAttribute,
    RelationAttribute,
    SpeciesAttribute,
    ValuePolicy,
    WorkplaceAttribute,
)
from factmemory.utils.logging import get_logger
from factmemory.utils.normalization import clean_name, normalize_name

LOGGER = get_logger(__name__)

_LETTER = r"[^\W\d_]"
# Uppercase letters through the end of the Cyrillic block
_UPPER = "[{}]".format("".join(c for c in map(chr, range(0x41, 0x530)) if c.isupper()))
# A word is captured whole or not at all
_WORD = rf"{_LETTER}(?:{_LETTER}|['\-])*(?!\w)"
_CAP_WORD = rf"{_UPPER}(?:{_LETTER}|['\-])*(?!\w)"
_NAME = rf"{_WORD}(?:\s+{_CAP_WORD})?"
_CAP_NAME = rf"{_CAP_WORD}(?:\s+{_CAP_WORD})?"
_NAME_LIST = rf"{_NAME}(?:(?:\s*,\s*(?:and\s+)?|\s+and\s+|\s*&\s*){_NAME})*"
_SPECIES = (
    r"guinea\s+pig|dog|cat|puppy|kitten|rabbit|bunny|hamster|bird|parrot|budgie|"
    r"fish|horse|pony|turtle|tortoise|snake|lizard|ferret|gerbil|pet"
)
_RELATIONS = (
    r"wife|husband|partner|girlfriend|boyfriend|fianc[eé]e?|sister|brother|mother|mom|mum|"
    r"father|dad|son|daughter|grandmother|grandma|grandfather|grandpa|aunt|uncle|cousin"
)
_MONTHS = (
    r"january|february|march|april|may|june|july|august|september|october|november|december|"
    r"jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec"
)
_PHRASE_END = r"(?=\s*[.,!?;]|\s+(?i:and|but|because|since|so|when)\b|\s*$)"
_PHRASE = rf"{_WORD}(?:\s+[\w'\-]+){{0,3}}?{_PHRASE_END}"
_PLACE = (
    rf"(?!(?i:a|an|the|my|this|that|here|there|it|town|the\s+city)\b)"
    rf"{_WORD}(?:\s+{_CAP_WORD})*(?:,\s*{_CAP_WORD}(?:\s+{_CAP_WORD})*)?"
)


class PatternExtractor:
    """Extracts high-confidence fact candidates using regex patterns."""

    QUESTION_STARTERS = {
        "what", "what's", "whats", "who", "who's", "where", "where's", "when", "why", "how",
        "which", "do", "does", "did", "can", "could", "would", "will", "should", "is", "are",
    }

    # Words that can follow a trigger phrase but are never names
    NOT_NAMES = {
        "a", "an", "the", "my", "me", "i", "is", "it", "and", "not", "no", "he", "she", "they",
        "we", "you", "her", "him", "his", "them", "so", "just", "really", "very", "also", "too",
        "then", "now", "here", "there", "that", "this", "fine", "good", "okay", "ok", "sorry",
        "back", "ready", "done", "tired", "happy", "sure", "well", "great", "going", "from",
        "sick", "home", "busy", "hungry", "excited", "glad", "afraid", "still",
    }

    SPECIES_CANONICAL = {"puppy": "dog", "kitten": "cat", "bunny": "rabbit", "pony": "horse", "budgie": "bird"}
    RELATION_CANONICAL = {"mom": "mother", "mum": "mother", "dad": "father", "grandma": "grandmother", "grandpa": "grandfather"}

    USER_NAME_PATTERN = re.compile(rf"(?i:\bmy\s+name\s+is|\bmy\s+name's)\s+(?P<name>{_NAME})")
    PREFERRED_NAME_PATTERN = re.compile(rf"(?i:\bcall\s+me|\bi\s+go\s+by)\s+(?P<name>{_NAME})")
    WEAK_NAME_PATTERN = re.compile(
        rf"(?:^|[\s,])(?i:i'm|i\s+am|im)\s+(?P<name>{_CAP_WORD})(?=\s*[.,!?;]|\s*$|\s+(?i:and|but|by)\b)"
    )

    PET_NAMED_PATTERN = re.compile(
        rf"(?i:\b(?P<species>{_SPECIES})(?:s|es)?)\s+(?i:named|called)\s+(?P<names>{_NAME_LIST})"
    )
    PET_IS_NAMED_PATTERN = re.compile(
        rf"(?i:\bmy\s+(?:pet\s+)?(?P<species>{_SPECIES})(?:'s\s+name\s+is|\s+is\s+(?:named|called)))"
        rf"\s+(?P<name>{_NAME})"
    )
    PET_IS_PATTERN = re.compile(rf"(?i:\bmy\s+(?:pet\s+)?(?P<species>{_SPECIES})\s+is)\s+(?P<name>{_CAP_NAME})")
    PET_LIST_PATTERN = re.compile(
        rf"(?i:\bmy\s+(?P<species>{_SPECIES}|pet)(?:s|es)\s+are(?:\s+(?:named|called))?)\s+(?P<names>{_NAME_LIST})"
    )
    OWNERSHIP_CUE = re.compile(
        r"(?i:\b(?:i|we)(?:\s+\w+){0,2}?\s+(?:have|own|got|adopted|rescued)\b|\b(?:i|we)'ve\b|\bmy\b|\bour\b)"
    )

    FAMILY_NAMED_PATTERN = re.compile(
        rf"(?i:\bmy\s+(?P<relation>{_RELATIONS})(?:'s\s+name\s+is|\s+is\s+(?:named|called)|\s+(?:named|called)))"
        rf"\s+(?P<name>{_NAME})"
    )
    FAMILY_IS_PATTERN = re.compile(rf"(?i:\bmy\s+(?P<relation>{_RELATIONS})\s+is)\s+(?P<name>{_CAP_NAME})")

    LOCATION_PATTERN = re.compile(
        rf"(?i:\bi\s+live\s+in|\bi'm\s+living\s+in|\bi\s+am\s+living\s+in|\bi\s+moved\s+to|\bwe\s+live\s+in)"
        rf"\s+(?P<place>{_PLACE})"
    )
    PAST_LOCATION_PATTERN = re.compile(
        rf"(?i:\bi\s+used\s+to\s+live\s+in|\bi\s+lived\s+in|\bi\s+grew\s+up\s+in)\s+(?P<place>{_PLACE})"
    )
    HOMETOWN_PATTERN = re.compile(rf"(?i:\bi'm\s+from|\bi\s+am\s+from|\bi\s+come\s+from)\s+(?P<place>{_PLACE})")

    OCCUPATION_PATTERN = re.compile(
        rf"(?i:\bi\s+work\s+as|\bmy\s+job\s+is|\bi'm\s+employed\s+as|\bi\s+am\s+employed\s+as|\bmy\s+occupation\s+is)"
        rf"\s+(?:(?i:an?|the)\s+)?(?P<occupation>{_WORD}(?:\s+[\w\-]+){{0,3}}?)"
        rf"(?=\s*[.,!?;]|\s+(?i:and|but|at|for|in|so)\b|\s*$)"
    )
    WORKPLACE_PATTERN = re.compile(
        rf"(?i:\bi\s+work\s+(?:at|for)|\bi'm\s+working\s+(?:at|for)|\bi\s+am\s+working\s+(?:at|for)|"
        rf"\bi\s+work\s+as\s+[\w\s\-]+?\s+(?:at|for))\s+(?P<org>{_CAP_WORD}(?:\s+(?:&\s+)?{_CAP_WORD})*)"
    )

    BIRTHDAY_PATTERN = re.compile(
        rf"(?i:\bmy\s+birthday\s+is(?:\s+on)?|\bmy\s+birthday's(?:\s+on)?|\bi\s+was\s+born\s+on)\s+"
        rf"(?P<date>(?i:{_MONTHS})\.?\s+\d{{1,2}}(?:st|nd|rd|th)?(?:,?\s+\d{{4}})?"
        rf"|\d{{1,2}}(?:st|nd|rd|th)?\s+(?:of\s+)?(?i:{_MONTHS})(?:,?\s+\d{{4}})?"
        rf"|\d{{4}}-\d{{2}}-\d{{2}}|\d{{1,2}}/\d{{1,2}}(?:/\d{{2,4}})?)"
    )
    PREFERENCE_PATTERN = re.compile(
        rf"(?i:\bi\s+(?:really\s+|absolutely\s+)?(?P<verb>love|like|enjoy|adore|hate|dislike|can't\s+stand))"
        rf"\s+(?P<thing>{_PHRASE})"
    )
    ALLERGY_PATTERN = re.compile(rf"(?i:\bi'm\s+allergic\s+to|\bi\s+am\s+allergic\s+to)\s+(?P<thing>{_PHRASE})")
    FAVORITE_PATTERN = re.compile(
        rf"(?i:\bmy\s+favou?rite\s+)(?P<what>[A-Za-z]+(?:\s+[A-Za-z]+)?)\s+(?i:is)\s+(?P<value>{_PHRASE})"
    )

    _SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
    _LIST_SEPARATOR = re.compile(r"\s*,\s*(?:and\s+)?|\s+and\s+|\s*&\s*")

    def __init__(self, fact_settings: Optional[FactMemorySettings] = None):
        fact_settings = fact_settings or settings.facts
        self.confidence = fact_settings.pattern_confidence
        self.weak_confidence = fact_settings.weak_pattern_confidence
        self.preference_confidence = round(min(self.confidence, 0.8), 4)

    def extract(self, content: str) -> ExtractionResult:
        """
        Extract fact candidates from a message.

        Args:
            content: Message text

        Returns:
            ExtractionResult: Candidates (empty if the message states no facts)
        """
        result = ExtractionResult()
        if not content or not content.strip():
            return result
        content = unicodedata.normalize("NFC", content)

        for sentence in self._statements(content):
            self._extract_names(sentence, result)
            self._extract_pets(sentence, result)
            self._extract_family(sentence, result)
            self._extract_locations(sentence, result)
            self._extract_work(sentence, result)
            self._extract_personal(sentence, result)

        result.entities = self._dedupe(result.entities)
        if not result.is_empty:
            result.method = "pattern"
            LOGGER.debug(
                "Pattern facts extracted",
                extra={
                    "entities": len(result.entities),
                    "profile_attributes": len(result.profile_attributes),
                    "preferred_name": bool(result.preferred_name),
                },
            )
        return result

    @staticmethod
    def _dedupe(candidates: List[EntityCandidate]) -> List[EntityCandidate]:
        """Keep the first mention of each (type, subtype, name)."""
        seen = set()
        unique = []
        for candidate in candidates:
            key = (candidate.entity_type, candidate.entity_subtype, normalize_name(candidate.name))
            if key not in seen:
                seen.add(key)
                unique.append(candidate)
        return unique

    def is_question(self, sentence: str) -> bool:
        stripped = sentence.strip()
        if stripped.endswith("?"):
            return True
        first_word = stripped.split(maxsplit=1)[0].lower().strip(",") if stripped else ""
        return first_word in self.QUESTION_STARTERS

    def _statements(self, content: str) -> Iterator[str]:
        for sentence in self._SENTENCE_SPLIT.split(content.strip()):
            if sentence and sentence.strip() and not self.is_question(sentence):
                yield sentence.strip()

    def _valid_name(self, name: Optional[str]) -> Optional[str]:
        name = clean_name(name or "")
        if not name or name.split()[0].lower() in self.NOT_NAMES:
            return None
        return name

    def _split_names(self, names: str) -> List[str]:
        """Split a captured list; once one name is capitalized, the rest must be too."""
        result: List[str] = []
        for raw in self._LIST_SEPARATOR.split(names):
            name = self._valid_name(raw)
            if name is None:
                break
            if result and result[0][0].isupper() and not name[0].isupper():
                break
            result.append(name)
        return result

    def _species(self, raw: str) -> Optional[str]:
        species = re.sub(r"\s+", " ", raw.lower())
        species = self.SPECIES_CANONICAL.get(species, species)
        return None if species == "pet" else species

    def _extract_names(self, sentence: str, result: ExtractionResult) -> None:
        strong = False
        for match in self.USER_NAME_PATTERN.finditer(sentence):
            name = self._valid_name(match.group("name"))
            if name:
                strong = True
                result.entities.append(
                    EntityCandidate(
                        entity_type=EntityType.PERSON,
                        entity_subtype=USER_SUBTYPE,
                        name=name,
                        confidence=self.confidence,
                    )
                )

        for match in self.PREFERRED_NAME_PATTERN.finditer(sentence):
            name = self._valid_name(match.group("name"))
            if name:
                result.preferred_name = name

        if strong or result.preferred_name:
            return

        match = self.WEAK_NAME_PATTERN.search(sentence)
        if match:
            name = self._valid_name(match.group("name"))
            if name:
                result.entities.append(
                    EntityCandidate(
                        entity_type=EntityType.PERSON,
                        entity_subtype=USER_SUBTYPE,
                        name=name,
                        confidence=self.weak_confidence,
                    )
                )

    def _pet_candidate(self, name: str, species: Optional[str]) -> EntityCandidate:
        attributes = []
        if species:
            attributes.append(AttributeCandidate(value=SpeciesAttribute(value=species), confidence=self.confidence))
        return EntityCandidate(
            entity_type=EntityType.PET,
            name=name,
            confidence=self.confidence,
            attributes=attributes,
            relation_to_user="owns",
        )

    def _extract_pets(self, sentence: str, result: ExtractionResult) -> None:
        if not self.OWNERSHIP_CUE.search(sentence):
            return

        for pattern, group in (
            (self.PET_NAMED_PATTERN, "names"),
            (self.PET_LIST_PATTERN, "names"),
            (self.PET_IS_NAMED_PATTERN, "name"),
            (self.PET_IS_PATTERN, "name"),
        ):
            for match in pattern.finditer(sentence):
                species = self._species(match.group("species"))
                names = self._split_names(match.group(group)) if group == "names" else [self._valid_name(match.group(group))]
                for name in names:
                    if name:
                        result.entities.append(self._pet_candidate(name, species))

    def _extract_family(self, sentence: str, result: ExtractionResult) -> None:
        for pattern in (self.FAMILY_NAMED_PATTERN, self.FAMILY_IS_PATTERN):
            for match in pattern.finditer(sentence):
                name = self._valid_name(match.group("name"))
                if not name:
                    continue
                relation = match.group("relation").lower()
                relation = self.RELATION_CANONICAL.get(relation, relation)
                result.entities.append(
                    EntityCandidate(
                        entity_type=EntityType.PERSON,
                        entity_subtype="family",
                        name=name,
                        confidence=self.confidence,
                        attributes=[AttributeCandidate(value=RelationAttribute(value=relation), confidence=self.confidence)],
                        relation_to_user="family",
                    )
                )

    def _extract_locations(self, sentence: str, result: ExtractionResult) -> None:
        for match in self.PAST_LOCATION_PATTERN.finditer(sentence):
            result.profile_attributes.append(
                AttributeCandidate(
                    value=LocationAttribute(value=clean_name(match.group("place"))),
                    confidence=self.confidence,
                    historical=True,
                )
            )
        for match in self.LOCATION_PATTERN.finditer(sentence):
            result.profile_attributes.append(
                AttributeCandidate(value=LocationAttribute(value=clean_name(match.group("place"))), confidence=self.confidence)
            )
        for match in self.HOMETOWN_PATTERN.finditer(sentence):
            result.profile_attributes.append(
                AttributeCandidate(
                    value=GenericAttribute(
                        name="hometown", value=clean_name(match.group("place")), value_policy=ValuePolicy.STABLE
                    ),
                    confidence=self.confidence,
                )
            )

    def _extract_work(self, sentence: str, result: ExtractionResult) -> None:
        for match in self.OCCUPATION_PATTERN.finditer(sentence):
            occupation = clean_name(match.group("occupation"))
            if occupation and occupation.split()[0].lower() not in self.NOT_NAMES:
                result.profile_attributes.append(
                    AttributeCandidate(value=OccupationAttribute(value=occupation), confidence=self.confidence)
                )
        for match in self.WORKPLACE_PATTERN.finditer(sentence):
            result.profile_attributes.append(
                AttributeCandidate(value=WorkplaceAttribute(value=clean_name(match.group("org"))), confidence=self.confidence)
            )

    def _extract_personal(self, sentence: str, result: ExtractionResult) -> None:
        for match in self.BIRTHDAY_PATTERN.finditer(sentence):
            result.profile_attributes.append(
                AttributeCandidate(value=BirthdayAttribute(value=clean_name(match.group("date"))), confidence=self.confidence)
            )

        for match in self.PREFERENCE_PATTERN.finditer(sentence):
            thing = clean_name(match.group("thing"))
            if not thing or thing.split()[0].lower() in {"it", "that", "this", "them", "you", "to", "him", "her"}:
                continue
            polarity = "likes" if match.group("verb").lower() in ("love", "like", "enjoy", "adore") else "dislikes"
            result.profile_attributes.append(
                AttributeCandidate(
                    value=PreferenceAttribute(value=f"{polarity}: {thing}"),
                    confidence=self.preference_confidence,
                )
            )

        for match in self.ALLERGY_PATTERN.finditer(sentence):
            result.profile_attributes.append(
                AttributeCandidate(
                    value=PersonalFactAttribute(value=f"allergic to {clean_name(match.group('thing'))}"),
                    confidence=self.confidence,
                )
            )

        for match in self.FAVORITE_PATTERN.finditer(sentence):
            what = re.sub(r"\s+", "_", match.group("what").lower())
            result.profile_attributes.append(
                AttributeCandidate(
                    value=GenericAttribute(name=f"favorite_{what}", value=clean_name(match.group("value"))),
                    confidence=self.confidence,
                )
            )
