"""
Fact Memory Schema Definitions

Pydantic models shared by the extractor, store, resolver, cache and prompt
injector, organized by stage:
- Enums for entity lifecycle and attribute policies
- Attribute kinds (tagged union with a generic fallback)
- Extraction candidates
- Read models (critical facts, prompts, diagnostics)
- API request/response models
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# Enums
class EntityType(str, Enum):
    PERSON = "person"
    PET = "pet"
    PLACE = "place"
    THING = "thing"


class EntityStatus(str, Enum):
    PROPOSED = "proposed"
    ACTIVE = "active"
    MERGED = "merged"
    INACTIVE = "inactive"


class SourceType(str, Enum):
    USER_STATED = "user_stated"
    INFERRED = "inferred"
    CORRECTED = "corrected"


class AliasType(str, Enum):
    NICKNAME = "nickname"
    FORMAL = "formal"
    VARIANT = "variant"


class ValuePolicy(str, Enum):
    """How a new value for an attribute relates to the existing one.

    MUTABLE: one current value, most recent wins, prior kept as history.
    STABLE: one current value; a differing high-confidence restatement is
        held for review instead of silently replacing the old value.
    CUMULATIVE: values accumulate; several can be current at once.
    """

    MUTABLE = "mutable"
    STABLE = "stable"
    CUMULATIVE = "cumulative"


USER_SUBTYPE = "user"
PROFILE_SUBTYPE = "profile"
PROFILE_NAME = "profile"


# Attribute kinds
class _AttributeBase(BaseModel):
    value: str = Field(..., min_length=1)

    @property
    def attribute_name(self) -> str:
        return self.kind

    @property
    def policy(self) -> ValuePolicy:
        return ATTRIBUTE_POLICIES[self.kind]


class LocationAttribute(_AttributeBase):
    kind: Literal["location"] = "location"


class OccupationAttribute(_AttributeBase):
    kind: Literal["occupation"] = "occupation"


class WorkplaceAttribute(_AttributeBase):
    kind: Literal["workplace"] = "workplace"


class PreferredNameAttribute(_AttributeBase):
    kind: Literal["preferred_name"] = "preferred_name"


class BirthdayAttribute(_AttributeBase):
    kind: Literal["birthday"] = "birthday"


class SpeciesAttribute(_AttributeBase):
    kind: Literal["species"] = "species"


class RelationAttribute(_AttributeBase):
    """Family relation of a person entity to the user (sister, husband...)."""

    kind: Literal["relation"] = "relation"


class PersonalFactAttribute(_AttributeBase):
    kind: Literal["personal_fact"] = "personal_fact"


class PreferenceAttribute(_AttributeBase):
    """Likes/dislikes, e.g. value="likes: hiking"."""

    kind: Literal["preference"] = "preference"


class GenericAttribute(_AttributeBase):
    """Fallback bucket for attributes without a dedicated kind."""

    kind: Literal["generic"] = "generic"
    name: str = Field(..., min_length=1, description="Attribute name, e.g. 'favorite_color'")
    value_policy: ValuePolicy = ValuePolicy.MUTABLE

    @property
    def attribute_name(self) -> str:
        return self.name

    @property
    def policy(self) -> ValuePolicy:
        return self.value_policy


AttributeValue = Annotated[
    Union[
        LocationAttribute,
        OccupationAttribute,
        WorkplaceAttribute,
        PreferredNameAttribute,
        BirthdayAttribute,
        SpeciesAttribute,
        RelationAttribute,
        PersonalFactAttribute,
        PreferenceAttribute,
        GenericAttribute,
    ],
    Field(discriminator="kind"),
]

ATTRIBUTE_POLICIES: dict[str, ValuePolicy] = {
    "location": ValuePolicy.MUTABLE,
    "occupation": ValuePolicy.MUTABLE,
    "workplace": ValuePolicy.MUTABLE,
    "preferred_name": ValuePolicy.MUTABLE,
    "birthday": ValuePolicy.STABLE,
    "species": ValuePolicy.STABLE,
    "relation": ValuePolicy.STABLE,
    "personal_fact": ValuePolicy.CUMULATIVE,
    "preference": ValuePolicy.CUMULATIVE,
    "generic": ValuePolicy.MUTABLE,
}

ATTRIBUTE_KINDS: dict[str, type[_AttributeBase]] = {
    "location": LocationAttribute,
    "occupation": OccupationAttribute,
    "workplace": WorkplaceAttribute,
    "preferred_name": PreferredNameAttribute,
    "birthday": BirthdayAttribute,
    "species": SpeciesAttribute,
    "relation": RelationAttribute,
    "personal_fact": PersonalFactAttribute,
    "preference": PreferenceAttribute,
}


def make_attribute(kind: str, value: str, name: Optional[str] = None) -> _AttributeBase:
    """Build a typed attribute; unknown kinds land in the generic bucket."""
    attribute_cls = ATTRIBUTE_KINDS.get(kind)
    if attribute_cls is not None:
        return attribute_cls(value=value)
    return GenericAttribute(name=name or kind, value=value)


# Extraction candidates
class EntityRef(BaseModel):
    """Reference to an entity by identity fields rather than id."""

    entity_type: EntityType
    entity_subtype: str = ""
    name: str


class AttributeCandidate(BaseModel):
    value: AttributeValue
    confidence: float = 0.9
    historical: bool = Field(default=False, description="Past value, e.g. 'I used to live in Boston'")


class AliasCandidate(BaseModel):
    name: str
    alias_type: AliasType = AliasType.VARIANT


class EntityCandidate(BaseModel):
    """An entity mention produced by extraction, before it is persisted."""

    entity_type: EntityType
    entity_subtype: str = ""
    name: str
    confidence: float = 0.9
    source_type: SourceType = SourceType.USER_STATED
    aliases: list[AliasCandidate] = Field(default_factory=list)
    attributes: list[AttributeCandidate] = Field(default_factory=list)
    relation_to_user: Optional[str] = Field(
        default=None, description="Relationship from the user's profile to this entity (owns, family...)"
    )

    @property
    def ref(self) -> EntityRef:
        return EntityRef(entity_type=self.entity_type, entity_subtype=self.entity_subtype, name=self.name)


class RelationshipCandidate(BaseModel):
    subject: EntityRef
    relationship_type: str
    object_entity: Optional[EntityRef] = None
    object_value: Optional[str] = None
    confidence: float = 0.9


class ExtractionResult(BaseModel):
    """Candidates extracted from a single message."""

    entities: list[EntityCandidate] = Field(default_factory=list)
    relationships: list[RelationshipCandidate] = Field(default_factory=list)
    preferred_name: Optional[str] = Field(default=None, description="Name from a 'call me X' statement")
    profile_attributes: list[AttributeCandidate] = Field(
        default_factory=list, description="User-level facts (location, occupation, workplace...)"
    )
    method: Literal["none", "pattern", "llm", "hybrid"] = "none"

    @property
    def is_empty(self) -> bool:
        return not (self.entities or self.relationships or self.preferred_name or self.profile_attributes)


# Batch extraction
class IncomingMessage(BaseModel):
    """A message from the conversation pipeline. Fields may be missing in malformed input."""

    content: Optional[str] = None
    message_id: Optional[str] = None
    user_id: Optional[str] = None


class BatchFailure(BaseModel):
    index: int
    message_id: Optional[str] = None
    error_kind: str
    error: str


class BatchExtractionReport(BaseModel):
    total: int = 0
    processed: int = 0
    skipped: int = 0
    failures: list[BatchFailure] = Field(default_factory=list)
    kind: Optional[str] = Field(default=None, description="partial_batch_failure when any message was skipped")


# Read models
class FamilyMember(BaseModel):
    name: str
    relation: Optional[str] = None


class CriticalFacts(BaseModel):
    """Every critical-fact category for one user, read in a single snapshot."""

    user_name: Optional[str] = None
    pet_names: list[str] = Field(default_factory=list)
    family_members: list[FamilyMember] = Field(default_factory=list)
    location: Optional[str] = None
    occupation: Optional[str] = None
    workplace: Optional[str] = None

    def has_category(self, category: str) -> bool:
        value = getattr(self, category, None)
        return bool(value)


class AdvisoryContext(BaseModel):
    content: str
    source: Optional[str] = None
    score: float = 0.0


class PromptWithFacts(BaseModel):
    enhanced_prompt: str
    confidence: float
    facts_included: list[str] = Field(default_factory=list)
    missing_categories: list[str] = Field(default_factory=list)
    pending_clarifications: list[str] = Field(default_factory=list)
    advisory_count: int = 0


class FactAccuracyCheck(BaseModel):
    test_name: str
    expected: Any = None
    actual: Any = None
    passed: bool


class ExpectedFacts(BaseModel):
    user_name: Optional[str] = None
    pet_names: Optional[list[str]] = None


class EntitySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_subtype: str
    canonical_name: str
    confidence: float
    status: str
    is_active: bool
    updated_at: Optional[datetime] = None


class DiagnosticInfo(BaseModel):
    entity_count: int
    cache_entries: int
    last_updated: Optional[datetime] = None
    pending_conflicts: int = 0
    entities: list[EntitySummary] = Field(default_factory=list)


class AttributeHistoryItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    attribute_name: str
    attribute_value: str
    attribute_type: str
    confidence: float
    is_current: bool
    source_message_id: Optional[str] = None
    created_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None


class ConflictSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conflict_type: str
    attribute_name: Optional[str] = None
    entities_involved: list[Any] = Field(default_factory=list)
    details: Optional[dict[str, Any]] = None
    resolution_status: str
    resolution_method: Optional[str] = None


class ResolutionReport(BaseModel):
    merged_entities: int = 0
    duplicate_sets: int = 0
    contradictions_resolved: int = 0
    contradictions_pending: int = 0


# API request/response models
class ExtractFactsRequest(BaseModel):
    content: Optional[str] = Field(None, description="Message text")
    message_id: str = Field(..., description="Id of the source message, stored for provenance")


class ExtractBatchRequest(BaseModel):
    messages: list[IncomingMessage]


class PromptRequest(BaseModel):
    base_prompt: str
    query: Optional[str] = Field(None, description="User query used to fetch advisory context")


class FactAccuracyRequest(BaseModel):
    expected: Optional[ExpectedFacts] = None


class ResolvePendingRequest(BaseModel):
    keep_value: str = Field(..., description="The value the user confirmed")


class UserNameResponse(BaseModel):
    user_name: str


class PetNamesResponse(BaseModel):
    pet_names: list[str]


class ProfileFactResponse(BaseModel):
    kind: str
    value: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    kind: str
    detail: str
