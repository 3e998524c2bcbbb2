"""SQLAlchemy models for the fact-memory tables."""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from factmemory.core.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

ACTIVE_WHERE = text("is_active")
CURRENT_SINGLE_WHERE = text("is_current AND value_policy != 'cumulative'")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FactEntity(Base):
    """A person, pet, place or thing the user has told us about."""

    __tablename__ = "fact_entities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String, nullable=False, comment="person, pet, place, thing")
    entity_subtype: Mapped[str] = mapped_column(
        String, nullable=False, default="", comment="user, family, profile, home... empty when absent"
    )
    canonical_name: Mapped[str] = mapped_column(String, nullable=False)
    normalized_name: Mapped[str] = mapped_column(
        String, nullable=False, comment="Casefolded, whitespace-collapsed canonical_name"
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.9)
    source_type: Mapped[str] = mapped_column(
        String, nullable=False, default="user_stated", comment="user_stated, inferred, corrected"
    )
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="proposed", comment="proposed, active, merged, inactive"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, comment="Live record (proposed or active)"
    )
    merged_into_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("fact_entities.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )

    __table_args__ = (
        Index(
            "uq_fact_entities_live_name",
            "user_id",
            "entity_type",
            "entity_subtype",
            "canonical_name",
            unique=True,
            postgresql_where=ACTIVE_WHERE,
            sqlite_where=ACTIVE_WHERE,
        ),
        Index("ix_fact_entities_lookup", "user_id", "entity_type", "entity_subtype", "normalized_name"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_fact_entities_confidence"),
        {"comment": "Entities partitioned by user; unique live canonical name per type/subtype"},
    )


class FactAlias(Base):
    """Alternate names for an entity. Never authoritative."""

    __tablename__ = "fact_aliases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("fact_entities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    alias_name: Mapped[str] = mapped_column(String, nullable=False)
    normalized_alias: Mapped[str] = mapped_column(String, nullable=False, index=True)
    alias_type: Mapped[str] = mapped_column(String, nullable=False, default="variant", comment="nickname, formal, variant")
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.9)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("entity_id", "alias_name", name="uq_fact_alias_entity_name"),
        {"comment": "Aliases with unique (entity_id, alias_name)"},
    )


class FactRelationship(Base):
    """Typed edge from a subject entity to another entity or a literal value."""

    __tablename__ = "fact_relationships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    subject_entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("fact_entities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    relationship_type: Mapped[str] = mapped_column(String, nullable=False, comment="owns, family, lives_in, works_at...")
    object_entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("fact_entities.id", ondelete="CASCADE"), nullable=True, index=True
    )
    object_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.9)
    source_message_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "(object_entity_id IS NOT NULL AND object_value IS NULL) "
            "OR (object_entity_id IS NULL AND object_value IS NOT NULL)",
            name="ck_fact_relationship_single_object",
        ),
        {"comment": "Relationships; exactly one of object_entity_id/object_value is set"},
    )


class FactAttribute(Base):
    """Attribute values. Superseded values stay as non-current history rows."""

    __tablename__ = "fact_attributes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("fact_entities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    attribute_name: Mapped[str] = mapped_column(String, nullable=False)
    attribute_value: Mapped[str] = mapped_column(Text, nullable=False)
    attribute_type: Mapped[str] = mapped_column(String, nullable=False, comment="Attribute kind (location, birthday...)")
    value_policy: Mapped[str] = mapped_column(String, nullable=False, comment="mutable, stable, cumulative")
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.9)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    source_message_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, server_default=func.now()
    )
    superseded_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_fact_attributes_current_single",
            "entity_id",
            "attribute_name",
            unique=True,
            postgresql_where=CURRENT_SINGLE_WHERE,
            sqlite_where=CURRENT_SINGLE_WHERE,
        ),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_fact_attributes_confidence"),
        {"comment": "Attributes; one current value per (entity, name) for single-value policies"},
    )


class FactCacheEntry(Base):
    """Read-through projection of critical facts. Never authoritative."""

    __tablename__ = "fact_cache"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    cache_key: Mapped[str] = mapped_column(String, nullable=False, comment="user_name, pet_names, critical_facts")
    cache_value: Mapped[Any] = mapped_column(JSONType, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "cache_key", name="uq_fact_cache_user_key"),
        {"comment": "TTL-bound cache rows with unique (user_id, cache_key)"},
    )


class FactConflict(Base):
    """Duplicate sets and attribute contradictions, with their resolution."""

    __tablename__ = "fact_conflicts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    entities_involved: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    conflict_type: Mapped[str] = mapped_column(String, nullable=False, comment="duplicate, contradiction")
    attribute_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    resolution_status: Mapped[str] = mapped_column(String, nullable=False, comment="resolved, pending_review")
    resolution_method: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, server_default=func.now()
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class FactAuditLog(Base):
    """Append-only history of every change to a user's facts."""

    __tablename__ = "fact_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    action_type: Mapped[str] = mapped_column(String, nullable=False)
    old_value: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    new_value: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    source_message_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, server_default=func.now()
    )
