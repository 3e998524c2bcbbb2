import uuid

import pytest

from factmemory.core.exceptions import ConflictUnresolvedError, NotFoundError
from factmemory.schemas.facts import (
    USER_SUBTYPE,
    AliasCandidate,
    AliasType,
    BirthdayAttribute,
    EntityCandidate,
    EntityStatus,
    EntityType,
    LocationAttribute,
    SourceType,
)
from factmemory.utils.normalization import normalize_name

USER = "user-1"


def pet(name, confidence=0.9, aliases=()):
    return EntityCandidate(
        entity_type=EntityType.PET,
        name=name,
        confidence=confidence,
        aliases=[AliasCandidate(name=a) for a in aliases],
    )


async def duplicate_pet(store, name, confidence=0.9):
    """Insert a pet row directly, as a concurrent writer or older data could leave it."""
    return await store.entities.create(
        user_id=USER,
        entity_type=EntityType.PET.value,
        entity_subtype="",
        canonical_name=name,
        normalized_name=normalize_name(name),
        confidence=confidence,
        source_type=SourceType.USER_STATED.value,
        status=EntityStatus.ACTIVE.value,
        is_active=True,
    )


@pytest.mark.asyncio
async def test_case_variants_merge_into_first_stated(store, resolver):
    holly = await store.upsert_entity(USER, pet("Holly"))
    variant = await duplicate_pet(store, "holly")

    report = await resolver.resolve_all(USER)

    assert report.duplicate_sets == 1
    assert report.merged_entities == 1
    assert await store.get_pet_names(USER) == ["Holly"]
    assert variant.status == EntityStatus.MERGED.value
    assert variant.is_active is False
    assert variant.merged_into_id == holly.id
    assert [a.alias_name for a in await store.list_aliases([holly.id])] == ["holly"]


@pytest.mark.asyncio
async def test_highest_confidence_becomes_primary(store, resolver):
    await store.upsert_entity(USER, pet("Holly", confidence=0.85))
    stronger = await duplicate_pet(store, "HOLLY", confidence=0.95)

    await resolver.resolve_all(USER)

    assert await store.get_pet_names(USER) == ["HOLLY"]
    assert (await store.get_entity(USER, EntityType.PET.value, "holly")).id == stronger.id


@pytest.mark.asyncio
async def test_alias_overlap_is_a_duplicate(store, resolver):
    await store.upsert_entity(USER, pet("Benjamin", aliases=["Benny"]))
    await duplicate_pet(store, "Benny")

    report = await resolver.resolve_all(USER)

    assert report.merged_entities == 1
    assert await store.get_pet_names(USER) == ["Benjamin"]


@pytest.mark.asyncio
async def test_different_types_never_merge(store, resolver):
    await store.upsert_entity(USER, pet("Max"))
    await store.upsert_entity(
        USER, EntityCandidate(entity_type=EntityType.PERSON, entity_subtype="family", name="Max")
    )

    report = await resolver.resolve_all(USER)

    assert report.duplicate_sets == 0


@pytest.mark.asyncio
async def test_merge_repoints_relationships(store, resolver):
    holly = await store.upsert_entity(USER, pet("Holly"))
    variant = await duplicate_pet(store, "holly")
    await store.link_to_user(USER, variant, "owns")

    await resolver.resolve_all(USER)

    profile = await store.get_profile(USER)
    assert await store.relationships.find(profile.id, "owns", holly.id) is not None


@pytest.mark.asyncio
async def test_mutable_contradiction_resolves_to_most_recent(store, resolver):
    profile = await store.get_profile(USER, create=True)
    await store.set_attribute(USER, profile, LocationAttribute(value="Boston"))
    change = await store.set_attribute(USER, profile, LocationAttribute(value="Portland"))

    report = await resolver.handle_attribute_changes(USER, [change])

    assert report.contradictions_resolved == 1
    assert report.contradictions_pending == 0
    assert await store.get_current_value(profile, "location") == "Portland"
    assert list(await resolver.pending_conflicts(USER)) == []


@pytest.mark.asyncio
async def test_low_confidence_replacement_is_not_a_contradiction(store, resolver):
    profile = await store.get_profile(USER, create=True)
    await store.set_attribute(USER, profile, LocationAttribute(value="Boston"), confidence=0.5)
    change = await store.set_attribute(USER, profile, LocationAttribute(value="Portland"))

    report = await resolver.handle_attribute_changes(USER, [change])

    assert report.contradictions_resolved == 0


@pytest.mark.asyncio
async def test_stable_contradiction_waits_for_confirmation(store, resolver):
    profile = await store.get_profile(USER, create=True)
    await store.set_attribute(USER, profile, BirthdayAttribute(value="May 3"))
    change = await store.set_attribute(USER, profile, BirthdayAttribute(value="June 5"))

    report = await resolver.handle_attribute_changes(USER, [change])
    assert report.contradictions_pending == 1

    with pytest.raises(ConflictUnresolvedError) as exc_info:
        await resolver.ensure_no_pending(USER, profile, "birthday")
    assert exc_info.value.details["values"] == ["May 3", "June 5"]

    conflict_id = (await resolver.pending_conflicts(USER))[0].id
    resolved = await resolver.resolve_pending(USER, conflict_id, "May 3")

    assert resolved.resolution_method == "user_confirmed"
    assert await store.get_current_value(profile, "birthday") == "May 3"
    await resolver.ensure_no_pending(USER, profile, "birthday")


@pytest.mark.asyncio
async def test_resolve_unknown_conflict_raises(resolver):
    with pytest.raises(NotFoundError):
        await resolver.resolve_pending(USER, uuid.uuid4(), "May 3")


@pytest.mark.asyncio
async def test_preferred_name_renames_user(store, resolver):
    await store.upsert_entity(
        USER, EntityCandidate(entity_type=EntityType.PERSON, entity_subtype=USER_SUBTYPE, name="Robert")
    )

    user = await resolver.apply_preferred_name(USER, "Bob", 0.9)

    assert await store.get_user_name(USER) == "Bob"
    assert user.source_type == SourceType.CORRECTED.value
    aliases = await store.list_aliases([user.id])
    assert [(a.alias_name, a.alias_type) for a in aliases] == [("Robert", AliasType.FORMAL.value)]
    assert await store.get_current_value(user, "preferred_name") == "Bob"


@pytest.mark.asyncio
async def test_preferred_name_without_prior_name_creates_user(store, resolver):
    await resolver.apply_preferred_name(USER, "Clem", 0.9)

    assert await store.get_user_name(USER) == "Clem"
