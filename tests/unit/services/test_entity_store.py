import pytest

from factmemory.core.exceptions import NotFoundError, ValidationError
from factmemory.schemas.facts import (
    USER_SUBTYPE,
    AliasCandidate,
    AliasType,
    EntityCandidate,
    EntityStatus,
    EntityType,
    LocationAttribute,
    PreferenceAttribute,
)
from factmemory.services.fact_cache import MISS, USER_NAME_KEY, UserFactCache

USER = "user-1"


def user_candidate(name="Clemens", confidence=0.9):
    return EntityCandidate(
        entity_type=EntityType.PERSON, entity_subtype=USER_SUBTYPE, name=name, confidence=confidence
    )


def pet_candidate(name, confidence=0.9, aliases=()):
    return EntityCandidate(
        entity_type=EntityType.PET,
        name=name,
        confidence=confidence,
        aliases=[AliasCandidate(name=a, alias_type=AliasType.NICKNAME) for a in aliases],
    )


@pytest.mark.asyncio
async def test_upsert_entity_is_idempotent(store):
    first = await store.upsert_entity(USER, user_candidate(), "m1")
    second = await store.upsert_entity(USER, user_candidate(), "m2")

    assert first.id == second.id
    assert second.confidence == pytest.approx(0.95)
    assert await store.count_active_entities(USER) == 1


@pytest.mark.asyncio
async def test_restating_in_other_case_reinforces_existing_entity(store):
    holly = await store.upsert_entity(USER, pet_candidate("Holly"))
    for _ in range(3):
        restated = await store.upsert_entity(USER, pet_candidate("holly"))
        assert restated.id == holly.id

    pets = await store.list_entities(USER, EntityType.PET.value, include_proposed=True)
    assert [(p.canonical_name, p.status) for p in pets] == [("Holly", EntityStatus.ACTIVE.value)]
    assert holly.confidence == pytest.approx(1.0)
    aliases = await store.list_aliases([holly.id])
    assert [(a.alias_name, a.alias_type) for a in aliases] == [("holly", AliasType.VARIANT.value)]


@pytest.mark.asyncio
async def test_restating_a_known_alias_reinforces_its_entity(store):
    benjamin = await store.upsert_entity(USER, pet_candidate("Benjamin", aliases=["Benny"]))

    restated = await store.upsert_entity(USER, pet_candidate("Benny"))

    assert restated.id == benjamin.id
    assert benjamin.confidence == pytest.approx(0.95)
    assert await store.get_pet_names(USER) == ["Benjamin"]


@pytest.mark.asyncio
async def test_weak_entity_stays_proposed_until_reinforced(store):
    entity = await store.upsert_entity(USER, user_candidate(confidence=0.7))
    assert entity.status == EntityStatus.PROPOSED.value
    with pytest.raises(NotFoundError):
        await store.get_user_name(USER)

    await store.upsert_entity(USER, user_candidate(confidence=0.7))
    assert entity.status == EntityStatus.PROPOSED.value

    await store.upsert_entity(USER, user_candidate(confidence=0.7))
    assert entity.confidence == pytest.approx(0.8)
    assert entity.status == EntityStatus.ACTIVE.value
    assert await store.get_user_name(USER) == "Clemens"


@pytest.mark.asyncio
async def test_invalid_confidence_is_rejected(store):
    with pytest.raises(ValidationError):
        await store.upsert_entity(USER, user_candidate(confidence=1.5))


@pytest.mark.asyncio
async def test_get_user_name_without_name_raises(store):
    with pytest.raises(NotFoundError):
        await store.get_user_name(USER)


@pytest.mark.asyncio
async def test_facts_are_scoped_per_user(store):
    await store.upsert_entity(USER, user_candidate())
    with pytest.raises(NotFoundError):
        await store.get_user_name("someone-else")


@pytest.mark.asyncio
async def test_get_entity_falls_back_to_alias(store):
    pet = await store.upsert_entity(USER, pet_candidate("Benjamin", aliases=["Benny"]))

    found = await store.get_entity(USER, EntityType.PET.value, "benny")

    assert found.id == pet.id
    with pytest.raises(NotFoundError):
        await store.get_entity(USER, EntityType.PET.value, "Rex")


@pytest.mark.asyncio
async def test_mutable_attribute_keeps_history(store):
    profile = await store.get_profile(USER, create=True)

    first = await store.set_attribute(USER, profile, LocationAttribute(value="Boston"), source_message_id="m1")
    second = await store.set_attribute(USER, profile, LocationAttribute(value="Portland"), source_message_id="m2")

    assert first.outcome == "created"
    assert second.outcome == "replaced"
    assert second.previous.attribute_value == "Boston"
    assert await store.get_current_value(profile, "location") == "Portland"

    history = await store.get_attribute_history(profile, "location")
    assert [(row.attribute_value, row.is_current) for row in history] == [("Boston", False), ("Portland", True)]
    assert history[0].superseded_at is not None


@pytest.mark.asyncio
async def test_restating_attribute_reinforces(store):
    profile = await store.get_profile(USER, create=True)
    await store.set_attribute(USER, profile, LocationAttribute(value="Portland"))

    change = await store.set_attribute(USER, profile, LocationAttribute(value="portland"))

    assert change.outcome == "reinforced"
    assert change.attribute.confidence == pytest.approx(0.95)
    assert len(await store.get_attribute_history(profile, "location")) == 1


@pytest.mark.asyncio
async def test_cumulative_attribute_appends(store):
    profile = await store.get_profile(USER, create=True)
    await store.set_attribute(USER, profile, PreferenceAttribute(value="likes: hiking"))

    change = await store.set_attribute(USER, profile, PreferenceAttribute(value="likes: jazz"))

    assert change.outcome == "appended"
    values = [row.attribute_value for row in await store.get_current_attributes(profile)]
    assert values == ["likes: hiking", "likes: jazz"]


@pytest.mark.asyncio
async def test_historical_value_leaves_current_alone(store):
    profile = await store.get_profile(USER, create=True)
    await store.set_attribute(USER, profile, LocationAttribute(value="Portland"))

    change = await store.set_attribute(USER, profile, LocationAttribute(value="Boston"), historical=True)

    assert change.outcome == "historical"
    assert await store.get_current_value(profile, "location") == "Portland"


@pytest.mark.asyncio
async def test_relationship_needs_exactly_one_object(store):
    profile = await store.get_profile(USER, create=True)
    pet = await store.upsert_entity(USER, pet_candidate("Holly"))

    with pytest.raises(ValidationError):
        await store.add_relationship(USER, profile, "owns")
    with pytest.raises(ValidationError):
        await store.add_relationship(USER, profile, "owns", object_entity=pet, object_value="Holly")

    first = await store.add_relationship(USER, profile, "owns", object_entity=pet)
    again = await store.add_relationship(USER, profile, "owns", object_entity=pet)
    assert first.id == again.id


@pytest.mark.asyncio
async def test_rename_keeps_previous_name_as_formal_alias(store):
    user = await store.upsert_entity(USER, user_candidate("Robert"))

    await store.rename_entity(USER, user, "Bob")

    assert await store.get_user_name(USER) == "Bob"
    aliases = await store.list_aliases([user.id])
    assert [(a.alias_name, a.alias_type) for a in aliases] == [("Robert", AliasType.FORMAL.value)]
    assert (await store.get_entity(USER, EntityType.PERSON.value, "robert")).id == user.id


@pytest.mark.asyncio
async def test_deactivated_pet_is_no_longer_listed(store):
    holly = await store.upsert_entity(USER, pet_candidate("Holly"))
    await store.upsert_entity(USER, pet_candidate("Benny"))

    await store.deactivate_entity(USER, holly.id)

    assert await store.get_pet_names(USER) == ["Benny"]


@pytest.mark.asyncio
async def test_write_invalidates_user_cache(session, store):
    cache = UserFactCache(session, USER)
    await cache.store(USER_NAME_KEY, "Stale")
    assert await cache.lookup(USER_NAME_KEY) == "Stale"

    await store.upsert_entity(USER, user_candidate())

    assert await cache.lookup(USER_NAME_KEY) is MISS


@pytest.mark.asyncio
async def test_every_change_is_audited(store):
    pet = await store.upsert_entity(USER, pet_candidate("Holly"), "m1")
    await store.upsert_entity(USER, pet_candidate("Holly", aliases=["Hol"]), "m2")
    await store.set_attribute(USER, pet, LocationAttribute(value="Boston"), source_message_id="m3")
    await store.set_attribute(USER, pet, LocationAttribute(value="Portland"), source_message_id="m4")

    trail = await store.audit.for_entity(pet.id)

    assert [entry.action_type for entry in trail] == [
        "create",
        "reinforce",
        "alias",
        "attribute_set",
        "attribute_set",
    ]
    assert trail[-1].old_value == {"name": "location", "value": "Boston"}
    assert [entry.source_message_id for entry in trail] == ["m1", "m2", None, "m3", "m4"]
