import asyncio
import uuid

import pytest

from factmemory.core.exceptions import ConflictUnresolvedError, NotFoundError, ValidationError
from factmemory.schemas.facts import EntityType, ExpectedFacts, IncomingMessage
from factmemory.services.fact_cache import CRITICAL_FACTS_KEY, MISS, USER_NAME_KEY, UserFactCache
from factmemory.services.prompt_injector import CRITICAL_HEADER, NOT_SET

USER = "user-1"


async def tell(service, *messages, user_id=USER):
    for index, content in enumerate(messages):
        await service.extract_and_store_facts(content, f"msg-{index}", user_id)


@pytest.mark.asyncio
async def test_name_and_pet_from_one_message(service):
    result = await service.extract_and_store_facts(
        "Hi, my name is Sarah and I have a cat named Mittens", "msg-1", USER
    )

    assert result.method == "pattern"
    assert await service.get_user_name(USER) == "Sarah"
    assert await service.get_pet_names(USER) == ["Mittens"]


@pytest.mark.asyncio
async def test_unknown_user_name_is_not_found(service):
    with pytest.raises(NotFoundError):
        await service.get_user_name(USER)
    assert await service.get_pet_names(USER) == []


@pytest.mark.asyncio
async def test_hundred_reads_are_identical(service):
    await tell(service, "My name is Clemens.")

    names = [await service.get_user_name(USER) for _ in range(100)]

    assert set(names) == {"Clemens"}


@pytest.mark.asyncio
async def test_concurrent_reads_agree(service):
    await tell(service, "My name is Clemens. I have a cat named Holly.")

    names = await asyncio.gather(*(service.get_user_name(USER) for _ in range(10)))

    assert set(names) == {"Clemens"}


@pytest.mark.asyncio
async def test_concurrent_writes_and_reads_for_two_users(service):
    pets = ["Holly", "Benny", "Milo", "Luna", "Oscar", "Daisy", "Rocky", "Pepper"]

    async def write(user_id, index, name):
        return await service.extract_and_store_facts(f"I have a cat named {name}.", f"{user_id}-{index}", user_id)

    calls = []
    for index, name in enumerate(pets):
        for user_id in ("alice", "bob"):
            calls.append(write(user_id, index, name))
            calls.append(service.get_all_critical_facts(user_id))

    results = await asyncio.gather(*calls, return_exceptions=True)

    assert [r for r in results if isinstance(r, Exception)] == []
    for user_id in ("alice", "bob"):
        assert sorted(await service.get_pet_names(user_id)) == sorted(pets)
        assert sorted((await service.get_all_critical_facts(user_id)).pet_names) == sorted(pets)


@pytest.mark.asyncio
async def test_cache_matches_store_after_each_write(service, session_factory, fact_settings):
    await tell(service, "My name is Clemens.")
    assert await service.get_user_name(USER) == "Clemens"

    async with session_factory() as session:
        assert await UserFactCache(session, USER, fact_settings.cache_ttl_hours).lookup(USER_NAME_KEY) == "Clemens"

    await service.extract_and_store_facts("Please call me Clem.", "msg-2", USER)

    async with session_factory() as session:
        assert await UserFactCache(session, USER, fact_settings.cache_ttl_hours).lookup(USER_NAME_KEY) is MISS
    assert await service.get_user_name(USER) == "Clem"


@pytest.mark.asyncio
async def test_restating_a_pet_with_other_casing_keeps_one_name(service):
    await tell(service, "I have a cat named Holly.", "my cat is named holly", "I have a cat named HOLLY")

    assert await service.get_pet_names(USER) == ["Holly"]


@pytest.mark.asyncio
async def test_location_history_is_kept(service):
    await tell(service, "I live in Boston.", "I live in Portland now.")

    assert await service.get_profile_fact(USER, "location") == "Portland"
    history = await service.get_attribute_history(USER, "location")
    assert [(h.attribute_value, h.is_current) for h in history] == [("Boston", False), ("Portland", True)]
    assert (await service.get_all_critical_facts(USER)).location == "Portland"


@pytest.mark.asyncio
async def test_history_of_unknown_user_is_empty(service):
    assert await service.get_attribute_history("nobody", "location") == []


@pytest.mark.asyncio
async def test_prompt_contains_verified_facts(service):
    await tell(service, "My name is Clemens. I have a cat named Holly.", "I also have a dog named Benny.")

    prompt = await service.generate_system_prompt_with_facts(USER, "You are a helpful assistant.")

    assert CRITICAL_HEADER in prompt.enhanced_prompt
    assert "- User's name: Clemens" in prompt.enhanced_prompt
    assert "- Pet names: Holly, Benny" in prompt.enhanced_prompt
    assert prompt.confidence == 1.0


@pytest.mark.asyncio
async def test_prompt_for_new_user_asks_for_facts(service):
    prompt = await service.generate_system_prompt_with_facts(USER, "You are a helpful assistant.")

    assert f"- User's name: {NOT_SET}" in prompt.enhanced_prompt
    assert prompt.confidence == 0.0


@pytest.mark.asyncio
async def test_questions_store_nothing(service):
    result = await service.extract_and_store_facts("What is my dog's name?", "msg-1", USER)

    assert result.is_empty
    assert (await service.get_diagnostic_info(USER)).entity_count == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("content, message_id, user_id", [(None, "m", USER), ("My name is Ann", "", USER), ("x", "m", " ")])
async def test_invalid_input_is_rejected(service, content, message_id, user_id):
    with pytest.raises(ValidationError):
        await service.extract_and_store_facts(content, message_id, user_id)


@pytest.mark.asyncio
async def test_batch_skips_bad_message_and_processes_the_rest(service):
    messages = [
        IncomingMessage(content="My name is Clemens.", message_id="m1", user_id=USER),
        {"content": "I have a cat named Holly.", "message_id": "m2", "user_id": USER},
        {"content": None, "message_id": "m3", "user_id": USER},
        {"content": "I live in Portland.", "message_id": "m4", "user_id": USER},
        {"content": "I have a dog named Benny.", "message_id": "m5", "user_id": USER},
    ]

    report = await service.extract_and_store_batch(messages)

    assert (report.total, report.processed, report.skipped) == (5, 4, 1)
    assert report.kind == "partial_batch_failure"
    assert [(f.index, f.message_id, f.error_kind) for f in report.failures] == [(2, "m3", "validation_error")]
    assert await service.get_pet_names(USER) == ["Holly", "Benny"]


@pytest.mark.asyncio
async def test_clean_batch_has_no_failure_kind(service):
    report = await service.extract_and_store_batch([{"content": "My name is Ann.", "message_id": "m1", "user_id": USER}])

    assert report.processed == 1
    assert report.kind is None


@pytest.mark.asyncio
async def test_contradictory_birthday_needs_confirmation(service):
    await tell(service, "My birthday is on March 3rd.", "My birthday is on June 5th.")

    with pytest.raises(ConflictUnresolvedError) as exc_info:
        await service.get_profile_fact(USER, "birthday")
    assert exc_info.value.details["values"] == ["March 3rd", "June 5th"]

    [pending] = await service.get_pending_conflicts(USER)
    prompt = await service.generate_system_prompt_with_facts(USER, "")
    assert "NEEDS CLARIFICATION" in prompt.enhanced_prompt

    resolved = await service.resolve_pending_conflict(USER, pending.id, "March 3rd")

    assert resolved.resolution_status == "resolved"
    assert await service.get_profile_fact(USER, "birthday") == "March 3rd"
    assert await service.get_pending_conflicts(USER) == []


@pytest.mark.asyncio
async def test_missing_profile_fact_is_not_found(service):
    await tell(service, "My name is Clemens.")

    with pytest.raises(NotFoundError):
        await service.get_profile_fact(USER, "occupation")


@pytest.mark.asyncio
async def test_forget_entity_removes_pet_from_reads(service):
    await tell(service, "I have a cat named Holly.", "I have a dog named Benny.")
    assert await service.get_pet_names(USER) == ["Holly", "Benny"]

    info = await service.get_diagnostic_info(USER)
    [holly] = [e for e in info.entities if e.canonical_name == "Holly"]
    forgotten = await service.forget_entity(USER, holly.id)

    assert forgotten.is_active is False
    assert await service.get_pet_names(USER) == ["Benny"]


@pytest.mark.asyncio
async def test_forget_unknown_entity(service):
    with pytest.raises(NotFoundError):
        await service.forget_entity(USER, uuid.uuid4())


@pytest.mark.asyncio
async def test_users_are_isolated(service):
    await tell(service, "My name is Clemens.", user_id="alice")
    await tell(service, "My name is Sarah.", user_id="bob")

    assert await service.get_user_name("alice") == "Clemens"
    assert await service.get_user_name("bob") == "Sarah"


@pytest.mark.asyncio
async def test_self_accuracy_checks_pass_without_writing_cache(service, session_factory, fact_settings):
    await tell(service, "My name is Clemens. I have a cat named Holly.")

    checks = await service.test_fact_accuracy(USER)

    assert [c.test_name for c in checks] == [
        "user_name_repeatable",
        "pet_names_repeatable",
        "cache_matches_store",
        "prompt_contains_facts",
    ]
    assert all(c.passed for c in checks)
    async with session_factory() as session:
        assert await UserFactCache(session, USER, fact_settings.cache_ttl_hours).lookup(CRITICAL_FACTS_KEY) is MISS


@pytest.mark.asyncio
async def test_accuracy_against_expected_values(service):
    await tell(service, "My name is Clemens. I have a cat named Holly.")

    checks = await service.test_fact_accuracy(USER, ExpectedFacts(user_name="Clemens", pet_names=["holly", "Benny"]))

    assert [(c.test_name, c.passed) for c in checks] == [("user_name", True), ("pet_names", False)]


@pytest.mark.asyncio
async def test_diagnostics(service):
    await tell(service, "My name is Clemens. I have a cat named Holly.")
    await service.get_all_critical_facts(USER)

    info = await service.get_diagnostic_info(USER)

    assert info.cache_entries == 1
    assert info.last_updated is not None
    assert info.pending_conflicts == 0
    types = {e.entity_type for e in info.entities}
    assert {EntityType.PERSON.value, EntityType.PET.value} <= types


@pytest.mark.asyncio
async def test_resolve_conflicts_on_clean_store(service):
    await tell(service, "My name is Clemens.")

    report = await service.resolve_conflicts(USER)

    assert report.merged_entities == 0
