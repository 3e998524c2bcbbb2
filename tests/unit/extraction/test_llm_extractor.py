import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from factmemory.core.exceptions import ExtractionTimeoutError
from factmemory.schemas.facts import EntityType
from factmemory.services.extraction.llm_extractor import LLMFactExtractor


def make_client(payload):
    client = MagicMock()
    client.generate_content = AsyncMock(return_value=payload if isinstance(payload, str) else json.dumps(payload))
    return client


@pytest.mark.asyncio
async def test_maps_model_output_to_candidates():
    client = make_client(
        {
            "user_name": "Sarah",
            "preferred_name": None,
            "pets": [{"name": "Mittens", "species": "Cat", "confidence": 0.97}],
            "family": [{"name": "Anna", "relation": "Sister", "confidence": 0.8}],
            "profile": [
                {"kind": "location", "value": "Portland", "historical": False, "confidence": 0.9},
                {"kind": "other", "name": "favorite_color", "value": "blue", "confidence": 0.7},
            ],
        }
    )
    extractor = LLMFactExtractor(client, timeout_seconds=1)

    result = await extractor.extract("My name is Sarah, Mittens is my cat and my sister Anna lives nearby")

    assert result.method == "llm"
    assert [(e.entity_type, e.name) for e in result.entities] == [
        (EntityType.PERSON, "Sarah"),
        (EntityType.PET, "Mittens"),
        (EntityType.PERSON, "Anna"),
    ]
    mittens = result.entities[1]
    assert mittens.confidence == 0.9
    assert mittens.attributes[0].value.value == "cat"
    assert result.entities[2].attributes[0].value.value == "sister"
    assert [a.value.attribute_name for a in result.profile_attributes] == ["location", "favorite_color"]

    kwargs = client.generate_content.call_args.kwargs
    assert kwargs["json_mode"] is True
    assert "Mittens is my cat" in kwargs["contents"]


@pytest.mark.asyncio
async def test_fenced_json_is_accepted():
    client = make_client('```json\n{"user_name": "Clemens", "pets": []}\n```')

    result = await LLMFactExtractor(client).extract("I'm Clemens")

    assert [e.name for e in result.entities] == ["Clemens"]


@pytest.mark.asyncio
async def test_malformed_items_are_dropped():
    client = make_client(
        {
            "pets": [{"name": ""}, "Rex", {"name": "Benny", "confidence": "high"}],
            "family": [{"name": "Tom"}],
            "profile": [{"kind": "location"}, {"kind": "birthday", "value": "May 3", "historical": True}],
        }
    )

    result = await LLMFactExtractor(client).extract("...")

    assert [e.name for e in result.entities] == ["Benny"]
    assert result.entities[0].confidence == 0.9
    assert [(a.value.value, a.historical) for a in result.profile_attributes] == [("May 3", True)]


@pytest.mark.asyncio
async def test_non_json_answer_yields_empty_result():
    result = await LLMFactExtractor(make_client("Sorry, I cannot help with that.")).extract("hello")

    assert result.is_empty


@pytest.mark.asyncio
async def test_slow_model_raises_timeout():
    async def slow(**kwargs):
        await asyncio.sleep(1)
        return "{}"

    client = MagicMock()
    client.generate_content = slow

    with pytest.raises(ExtractionTimeoutError):
        await LLMFactExtractor(client, timeout_seconds=0.01).extract("My name is Clemens")
