"""Tests for fact extraction and memory consolidation."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import AllProvidersFailedError, ProviderServerError
from extractor import FactExtractor, MemoryConsolidator, parse_extraction
from memory import create_default_memory
from models import IdentityKey
from providers import DispatchResult

DM = IdentityKey("catzuya", "u1")


def _dispatcher(reply=None, error=None):
    dispatcher = MagicMock()
    if error is not None:
        dispatcher.dispatch = AsyncMock(side_effect=error)
    else:
        dispatcher.dispatch = AsyncMock(return_value=DispatchResult(text=reply, provider_used="a", was_fallback=False))
    return dispatcher


def test_parse_plain_json():
    result = parse_extraction('{"facts": ["Is a nurse"], "trustLevel": 6}')
    assert result == {"facts": ["Is a nurse"], "trustLevel": 6}


def test_parse_fenced_json():
    raw = '```json\n{"facts": ["Has two sisters"], "romanticLevel": 1}\n```'
    assert parse_extraction(raw) == {"facts": ["Has two sisters"], "romanticLevel": 1}


def test_parse_json_inside_prose():
    raw = 'Sure! Here is the update: {"facts": ["Lives in Osaka"]} Hope that helps.'
    assert parse_extraction(raw) == {"facts": ["Lives in Osaka"]}


def test_parse_drops_bad_fields():
    raw = '{"facts": ["ok", 3, ""], "trustLevel": "high", "censorshipLevel": true}'
    assert parse_extraction(raw) == {"facts": ["ok"]}


@pytest.mark.parametrize("raw", ["", "no json here", '{"facts": []}', "[1, 2]", "{broken"])
def test_parse_unusable_replies(raw):
    assert parse_extraction(raw) is None


def test_extraction_prompt_mentions_memory_and_turns():
    extractor = FactExtractor(_dispatcher("{}"), "Catzuya")
    batch = [{"role": "user", "content": "I just got a puppy"}, {"role": "catzuya", "content": "omg name?"}]

    prompt = extractor.build_prompt(batch, dict(create_default_memory(), facts=["Is a nurse"]))

    content = prompt.messages[-1]["content"]
    assert '["Is a nurse"]' in content
    assert "User: I just got a puppy" in content
    assert "Catzuya: omg name?" in content


@pytest.mark.asyncio
async def test_extract_uses_low_temperature():
    dispatcher = _dispatcher('{"facts": ["Got a puppy"]}')
    result = await FactExtractor(dispatcher, "Catzuya").extract([{"role": "user", "content": "x"}], create_default_memory())

    assert result == {"facts": ["Got a puppy"]}
    assert dispatcher.dispatch.await_args.kwargs["temperature"] == 0.2


@pytest.mark.asyncio
async def test_extract_survives_provider_failure():
    error = AllProvidersFailedError("a", ProviderServerError("a", "down"))
    extractor = FactExtractor(_dispatcher(error=error), "Catzuya")
    assert await extractor.extract([{"role": "user", "content": "x"}], create_default_memory()) is None


@pytest.mark.asyncio
async def test_consolidates_when_batch_is_full(store):
    dispatcher = _dispatcher('{"facts": ["Got a puppy"], "trustLevel": 7}')
    consolidator = MemoryConsolidator(store, FactExtractor(dispatcher, "Catzuya"), batch_size=4)

    assert await consolidator.add_exchange(DM, "hi", "hey") is None
    assert len(consolidator.pending(DM)) == 2

    memory = await consolidator.add_exchange(DM, "I got a puppy", "omg!!")

    assert memory["facts"] == ["Got a puppy"]
    assert store.load_memory(DM)["trustLevel"] == 7
    assert consolidator.pending(DM) == []
    dispatcher.dispatch.assert_awaited_once()


@pytest.mark.asyncio
async def test_batches_are_per_identity(store):
    dispatcher = _dispatcher('{"facts": ["x"]}')
    consolidator = MemoryConsolidator(store, FactExtractor(dispatcher, "Catzuya"), batch_size=4)
    in_guild = IdentityKey("catzuya", "u1", "guild1")

    await consolidator.add_exchange(DM, "a", "b")
    await consolidator.add_exchange(in_guild, "c", "d")

    dispatcher.dispatch.assert_not_awaited()
    assert consolidator.pending(in_guild)[0]["context"] == "server:guild1"


@pytest.mark.asyncio
async def test_community_batch_reaches_extractor_whole(store):
    dispatcher = _dispatcher('{"facts": ["Plays bass"]}')
    consolidator = MemoryConsolidator(store, FactExtractor(dispatcher, "Catzuya"), batch_size=4)
    in_guild = IdentityKey("catzuya", "u1", "guild1")

    await consolidator.add_exchange(in_guild, "I play bass", "since when?")
    await consolidator.add_exchange(in_guild, "since high school", "that's so cool")

    content = dispatcher.dispatch.await_args.args[0].messages[-1]["content"]
    assert "User: I play bass" in content
    assert "User: since high school" in content
    assert store.load_memory(in_guild)["facts"] == ["Plays bass"]
    assert consolidator.pending(in_guild) == []
