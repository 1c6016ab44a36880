"""Tests for provider adapters and the fallback chain."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import openai
import pytest

import logger as log
from config import ProviderConfig
from errors import (
    AllProvidersFailedError,
    ProviderAuthError,
    ProviderContentBlockedError,
    ProviderMalformedResponseError,
    ProviderRateLimitError,
    ProviderServerError,
    ProviderTimeoutError,
)
from fakes import FakeProvider
from memory import MemoryView
from prompt_builder import STRUCTURED, TEXT, PromptPayload
from providers import (
    GeminiProvider,
    OpenAICompatibleProvider,
    ProviderDispatcher,
    ProviderRequest,
    error_for_status,
    format_memory_context,
)

PROMPT = PromptPayload(
    kind=STRUCTURED,
    system_prompt="Be Catzuya.",
    messages=[{"role": "system", "content": "Be Catzuya."}, {"role": "user", "content": "hi"}],
)


def _dispatcher(*providers, primary=None, fallback_enabled=True, order=None):
    table = {p.name: p for p in providers}
    names = [p.name for p in providers]
    return ProviderDispatcher(table, primary or names[0], fallback_enabled, order or names)


@pytest.mark.parametrize("status,error", [
    (429, ProviderRateLimitError),
    (401, ProviderAuthError),
    (403, ProviderAuthError),
    (500, ProviderServerError),
    (503, ProviderServerError),
    (400, ProviderMalformedResponseError),
])
def test_error_for_status(status, error):
    assert isinstance(error_for_status("gemini", status), error)


@pytest.mark.asyncio
async def test_primary_success():
    primary = FakeProvider("openrouter", "hey!")
    backup = FakeProvider("chutes", "backup")

    result = await _dispatcher(primary, backup).dispatch(PROMPT)

    assert (result.text, result.provider_used, result.was_fallback) == ("hey!", "openrouter", False)
    assert backup.requests == []


@pytest.mark.asyncio
async def test_falls_back_in_order():
    primary = FakeProvider("openrouter", ProviderRateLimitError("openrouter", "429"))
    second = FakeProvider("chutes", ProviderTimeoutError("chutes", "timeout"))
    third = FakeProvider("gemini", "from gemini", structured=False)
    dispatcher = _dispatcher(primary, second, third)

    result = await dispatcher.dispatch(PROMPT)

    assert result.provider_used == "gemini"
    assert result.was_fallback
    assert dispatcher.get_status() == {"openrouter": "rate_limit", "chutes": "timeout", "gemini": "ok"}


@pytest.mark.asyncio
async def test_all_providers_failed_names_first_and_last_error():
    first = ProviderAuthError("openrouter", "bad key")
    last = ProviderServerError("gemini", "overloaded")
    dispatcher = _dispatcher(
        FakeProvider("openrouter", first),
        FakeProvider("chutes", ProviderTimeoutError("chutes", "timeout")),
        FakeProvider("gemini", last),
    )

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await dispatcher.dispatch(PROMPT)

    assert exc_info.value.primary == "openrouter"
    assert exc_info.value.primary_error is first
    assert exc_info.value.last_error is last
    assert "bad key" in str(exc_info.value)
    assert "overloaded" in str(exc_info.value)


@pytest.mark.asyncio
async def test_fallback_disabled_tries_only_primary():
    primary = FakeProvider("openrouter", ProviderServerError("openrouter", "down"))
    backup = FakeProvider("chutes", "backup")

    with pytest.raises(AllProvidersFailedError):
        await _dispatcher(primary, backup, fallback_enabled=False).dispatch(PROMPT)
    assert backup.requests == []


def test_primary_is_not_repeated_in_fallbacks():
    dispatcher = _dispatcher(FakeProvider("a", "x"), FakeProvider("b", "y"), primary="b", order=["a", "b"])
    assert dispatcher.candidates() == ["b", "a"]


def test_set_primary():
    dispatcher = _dispatcher(FakeProvider("a", "x"), FakeProvider("b", "y", structured=False))
    assert dispatcher.primary_structured
    assert dispatcher.set_primary("B")
    assert dispatcher.primary == "b"
    assert not dispatcher.primary_structured
    assert not dispatcher.set_primary("missing")


@pytest.mark.asyncio
async def test_text_provider_gets_flattened_turns():
    text_only = FakeProvider("colab", "ok", structured=False)
    await _dispatcher(text_only).dispatch(PROMPT)

    request = text_only.requests[0]
    assert request.messages is None
    assert request.text == "[System Instructions]\nBe Catzuya.\n\nUser: hi"


@pytest.mark.asyncio
async def test_text_prompt_carries_memory_and_instructions():
    text_only = FakeProvider("colab", "ok", structured=False)
    prompt = PromptPayload(kind=TEXT, system_prompt="Be Catzuya.", text="ROLE: ...")
    view = MemoryView(personal_facts=["Likes tea"])

    await _dispatcher(text_only).dispatch(prompt, system_instructions="Be Catzuya.", memory_view=view)

    request = text_only.requests[0]
    full = text_only._full_text(request)
    assert full.startswith("User information:\n- Likes tea")
    assert "Be Catzuya.\n\nROLE: ..." in full


@pytest.mark.asyncio
async def test_overrides_reach_the_provider():
    provider = FakeProvider("a", "x")
    await _dispatcher(provider).dispatch(PROMPT, temperature=0.2, max_tokens=100)
    assert provider.requests[0].temperature == 0.2
    assert provider.requests[0].max_tokens == 100


def test_format_memory_context_without_facts():
    text = format_memory_context(MemoryView())
    assert "- No facts known yet." in text
    assert "Trust level: 5/10" in text
    assert format_memory_context(None) == ""


# --- OpenAI-compatible adapter ---

def _openai_provider(content, finish_reason="stop"):
    response = SimpleNamespace(choices=[SimpleNamespace(
        message=SimpleNamespace(content=content),
        finish_reason=finish_reason,
    )])
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response)
    config = ProviderConfig(name="openrouter", kind="openai", url="https://example.test/v1", model="m", key="k")
    return OpenAICompatibleProvider(config, client=client), client


@pytest.mark.asyncio
async def test_openai_provider_returns_stripped_text():
    provider, client = _openai_provider("  hello there  ")

    text = await provider.complete(ProviderRequest(messages=PROMPT.messages))

    assert text == "hello there"
    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == "m"
    assert kwargs["messages"][-1] == {"role": "user", "content": "hi"}


@pytest.mark.asyncio
async def test_openai_provider_content_filter():
    provider, _ = _openai_provider(None, finish_reason="content_filter")
    with pytest.raises(ProviderContentBlockedError):
        await provider.complete(ProviderRequest(messages=PROMPT.messages))


@pytest.mark.asyncio
async def test_openai_provider_empty_reply():
    provider, _ = _openai_provider("")
    with pytest.raises(ProviderMalformedResponseError):
        await provider.complete(ProviderRequest(messages=PROMPT.messages))


def test_openai_provider_attaches_image():
    provider, _ = _openai_provider("x")
    messages = provider.build_messages(ProviderRequest(messages=PROMPT.messages, image=b"\x89PNG"))

    content = messages[-1]["content"]
    assert content[0] == {"type": "text", "text": "hi"}
    assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert PROMPT.messages[-1]["content"] == "hi"


@pytest.mark.asyncio
async def test_openai_sdk_errors_become_malformed_response():
    provider, client = _openai_provider("x")
    client.chat.completions.create = AsyncMock(side_effect=openai.OpenAIError("response did not match schema"))

    with pytest.raises(ProviderMalformedResponseError):
        await provider.complete(ProviderRequest(messages=PROMPT.messages))


# --- Gemini adapter ---

def _gemini(status, body):
    config = ProviderConfig(name="gemini", kind="gemini", url="https://example.test/v1beta", model="m", key="k")
    provider = GeminiProvider(config)
    provider._post = AsyncMock(return_value=(status, body))
    return provider


@pytest.mark.asyncio
@pytest.mark.parametrize("status,body", [
    (429, {"error": "quota exceeded"}),
    (200, {"promptFeedback": None, "candidates": []}),
    (200, {"candidates": [{"content": None}]}),
    (200, {"candidates": "nope"}),
])
async def test_unexpected_gemini_bodies_fall_back(status, body):
    backup = FakeProvider("chutes", "backup reply")
    dispatcher = ProviderDispatcher({"gemini": _gemini(status, body), "chutes": backup}, "gemini", True, ["chutes"])

    result = await dispatcher.dispatch(PROMPT)

    assert result.provider_used == "chutes"
    assert result.text == "backup reply"
    assert result.was_fallback


@pytest.mark.asyncio
async def test_gemini_string_error_keeps_status_mapping():
    with pytest.raises(ProviderRateLimitError, match="quota exceeded"):
        await _gemini(429, {"error": "quota exceeded"}).complete(ProviderRequest(text="hi"))


@pytest.mark.asyncio
async def test_gemini_text_reply():
    body = {"promptFeedback": None, "candidates": [{"content": {"parts": [{"text": " hi! "}]}}]}
    assert await _gemini(200, body).complete(ProviderRequest(text="hi")) == "hi!"


@pytest.mark.asyncio
async def test_unanticipated_adapter_error_advances_chain():
    broken = FakeProvider("openrouter", "unused")
    broken.complete = AsyncMock(side_effect=KeyError("choices"))
    dispatcher = _dispatcher(broken, FakeProvider("chutes", "backup reply"))

    result = await dispatcher.dispatch(PROMPT)

    assert result.provider_used == "chutes"
    assert dispatcher.get_status()["openrouter"] == "malformed_response"


@pytest.mark.asyncio
async def test_unanticipated_errors_still_aggregate():
    broken = FakeProvider("openrouter", "unused")
    broken.complete = AsyncMock(side_effect=AttributeError("'NoneType' object has no attribute 'get'"))

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await _dispatcher(broken).dispatch(PROMPT)

    assert isinstance(exc_info.value.primary_error, ProviderMalformedResponseError)


@pytest.mark.asyncio
async def test_fallback_attempt_reaches_activity_feed():
    lines = []
    log.set_activity_sink(lines.append)
    try:
        primary = FakeProvider("openrouter", ProviderServerError("openrouter", "503"))
        await _dispatcher(primary, FakeProvider("chutes", "backup reply")).dispatch(PROMPT)
    finally:
        log.set_activity_sink(None)

    assert any("Trying fallback AI: chutes" in line for line in lines)
