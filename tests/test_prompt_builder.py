"""Tests for prompt composition and typing simulation."""

import random

import pytest

from memory import MemoryView
from models import IdentityKey
from prompt_builder import (
    LONG_GAP_NOTE,
    QUICK_REPLY_NOTE,
    SHORT_GAP_NOTE,
    STRUCTURED,
    TEXT,
    adjusted_system_prompt,
    build_prompt,
    flatten_messages,
    get_community_mention,
    realistic_typing_delay,
    reply_note,
    situation_note,
    trust_guidance,
)

DM = IdentityKey("catzuya", "u1")
IN_GUILD = IdentityKey("catzuya", "u1", "guild1")
CHAT = [
    {"role": "user", "content": "hey", "time": 1},
    {"role": "catzuya", "content": "hii", "time": 2},
    {"role": "user", "content": "what are you up to?", "time": 3},
]


def test_structured_prompt_private(character):
    view = MemoryView(personal_facts=["Has a cat named Mochi"], trust_level=9)

    prompt = build_prompt(character, CHAT, DM, view, QUICK_REPLY_NOTE, STRUCTURED, {"mood": "happy", "energy": "normal"})

    assert prompt.structured
    system = prompt.messages[0]
    assert system["role"] == "system"
    assert system["content"].startswith("You are Catzuya, a cheerful student.")
    assert "Be upbeat and enthusiastic" in system["content"]
    assert f"SITUATION: {QUICK_REPLY_NOTE}" in system["content"]
    assert "private 1-on-1 conversation" in system["content"]
    assert "- Has a cat named Mochi" in system["content"]
    assert "Trust level: 9/10" in system["content"]
    assert system["content"].endswith(trust_guidance(9))
    assert [m["role"] for m in prompt.messages[1:]] == ["user", "assistant", "user"]
    assert prompt.messages[-1]["content"] == "what are you up to?"


def test_structured_prompt_in_community(character):
    view = MemoryView(community_facts=["Movie night is on Sundays"], community_mood="excited")

    system = build_prompt(character, CHAT, IN_GUILD, view, "", STRUCTURED).messages[0]["content"]

    assert "Discord server chatting with multiple people" in system
    assert "SERVER INFORMATION:\n- Movie night is on Sundays" in system
    assert "The server atmosphere is currently excited." in system
    assert "SITUATION" not in system


def test_mentioned_community_in_private_context(character):
    view = MemoryView(community_facts=["Movie night is on Sundays"])
    system = build_prompt(character, CHAT, DM, view, "", STRUCTURED).messages[0]["content"]
    assert "THE SERVER THEY MENTIONED:\n- Movie night is on Sundays" in system


def test_text_prompt(character):
    view = MemoryView(personal_facts=["Likes horror films"], trust_level=2)

    prompt = build_prompt(character, CHAT, DM, view, SHORT_GAP_NOTE, TEXT, {"mood": "tired", "energy": "sleepy"})

    assert not prompt.structured
    assert prompt.text.startswith("ROLE: You are Catzuya, a 19-year-old Japanese girl.")
    assert "YOUR MOOD: tired with sleepy energy level" in prompt.text
    assert "- Likes horror films" in prompt.text
    assert "Use fewer words and keep it simple" in prompt.text
    assert "Catzuya: hii" in prompt.text
    assert prompt.text.endswith("Now reply as Catzuya in a tired and sleepy way:")
    assert prompt.as_text() == prompt.text


def test_trust_guidance_tiers():
    assert "very close friend" in trust_guidance(8)
    assert "good friend" in trust_guidance(5)
    assert "getting to know" in trust_guidance(4)


def test_adjusted_system_prompt_plain_mood():
    assert adjusted_system_prompt("Base.", "neutral", "normal") == (
        "Base.\n\nToday, you're feeling neutral and your energy level is normal."
    )


def test_flatten_messages():
    flat = flatten_messages([
        {"role": "system", "content": "Be nice."},
        {"role": "user", "content": [{"type": "text", "text": "hi"}, {"type": "image_url", "image_url": {}}]},
        {"role": "assistant", "content": "hello"},
    ])
    assert flat == "[System Instructions]\nBe nice.\n\nUser: hi\n\nAssistant: hello"


@pytest.mark.parametrize("minutes_ago,note", [
    (7 * 60, LONG_GAP_NOTE),
    (60, SHORT_GAP_NOTE),
    (1, QUICK_REPLY_NOTE),
])
def test_situation_note(minutes_ago, note):
    now = 10_000_000_000
    chat = [
        {"role": "user", "content": "earlier", "time": now - minutes_ago * 60000},
        {"role": "catzuya", "content": "reply", "time": now - minutes_ago * 60000 + 1000},
        {"role": "user", "content": "now", "time": now},
    ]
    assert situation_note(chat, now) == note


def test_situation_note_first_message():
    assert situation_note([{"role": "user", "content": "hi", "time": 5}], 10) == ""


def test_reply_note():
    assert reply_note("see you", True) == 'Context (replied to my message): "see you"'
    assert reply_note("see you", False) == 'Context (replied to another message): "see you"'


def test_get_community_mention(community):
    assert get_community_mention("did you see what happened in LUMIS?", [community]) == "guild1"
    assert get_community_mention("back on the lumis server again", [community]) == "guild1"
    assert get_community_mention("nothing here", [community]) is None
    assert get_community_mention("lumis", []) is None


@pytest.mark.parametrize("length", [0, 10, 60, 150, 1000])
@pytest.mark.parametrize("energy", ["normal", "tired", "energetic"])
def test_realistic_typing_delay_is_bounded(length, energy):
    rng = random.Random(length)
    for _ in range(50):
        delay = realistic_typing_delay("x" * length, energy, rng, 2.0, 5.0)
        assert 2.0 <= delay <= 2.5


def test_realistic_typing_delay_low_floor():
    rng = random.Random(1)
    for length in (0, 5, 500):
        delay = realistic_typing_delay("x" * length, "normal", rng, 0.5, 5.0)
        assert 0.5 <= delay <= 2.5
