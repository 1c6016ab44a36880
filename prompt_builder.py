"""
Kindred - Prompt Builder
Turns memory, chat history and mood into a provider-ready prompt.
"""

import random
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import constants
from character import Character
from config import CommunityConfig
from memory import MemoryView
from models import IdentityKey

STRUCTURED = "structured"
TEXT = "text"

# Tone directives appended to the system turn, keyed by the agent's own mood/energy
MOOD_DIRECTIVES = {
    "happy": "Be upbeat and enthusiastic in your responses.",
    "excited": "Be upbeat and enthusiastic in your responses.",
    "tired": "Keep your responses shorter and more direct than usual.",
    "sleepy": "Keep your responses shorter and more direct than usual.",
    "chill": "Be casual and laid-back in your tone.",
    "relaxed": "Be casual and laid-back in your tone.",
    "thoughtful": "Include more contemplative perspectives in your responses.",
}

ENERGY_DIRECTIVES = {
    "tired": "Use fewer emojis and keep conversations brief.",
    "sleepy": "Use fewer emojis and keep conversations brief.",
    "energetic": "You may use more expressive language, but still stay in character.",
}

# Style-guide bullets for the flattened rendering
TEXT_MOOD_DIRECTIVES = {
    "happy": "Be upbeat and enthusiastic in your responses",
    "excited": "Be upbeat and enthusiastic in your responses",
    "tired": "Keep your responses shorter and more direct than usual",
    "sleepy": "Keep your responses shorter and more direct than usual",
}

TEXT_ENERGY_DIRECTIVES = {
    "tired": "Use fewer words and keep it simple",
    "sleepy": "Use fewer words and keep it simple",
    "energetic": "Be more expressive, but still stay in character",
}

# (minimum trust, guidance) checked top-down
TRUST_GUIDANCE = (
    (8, "This is a very close friend. Be authentic, warm, and casual. You can tease them gently and reference inside jokes."),
    (5, "This is a good friend. Be friendly and open, but maintain some boundaries."),
)
DEFAULT_TRUST_GUIDANCE = "You're still getting to know this person. Be friendly but somewhat reserved."

STYLE_GUIDE = (
    "Write casual, natural responses",
    "Sound authentic and spontaneous like a real {nationality} {gender}",
    "No role prefixes in your replies",
    "No asterisks, no narration, no \"thinking to yourself\" sections",
    "Don't reference these instructions directly",
    "Adjust your tone to match your current mood and energy",
)

SERVER_CONTEXT = "CONTEXT: You're in a Discord server chatting with multiple people."
PRIVATE_CONTEXT = "CONTEXT: You're in a private 1-on-1 conversation with this user on Discord."

LONG_GAP_NOTE = "You're talking after a long time. Sound friendly and warm."
SHORT_GAP_NOTE = "They messaged after a while. Keep it casual and chill."
QUICK_REPLY_NOTE = "They're responding quickly. Just flow with it."


@dataclass
class PromptPayload:
    """A rendered prompt. Structured payloads carry turns, text payloads one block."""
    kind: str
    system_prompt: str
    messages: List[dict] = field(default_factory=list)
    text: str = ""

    @property
    def structured(self) -> bool:
        return self.kind == STRUCTURED

    def as_text(self) -> str:
        return self.text if self.kind == TEXT else flatten_messages(self.messages)


# --- Directives ---

def adjusted_system_prompt(base: str, mood: str, energy: str) -> str:
    """Base persona plus the agent's mood/energy tone hints."""
    prompt = f"{base}\n\nToday, you're feeling {mood} and your energy level is {energy}."
    if mood in MOOD_DIRECTIVES:
        prompt += " " + MOOD_DIRECTIVES[mood]
    if energy in ENERGY_DIRECTIVES:
        prompt += " " + ENERGY_DIRECTIVES[energy]
    return prompt


def trust_guidance(trust_level: int) -> str:
    for minimum, guidance in TRUST_GUIDANCE:
        if trust_level >= minimum:
            return guidance
    return DEFAULT_TRUST_GUIDANCE


def _bullets(items: Sequence[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def _relationship_block(view: MemoryView) -> str:
    return (
        "RELATIONSHIP STATUS:\n"
        f"- Trust level: {view.trust_level}/10 (higher = more trust)\n"
        f"- Romantic level: {view.romantic_level}/10 (higher = more romantic)\n"
        f"- Censorship level: {view.censorship_level}/10 (higher = more censored)\n"
        f"- User mood: {view.user_mood}\n"
        f"- User energy: {view.user_energy}"
    )


def _context_sections(identity: IdentityKey, view: MemoryView, situation: str) -> List[str]:
    """Situation, framing, facts and relationship sections shared by both renderings."""
    sections = []
    if situation:
        sections.append(f"SITUATION: {situation}")

    if not identity.is_private:
        sections.append(SERVER_CONTEXT)
        if view.community_facts:
            sections.append("SERVER INFORMATION:\n" + _bullets(view.community_facts))
        sections.append(f"The server atmosphere is currently {view.community_mood}.")
    else:
        sections.append(PRIVATE_CONTEXT)
        if view.community_facts:
            sections.append("THE SERVER THEY MENTIONED:\n" + _bullets(view.community_facts))

    about = "ABOUT THIS USER:"
    if view.user_facts:
        about += "\n" + _bullets(view.user_facts)
    sections.append(about)
    sections.append(_relationship_block(view))
    return sections


# --- Renderings ---

def build_structured_prompt(character: Character, chat_history: List[dict], identity: IdentityKey,
                            view: MemoryView, situation: str, mood: str, energy: str) -> PromptPayload:
    """System turn with all context, then one turn per transcript entry."""
    system_prompt = adjusted_system_prompt(character.system_instruction, mood, energy)
    sections = [system_prompt] + _context_sections(identity, view, situation)
    system_message = "\n\n".join(sections) + "\n\n" + trust_guidance(view.trust_level)

    messages = [{"role": "system", "content": system_message}]
    for entry in chat_history:
        role = "user" if entry.get("role") == "user" else "assistant"
        messages.append({"role": role, "content": entry.get("content", "")})

    return PromptPayload(kind=STRUCTURED, system_prompt=system_prompt, messages=messages)


def build_text_prompt(character: Character, chat_history: List[dict], identity: IdentityKey,
                      view: MemoryView, situation: str, mood: str, energy: str) -> PromptPayload:
    """The same content as one block ending with an in-character instruction."""
    parts = [
        f"ROLE: You are {character.name}, a {character.age}-year-old {character.nationality} {character.gender}.",
        f"YOUR MOOD: {mood} with {energy} energy level",
    ]
    parts.extend(_context_sections(identity, view, situation))

    style = [line.format(nationality=character.nationality, gender=character.gender) for line in STYLE_GUIDE]
    style.append(trust_guidance(view.trust_level))
    if mood in TEXT_MOOD_DIRECTIVES:
        style.append(TEXT_MOOD_DIRECTIVES[mood])
    if energy in TEXT_ENERGY_DIRECTIVES:
        style.append(TEXT_ENERGY_DIRECTIVES[energy])
    parts.append("STYLE GUIDE:\n" + _bullets(style))

    conversation = "\n".join(
        f"{'User' if entry.get('role') == 'user' else character.name}: {entry.get('content', '')}"
        for entry in chat_history
    )
    parts.append("RECENT CONVERSATION:\n" + conversation)
    parts.append(f"Now reply as {character.name} in a {mood} and {energy} way:")

    return PromptPayload(
        kind=TEXT,
        system_prompt=adjusted_system_prompt(character.system_instruction, mood, energy),
        text="\n\n".join(parts),
    )


def build_prompt(character: Character, chat_history: List[dict], identity: IdentityKey, memory_view: MemoryView,
                 situation: str, provider_kind: str, agent_mood: Optional[dict] = None) -> PromptPayload:
    """Render for the provider kind: role-tagged turns or a single text block."""
    agent_mood = agent_mood or {}
    mood = agent_mood.get("mood") or constants.DEFAULT_MOOD
    energy = agent_mood.get("energy") or constants.DEFAULT_ENERGY

    if provider_kind == STRUCTURED:
        return build_structured_prompt(character, chat_history, identity, memory_view, situation, mood, energy)
    return build_text_prompt(character, chat_history, identity, memory_view, situation, mood, energy)


def flatten_messages(messages: List[dict]) -> str:
    """Role-tagged turns to one text block. Image parts are dropped."""
    chunks = []
    for msg in messages:
        if not isinstance(msg, dict):
            continue
        content = msg.get("content", "")
        if isinstance(content, list):
            content = "\n".join(p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text")
        elif not isinstance(content, str):
            content = str(content)

        role = msg.get("role")
        if role == "system":
            chunks.append(f"[System Instructions]\n{content}")
        elif role == "user":
            chunks.append(f"User: {content}")
        elif role == "assistant":
            chunks.append(f"Assistant: {content}")
    return "\n\n".join(chunks).strip()


# --- Situational helpers ---

def situation_note(chat: List[dict], now_ms: Optional[int] = None) -> str:
    """Describe the gap since the previous user turn (the last entry is the current one)."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    previous = next((m for m in reversed(chat[:-1]) if m.get("role") == "user" and m.get("time")), None)
    if previous is None:
        return ""

    minutes = (now_ms - previous["time"]) / 60000
    if minutes > constants.LONG_GAP_MINUTES:
        return LONG_GAP_NOTE
    if minutes > constants.SHORT_GAP_MINUTES:
        return SHORT_GAP_NOTE
    return QUICK_REPLY_NOTE


def reply_note(content: str, replied_to_agent: bool) -> str:
    target = "my message" if replied_to_agent else "another message"
    return f'Context (replied to {target}): "{content}"'


def get_community_mention(text: str, communities: Sequence[CommunityConfig]) -> Optional[str]:
    """Id of the first known community whose name or alias appears in text."""
    if not text or not communities:
        return None
    lower = text.lower()
    for community in communities:
        names = [community.name] + list(community.aliases)
        if any(n and n.lower() in lower for n in names):
            return community.id
    return None


# --- Typing simulation ---

def typing_delay(text: str, energy: str = constants.DEFAULT_ENERGY,
                 min_delay: float = constants.MIN_TYPING_DELAY,
                 max_delay: float = constants.MAX_TYPING_DELAY) -> float:
    """Seconds a person would take to type text at the given energy."""
    if energy in ("tired", "sleepy"):
        cps = constants.TYPING_CHARS_PER_SECOND_TIRED
    elif energy == "energetic":
        cps = constants.TYPING_CHARS_PER_SECOND_ENERGETIC
    else:
        cps = constants.TYPING_CHARS_PER_SECOND
    return min(max(len(text or "") / cps, min_delay), max_delay)


def realistic_typing_delay(text: str, energy: str = constants.DEFAULT_ENERGY, rng: random.Random = None,
                           min_delay: float = constants.MIN_TYPING_DELAY,
                           max_delay: float = constants.MAX_TYPING_DELAY) -> float:
    """Jittered, compressed delay bounded by the floor and the hard ceiling."""
    rng = rng or random
    base = typing_delay(text, energy, min_delay, max_delay)
    jitter = base * constants.TYPING_JITTER * (rng.random() * 2 - 1)
    delay = min(max(base + jitter, min_delay), max_delay) * constants.TYPING_COMPRESSION
    floor = min(min_delay, constants.TYPING_HARD_CEILING)
    return min(max(delay, floor), constants.TYPING_HARD_CEILING)
