"""
Kindred - Engagement Gate
Decides whether an inbound message deserves a reply at all.
"""

import random
from typing import Iterable, Optional

import constants
import logger as log
from availability import AvailabilitySimulator
from config import CommunityConfig
from models import IncomingMessage


def contains_keyword(content: str, keywords: Iterable[str]) -> bool:
    """Case-insensitive substring match against any keyword."""
    if not content or not keywords:
        return False
    lower = content.lower()
    return any(k.lower() in lower for k in keywords if k)


def response_chance(trust_level: int) -> float:
    """Unprompted reply probability for a trust level in respond-to-all mode."""
    for minimum, chance in constants.TRUST_RESPONSE_BUCKETS:
        if trust_level >= minimum:
            return chance
    return constants.LOW_TRUST_RESPONSE_CHANCE


def ignore_chance(memory: Optional[dict]) -> float:
    """Chance of ignoring a private message to look less robotic."""
    memory = memory or {}
    energy = memory.get("energy") or constants.DEFAULT_ENERGY
    trust = memory.get("trustLevel")
    if trust is None:
        trust = constants.DEFAULT_TRUST_LEVEL

    if energy in ("tired", "sleepy"):
        return constants.IGNORE_CHANCE_TIRED
    if trust < constants.IGNORE_LOW_TRUST_BELOW:
        return constants.IGNORE_CHANCE_LOW_TRUST
    return constants.IGNORE_CHANCE_DEFAULT


class EngagementGate:
    """Reply/skip decision for one agent identity."""

    def __init__(self, agent_user_id: str, availability: AvailabilitySimulator,
                 enable_random_ignore: bool = True, rng: random.Random = None, name: str = None):
        self.agent_user_id = str(agent_user_id) if agent_user_id is not None else None
        self.availability = availability
        self.enable_random_ignore = enable_random_ignore
        self.rng = rng or random.Random()
        self.name = name

    def should_bot_respond(self, trust_level: int, engaged: bool) -> bool:
        if engaged:
            return True
        return self.rng.random() < response_chance(trust_level)

    def should_ignore_message(self, memory: Optional[dict]) -> bool:
        return self.rng.random() < ignore_chance(memory)

    def is_mentioned(self, message: IncomingMessage) -> bool:
        return self.agent_user_id is not None and self.agent_user_id in [str(m) for m in message.mentions]

    def is_reply_to_agent(self, message: IncomingMessage) -> bool:
        ref = message.reference
        return (
            ref is not None
            and ref.author_id is not None
            and self.agent_user_id is not None
            and str(ref.author_id) == self.agent_user_id
        )

    def should_respond(self, message: IncomingMessage, community_config: Optional[CommunityConfig],
                       relationship_memory: Optional[dict]) -> bool:
        """Run the gate checks in order. Only the availability auto-clear mutates state."""
        if self.availability.is_away():
            log.debug("Not responding due to away status", self.name)
            return False

        if message.is_private:
            if self.enable_random_ignore and self.should_ignore_message(relationship_memory):
                log.debug(f"Randomly ignoring DM from {message.author_name or message.author_id}", self.name)
                return False
            return True

        if community_config is None:
            log.debug(f"Community {message.community_id} is not configured, ignoring", self.name)
            return False

        if message.channel_name and message.channel_name.lower() in community_config.ignore_channels:
            log.debug(f"Channel #{message.channel_name} is ignored", self.name)
            return False

        trust = constants.DEFAULT_TRUST_LEVEL
        if relationship_memory and relationship_memory.get("trustLevel") is not None:
            trust = relationship_memory["trustLevel"]

        mentioned = self.is_mentioned(message)
        keyword = contains_keyword(message.content, community_config.keyword_triggers)
        replied = self.is_reply_to_agent(message)
        engaged = mentioned or keyword or replied

        if mentioned:
            log.debug("Agent was mentioned", self.name)
        if keyword:
            log.debug("Message contains trigger keyword", self.name)
        if replied:
            log.debug("Message is a reply to the agent", self.name)

        if community_config.respond_to_all:
            return self.should_bot_respond(trust, engaged)
        return engaged
