"""
Kindred - Fact Extractor
Distills batches of exchanged turns into remembered facts and relationship levels.
"""

import json
import re
import time
from typing import Dict, List, Optional

import constants
import logger as log
from errors import AllProvidersFailedError
from memory import MemoryStore
from models import IdentityKey
from prometheus_metrics import metrics_manager
from prompt_builder import STRUCTURED, PromptPayload
from providers import ProviderDispatcher

LEVEL_KEYS = ("trustLevel", "romanticLevel", "censorshipLevel")

EXTRACTION_SYSTEM_PROMPT = "You are a memory analyzer. Reply with JSON only."

EXTRACTION_PROMPT = """Analyze this conversation between a user and {character_name} and update what {character_name} remembers about the USER.

Current memory:
- Facts: {facts}
- Trust level: {trustLevel}/10
- Romantic level: {romanticLevel}/10
- Censorship level: {censorshipLevel}/10

Rules:
- Only NEW, lasting facts about the user (name, job, relationships, preferences, life events)
- Third person, one short sentence each
- Skip greetings, small talk and anything already in the facts
- Adjust levels by at most 1-2 points, integers from 0 to 10

Conversation:
{conversation}

Reply with JSON: {{"facts": ["..."], "trustLevel": 5, "romanticLevel": 0, "censorshipLevel": 8}}"""

_JSON_OBJECT = re.compile(r'\{.*\}', re.DOTALL)


def parse_extraction(raw: str) -> Optional[dict]:
    """Parse a model reply into {facts, levels...}. Unusable replies give None."""
    if not raw:
        return None
    raw = raw.strip()
    if raw.startswith("```"):
        raw = raw.split("```")[1]
        if raw.startswith("json"):
            raw = raw[4:]
        raw = raw.strip()

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(raw)
        if not match:
            return None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None

    if not isinstance(data, dict):
        return None

    facts = data.get("facts") or []
    if not isinstance(facts, list):
        facts = []
    result = {"facts": [f.strip() for f in facts if isinstance(f, str) and f.strip()]}
    for key in LEVEL_KEYS:
        if isinstance(data.get(key), (int, float)) and not isinstance(data.get(key), bool):
            result[key] = data[key]

    if not result["facts"] and not any(key in result for key in LEVEL_KEYS):
        return None
    return result


class FactExtractor:
    """Single extraction call through the provider dispatcher."""

    def __init__(self, dispatcher: ProviderDispatcher, character_name: str = "the character", name: str = None):
        self.dispatcher = dispatcher
        self.character_name = character_name
        self.name = name

    def build_prompt(self, batch: List[dict], current_memory: dict) -> PromptPayload:
        conversation = "\n".join(
            f"{'User' if m.get('role') == 'user' else self.character_name}: {m.get('content', '')}"
            for m in batch
        )
        prompt = EXTRACTION_PROMPT.format(
            character_name=self.character_name,
            facts=json.dumps(current_memory.get("facts", []), ensure_ascii=False),
            trustLevel=current_memory.get("trustLevel", constants.DEFAULT_TRUST_LEVEL),
            romanticLevel=current_memory.get("romanticLevel", constants.DEFAULT_ROMANTIC_LEVEL),
            censorshipLevel=current_memory.get("censorshipLevel", constants.DEFAULT_CENSORSHIP_LEVEL),
            conversation=conversation,
        )
        return PromptPayload(
            kind=STRUCTURED,
            system_prompt=EXTRACTION_SYSTEM_PROMPT,
            messages=[
                {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        )

    async def extract(self, batch: List[dict], current_memory: dict) -> Optional[dict]:
        """{facts, trustLevel, romanticLevel, censorshipLevel} or None when nothing usable came back."""
        if not batch:
            return None
        try:
            result = await self.dispatcher.dispatch(
                self.build_prompt(batch, current_memory),
                temperature=constants.EXTRACTION_TEMPERATURE,
                max_tokens=constants.EXTRACTION_MAX_TOKENS,
            )
        except AllProvidersFailedError as e:
            log.warn(f"Memory extraction failed: {e}", self.name)
            return None

        parsed = parse_extraction(result.text)
        if parsed is None:
            log.debug(f"No memory updates in extractor reply: {result.text[:100]}", self.name)
        return parsed


class MemoryConsolidator:
    """Accumulates exchanged turns per identity and merges extractions into memory."""

    def __init__(self, store: MemoryStore, extractor: FactExtractor, batch_size: int, name: str = None):
        self.store = store
        self.extractor = extractor
        self.batch_size = max(batch_size, 1)
        self.name = name
        self._batches: Dict[IdentityKey, List[dict]] = {}

    def pending(self, identity: IdentityKey) -> List[dict]:
        return list(self._batches.get(identity, []))

    def record_exchange(self, identity: IdentityKey, user_content: str, reply: str) -> bool:
        """Buffer one user turn and its reply. True once the batch is full."""
        batch = self._batches.setdefault(identity, [])
        batch.append({"role": "user", "content": user_content, "context": identity.context_tag})
        batch.append({"role": identity.agent_role, "content": reply, "context": identity.context_tag})
        return len(batch) >= self.batch_size

    async def consolidate(self, identity: IdentityKey) -> Optional[dict]:
        """Run extraction for the identity's batch and merge the result. Clears the batch."""
        batch = self._batches.pop(identity, [])
        if not batch:
            return None

        agent = self.name or identity.agent_role
        start = time.time()
        current = self.store.load_memory(identity)
        result = await self.extractor.extract(batch, current)
        metrics_manager.record_extraction(agent, result is not None, time.time() - start)

        if not result:
            log.debug(f"No memory updates extracted for {identity}", self.name)
            return None

        memory = self.store.apply_extraction(identity, result)
        log.info(f"Memory updated for {identity}: +{len(result['facts'])} facts", self.name)
        return memory

    async def add_exchange(self, identity: IdentityKey, user_content: str, reply: str) -> Optional[dict]:
        if self.record_exchange(identity, user_content, reply):
            return await self.consolidate(identity)
        return None
