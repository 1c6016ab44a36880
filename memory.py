"""
Kindred - Memory System
Per-user, per-user-per-community and per-community relationship memory,
chat transcripts, and the agent's own mood record, stored as JSON files.

Layout under the store root:
    memory/<role>/<user>/memory.json, chat.json
    memory/<role>/<user>/servers/<community>/memory.json, chat.json
    servers/<community>/memory.json, chat.json
    memory/<role>/ai_mood.json
"""

import json
import os
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import constants
import logger as log
from errors import PersistenceReadError, PersistenceWriteError
from models import IdentityKey
from prometheus_metrics import metrics_manager


def ensure_dir(path: str):
    """Create a directory (and parents) if it doesn't exist."""
    if not os.path.exists(path):
        os.makedirs(path, exist_ok=True)


def read_json(filepath: str):
    """Read a JSON file. Returns None if missing, raises PersistenceReadError if corrupt."""
    if not os.path.exists(filepath):
        return None
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (json.JSONDecodeError, IOError, UnicodeDecodeError) as e:
        raise PersistenceReadError(filepath, e) from e


def load_json(filepath: str, default):
    """Load a JSON file, substituting default when missing or unreadable."""
    try:
        data = read_json(filepath)
    except PersistenceReadError as e:
        log.warn(f"{e}; using defaults")
        return default
    return default if data is None else data


def write_json(filepath: str, data):
    """Write JSON atomically. Raises PersistenceWriteError on failure."""
    tmp_path = f"{filepath}.tmp"
    try:
        ensure_dir(os.path.dirname(filepath))
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, filepath)
    except (OSError, TypeError, ValueError) as e:
        raise PersistenceWriteError(filepath, e) from e


def save_json(filepath: str, data, file_type: str = "memory") -> bool:
    """Save data to JSON. A failed save is logged and reported, never raised."""
    try:
        write_json(filepath, data)
    except PersistenceWriteError as e:
        log.error(str(e))
        metrics_manager.record_persistence_failure(file_type)
        return False
    metrics_manager.record_memory_file_save(file_type)
    return True


# --- Defaults & merging ---

def create_default_memory() -> dict:
    """Default RelationshipMemory."""
    return {
        "facts": [],
        "trustLevel": constants.DEFAULT_TRUST_LEVEL,
        "romanticLevel": constants.DEFAULT_ROMANTIC_LEVEL,
        "censorshipLevel": constants.DEFAULT_CENSORSHIP_LEVEL,
        "mood": constants.DEFAULT_MOOD,
        "energy": constants.DEFAULT_ENERGY,
    }


def create_default_community_memory() -> dict:
    """Default CommunityMemory (no relationship levels)."""
    return {
        "facts": [],
        "mood": constants.DEFAULT_MOOD,
        "energy": constants.DEFAULT_ENERGY,
    }


def _with_defaults(data, defaults: dict) -> dict:
    if not isinstance(data, dict):
        return defaults
    for key, value in defaults.items():
        if key not in data or data[key] is None:
            data[key] = value
    if not isinstance(data["facts"], list):
        data["facts"] = []
    return data


def clamp_level(value, default: int) -> int:
    """Clamp a relationship level to [0, 10]; non-numeric values become default."""
    try:
        level = int(round(float(value)))
    except (TypeError, ValueError):
        return default
    return max(constants.LEVEL_MIN, min(constants.LEVEL_MAX, level))


def merge_facts(existing: Iterable[str], new: Iterable[str], cap: int = constants.MAX_FACTS) -> List[str]:
    """Append new facts in order, drop duplicates, keep the cap most recent."""
    merged: List[str] = []
    seen = set()
    for fact in list(existing) + list(new):
        if not isinstance(fact, str):
            continue
        fact = fact.strip()
        if not fact or fact in seen:
            continue
        seen.add(fact)
        merged.append(fact)
    return merged[-cap:]


def merge_extraction(memory: dict, result: dict) -> dict:
    """Fold an extractor result into a RelationshipMemory. Levels are clamped."""
    memory["facts"] = merge_facts(memory.get("facts", []), result.get("facts") or [])
    for key, default in (
        ("trustLevel", constants.DEFAULT_TRUST_LEVEL),
        ("romanticLevel", constants.DEFAULT_ROMANTIC_LEVEL),
        ("censorshipLevel", constants.DEFAULT_CENSORSHIP_LEVEL),
    ):
        current = memory.get(key, default)
        if result.get(key) is not None:
            memory[key] = clamp_level(result[key], clamp_level(current, default))
        else:
            memory[key] = clamp_level(current, default)
    return memory


def global_facts(facts: Iterable[str]) -> List[str]:
    """Facts that read as relevant to the whole community."""
    return [f for f in facts if any(marker in f.lower() for marker in constants.GLOBAL_FACT_MARKERS)]


@dataclass
class MemoryView:
    """Flattened memory handed to the prompt composer and providers."""
    personal_facts: List[str] = field(default_factory=list)
    community_user_facts: List[str] = field(default_factory=list)
    community_facts: List[str] = field(default_factory=list)
    trust_level: int = constants.DEFAULT_TRUST_LEVEL
    romantic_level: int = constants.DEFAULT_ROMANTIC_LEVEL
    censorship_level: int = constants.DEFAULT_CENSORSHIP_LEVEL
    user_mood: str = constants.DEFAULT_MOOD
    user_energy: str = constants.DEFAULT_ENERGY
    community_mood: str = constants.DEFAULT_MOOD
    community_energy: str = constants.DEFAULT_ENERGY

    @property
    def user_facts(self) -> List[str]:
        return self.personal_facts + self.community_user_facts

    def to_dict(self) -> dict:
        return {
            "personalFacts": self.personal_facts,
            "serverUserFacts": self.community_user_facts,
            "serverGlobalFacts": self.community_facts,
            "trustLevel": self.trust_level,
            "romanticLevel": self.romantic_level,
            "censorshipLevel": self.censorship_level,
            "userMood": self.user_mood,
            "userEnergy": self.user_energy,
            "serverMood": self.community_mood,
            "serverEnergy": self.community_energy,
        }


class MemoryStore:
    """Reads and writes all persisted memory for one data root."""

    def __init__(self, root: str = "."):
        self.root = root
        self.memory_root = os.path.join(root, "memory")
        self.servers_root = os.path.join(root, "servers")

    # --- Paths ---

    def _identity_dir(self, identity: IdentityKey) -> str:
        base = os.path.join(self.memory_root, identity.agent_role, str(identity.user_id))
        if identity.community_id is not None:
            base = os.path.join(base, "servers", str(identity.community_id))
        return base

    def _community_dir(self, community_id: str) -> str:
        return os.path.join(self.servers_root, str(community_id))

    def mood_path(self, agent_role: str) -> str:
        return os.path.join(self.memory_root, agent_role, "ai_mood.json")

    # --- Relationship memory ---

    def load_memory(self, identity: IdentityKey) -> dict:
        """Load RelationshipMemory for an identity, defaults if never saved."""
        path = os.path.join(self._identity_dir(identity), "memory.json")
        return _with_defaults(load_json(path, None), create_default_memory())

    def save_memory(self, identity: IdentityKey, memory: dict) -> bool:
        path = os.path.join(self._identity_dir(identity), "memory.json")
        file_type = "dm" if identity.is_private else "user"
        return save_json(path, memory, file_type)

    # --- Chat transcripts ---

    def load_chat(self, identity: IdentityKey) -> List[dict]:
        path = os.path.join(self._identity_dir(identity), "chat.json")
        chat = load_json(path, [])
        return chat if isinstance(chat, list) else []

    def save_chat(self, identity: IdentityKey, chat: List[dict]) -> bool:
        """Save the transcript, keeping only the most recent entries."""
        path = os.path.join(self._identity_dir(identity), "chat.json")
        return save_json(path, chat[-constants.MAX_CHAT_ENTRIES:], "chat")

    # --- Community memory ---

    def load_community_memory(self, community_id: str) -> dict:
        path = os.path.join(self._community_dir(community_id), "memory.json")
        return _with_defaults(load_json(path, None), create_default_community_memory())

    def save_community_memory(self, community_id: str, memory: dict) -> bool:
        path = os.path.join(self._community_dir(community_id), "memory.json")
        return save_json(path, memory, "server")

    def load_community_chat(self, community_id: str) -> List[dict]:
        path = os.path.join(self._community_dir(community_id), "chat.json")
        chat = load_json(path, [])
        return chat if isinstance(chat, list) else []

    def save_community_chat(self, community_id: str, chat: List[dict]) -> bool:
        path = os.path.join(self._community_dir(community_id), "chat.json")
        return save_json(path, chat[-constants.MAX_CHAT_ENTRIES:], "chat")

    def ensure_community_dirs(self, community_ids: Iterable[str]):
        for community_id in community_ids:
            ensure_dir(self._community_dir(community_id))

    # --- Agent mood ---

    def get_ai_mood(self, agent_role: str) -> dict:
        """The agent's own mood record (neutral/normal if never set)."""
        data = load_json(self.mood_path(agent_role), {})
        if not isinstance(data, dict):
            data = {}
        return {
            "mood": data.get("mood") or constants.DEFAULT_MOOD,
            "energy": data.get("energy") or constants.DEFAULT_ENERGY,
            "lastUpdated": data.get("lastUpdated"),
        }

    def set_ai_mood(self, agent_role: str, mood: str = None, energy: str = None) -> dict:
        """Update mood and/or energy; unspecified fields keep their value."""
        current = self.get_ai_mood(agent_role)
        updated = {
            "mood": mood or current["mood"],
            "energy": energy or current["energy"],
            "lastUpdated": int(time.time() * 1000),
        }
        if save_json(self.mood_path(agent_role), updated, "mood"):
            log.info(f"AI mood updated to: {updated['mood']}, energy: {updated['energy']}", agent_role)
        return updated

    # --- Prompt view ---

    def get_combined_memory(self, identity: IdentityKey, mentioned_community: Optional[str] = None) -> MemoryView:
        """Merge the memory scopes relevant to one identity into a MemoryView.

        Private context: personal facts and levels from the private memory.
        Community context: levels from the community-scoped user memory plus
        shared community facts. A community mentioned from a private context
        contributes its facts read-only, levels stay private.
        """
        view = MemoryView()

        if identity.is_private:
            private = self.load_memory(identity)
            view.personal_facts = list(private["facts"])
            view.trust_level = private["trustLevel"]
            view.romantic_level = private["romanticLevel"]
            view.censorship_level = private["censorshipLevel"]
            view.user_mood = private["mood"]
            view.user_energy = private["energy"]

        target = identity.community_id if identity.community_id is not None else mentioned_community
        if target is not None:
            scoped = self.load_memory(IdentityKey(identity.agent_role, identity.user_id, str(target)))
            view.community_user_facts = list(scoped["facts"])
            if not identity.is_private:
                view.trust_level = scoped["trustLevel"]
                view.romantic_level = scoped["romanticLevel"]
                view.censorship_level = scoped["censorshipLevel"]
                view.user_mood = scoped["mood"]
                view.user_energy = scoped["energy"]

            shared = self.load_community_memory(str(target))
            view.community_facts = list(shared["facts"])
            view.community_mood = shared["mood"]
            view.community_energy = shared["energy"]

        return view

    # --- Extraction merge ---

    def apply_extraction(self, identity: IdentityKey, result: Optional[dict]) -> Optional[dict]:
        """Merge an extractor result into the identity's memory scope.

        Community contexts also promote globally relevant facts into the
        shared community memory. Returns the updated memory, or None when
        the result was empty.
        """
        if not result:
            return None

        memory = merge_extraction(self.load_memory(identity), result)
        self.save_memory(identity, memory)

        if identity.community_id is not None:
            promoted = global_facts(result.get("facts") or [])
            if promoted:
                community = self.load_community_memory(identity.community_id)
                community["facts"] = merge_facts(community["facts"], promoted)
                self.save_community_memory(identity.community_id, community)
                log.debug(f"Promoted {len(promoted)} facts to community {identity.community_id}")

        return memory
