"""
Kindred - Configuration
Provider table, community configuration, feature flags and timing settings.
"""

import os
import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from dotenv import load_dotenv

import constants

load_dotenv()

# Discord Bot Token (characters may override with their own token_env)
DISCORD_TOKEN = os.getenv('DISCORD_TOKEN')

SETTINGS_FILE = os.getenv('KINDRED_SETTINGS', os.path.join(os.path.dirname(__file__), "settings.json"))

# Character Settings
CHARACTERS_DIR = "characters"
DEFAULT_CHARACTER = os.getenv('DEFAULT_CHARACTER', 'catzuya')

# Data Storage
DATA_DIR = os.getenv('KINDRED_DATA_DIR', "bot_data")
RUNTIME_CONFIG_FILE = os.path.join(DATA_DIR, "runtime_config.json")

# Provider kinds: "openai" takes role-tagged turns, the others take flattened text
STRUCTURED_KINDS = {"openai"}

DEFAULT_PROVIDERS = {
    "openrouter": {
        "kind": "openai",
        "url": "https://openrouter.ai/api/v1",
        "key_env": "OPENROUTER_API_KEY",
        "model": "deepseek/deepseek-chat-v3-0324:free",
        "temperature": 0.7,
        "max_tokens": 2048,
        "timeout": 60,
    },
    "chutes": {
        "kind": "openai",
        "url": "https://llm.chutes.ai/v1",
        "key_env": "CHUTES_API_KEY",
        "model": "deepseek-ai/DeepSeek-V3-0324",
        "temperature": 0.7,
        "max_tokens": 2048,
        "timeout": 60,
    },
    "gemini": {
        "kind": "gemini",
        "url": "https://generativelanguage.googleapis.com/v1beta",
        "key_env": "GEMINI_API_KEY",
        "model": "gemma-3-27b-it",
        "temperature": 0.9,
        "max_tokens": 8192,
        "timeout": 60,
    },
    "colab": {
        "kind": "colab",
        "url": "",
        "key_env": "",
        "model": "",
        "temperature": 0.7,
        "max_tokens": 2048,
        "timeout": 30,
    },
}


@dataclass
class ProviderConfig:
    """Connection settings for one model backend."""
    name: str
    kind: str
    url: str
    model: str
    key: str = ""
    temperature: float = 0.7
    max_tokens: int = 2048
    timeout: float = 60

    @property
    def structured(self) -> bool:
        return self.kind in STRUCTURED_KINDS


@dataclass
class CommunityConfig:
    """A registered community (Discord server) the agent may talk in."""
    id: str
    name: str = ""
    aliases: List[str] = field(default_factory=list)
    respond_to_all: bool = False
    keyword_triggers: List[str] = field(default_factory=list)
    ignore_channels: List[str] = field(default_factory=list)


@dataclass
class Settings:
    primary_ai: str = "openrouter"
    fallback_enabled: bool = True
    fallback_order: List[str] = field(default_factory=lambda: ["openrouter", "chutes", "gemini"])
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)

    enable_image_support: bool = False
    enable_server_support: bool = True
    enable_ai_emotions: bool = True
    enable_random_ignore: bool = True

    allowed_servers: List[CommunityConfig] = field(default_factory=list)
    allowed_users: List[str] = field(default_factory=list)

    message_buffer_timeout: float = constants.MESSAGE_BUFFER_TIMEOUT
    min_typing_delay: float = constants.MIN_TYPING_DELAY
    max_typing_delay: float = constants.MAX_TYPING_DELAY
    active_hours_start: int = constants.ACTIVE_HOURS_START
    active_hours_end: int = constants.ACTIVE_HOURS_END
    max_messages_per_hour: int = constants.MAX_MESSAGES_PER_HOUR
    memory_batch_size: int = constants.DEFAULT_MEMORY_BATCH_SIZE

    data_dir: str = "."
    debug_mode: bool = False

    def get_community(self, community_id: Optional[str]) -> Optional[CommunityConfig]:
        """Find the configuration for a community, None if not registered."""
        if community_id is None:
            return None
        for community in self.allowed_servers:
            if community.id == str(community_id):
                return community
        return None


def _provider_from_dict(name: str, p: dict) -> ProviderConfig:
    # Keys only ever come from the environment
    key_env = p.get("key_env", "")
    key = os.getenv(key_env, "") if key_env else "not-needed"
    return ProviderConfig(
        name=name,
        kind=p.get("kind", "openai"),
        url=p.get("url", ""),
        model=p.get("model", ""),
        key=key,
        temperature=float(p.get("temperature", 0.7)),
        max_tokens=int(p.get("max_tokens", 2048)),
        timeout=float(p.get("timeout", 60)),
    )


def settings_from_dict(data: dict) -> Settings:
    """Build Settings from a parsed settings.json document."""
    provider_table = dict(DEFAULT_PROVIDERS)
    provider_table.update(data.get("providers", {}))
    providers = {
        name.lower(): _provider_from_dict(name.lower(), p)
        for name, p in provider_table.items()
    }

    communities = []
    for s in data.get("allowed_servers", []):
        if not s.get("id"):
            print(f"⚠️ Community entry without 'id', skipping: {s}")
            continue
        communities.append(CommunityConfig(
            id=str(s["id"]),
            name=s.get("name", ""),
            aliases=[a for a in s.get("aliases", []) if a],
            respond_to_all=bool(s.get("respond_to_all", False)),
            keyword_triggers=[k for k in s.get("keyword_triggers", []) if k],
            ignore_channels=[c.lower() for c in s.get("ignore_channels", [])],
        ))

    defaults = Settings()
    return Settings(
        primary_ai=data.get("primary_ai", defaults.primary_ai).lower(),
        fallback_enabled=data.get("fallback_enabled", defaults.fallback_enabled),
        fallback_order=[p.lower() for p in data.get("fallback_order", defaults.fallback_order)],
        providers=providers,
        enable_image_support=data.get("enable_image_support", defaults.enable_image_support),
        enable_server_support=data.get("enable_server_support", defaults.enable_server_support),
        enable_ai_emotions=data.get("enable_ai_emotions", defaults.enable_ai_emotions),
        enable_random_ignore=data.get("enable_random_ignore", defaults.enable_random_ignore),
        allowed_servers=communities,
        allowed_users=[str(u) for u in data.get("allowed_users", [])],
        message_buffer_timeout=float(data.get("message_buffer_timeout", defaults.message_buffer_timeout)),
        min_typing_delay=float(data.get("min_typing_delay", defaults.min_typing_delay)),
        max_typing_delay=float(data.get("max_typing_delay", defaults.max_typing_delay)),
        active_hours_start=int(data.get("active_hours_start", defaults.active_hours_start)),
        active_hours_end=int(data.get("active_hours_end", defaults.active_hours_end)),
        max_messages_per_hour=int(data.get("max_messages_per_hour", defaults.max_messages_per_hour)),
        memory_batch_size=int(data.get("memory_batch_size", defaults.memory_batch_size)),
        data_dir=data.get("data_dir", defaults.data_dir),
        debug_mode=bool(data.get("debug_mode", defaults.debug_mode)),
    )


def load_settings(path: str = None) -> Settings:
    """Load settings.json or fall back to built-in defaults."""
    config_path = path or SETTINGS_FILE

    if not os.path.exists(config_path):
        return settings_from_dict({})

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        print(f"⚠️ Invalid {os.path.basename(config_path)}: {e}")
        return settings_from_dict({})

    if not isinstance(data, dict):
        print(f"⚠️ {os.path.basename(config_path)} must contain an object, using defaults")
        return settings_from_dict({})

    return settings_from_dict(data)
