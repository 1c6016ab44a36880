"""
Kindred - Runtime Configuration
Live-adjustable settings written by the dashboard and read by the agent.
"""

import json
import os
import time
from typing import Dict, List, Optional

import logger as log
from config import RUNTIME_CONFIG_FILE

# Default values
DEFAULTS = {
    "active_provider": None,   # None = use settings.primary_ai
    "global_paused": False,    # Manual away: ignore ALL inbound messages when True
    "auto_reply": {},          # user_id -> bool, missing means enabled
    "allowed_users": [],       # Added at runtime on top of settings.allowed_users
    "pending_requests": {},    # user_id -> {userId, username, content, time}
}

_CONFIG_CACHE_TTL = 30.0  # Seconds before cache expires


class RuntimeConfig:
    """JSON-backed runtime settings with a short read cache."""

    def __init__(self, path: str = RUNTIME_CONFIG_FILE):
        self.path = path
        self._cache: Optional[dict] = None
        self._cache_time = 0.0

    def _load_from_disk(self) -> dict:
        config = json.loads(json.dumps(DEFAULTS))
        if os.path.exists(self.path):
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    stored = json.load(f)
                if isinstance(stored, dict):
                    config.update(stored)
            except (json.JSONDecodeError, IOError) as e:
                log.warn(f"Invalid runtime config {self.path}: {e}")
        return config

    def load(self) -> dict:
        """Load runtime config with caching to avoid repeated disk reads."""
        now = time.time()
        if self._cache is not None and (now - self._cache_time) < _CONFIG_CACHE_TTL:
            return json.loads(json.dumps(self._cache))

        self._cache = self._load_from_disk()
        self._cache_time = now
        return json.loads(json.dumps(self._cache))

    def invalidate_cache(self):
        self._cache = None
        self._cache_time = 0.0

    def save(self, config: dict) -> bool:
        """Save runtime config to file and invalidate cache."""
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(config, f, indent=2)
        except (OSError, TypeError) as e:
            log.error(f"Could not save runtime config: {e}")
            return False
        finally:
            self.invalidate_cache()
        return True

    def get(self, key: str, default=None):
        config = self.load()
        return config.get(key, default if default is not None else DEFAULTS.get(key))

    def set(self, key: str, value) -> bool:
        config = self.load()
        config[key] = value
        return self.save(config)

    def get_all(self) -> dict:
        return self.load()

    # --- Provider ---

    def get_active_provider(self) -> Optional[str]:
        return self.get("active_provider")

    def set_active_provider(self, name: str) -> bool:
        return self.set("active_provider", name.lower())

    # --- Global pause ---

    def is_paused(self) -> bool:
        return bool(self.get("global_paused"))

    def set_paused(self, paused: bool) -> bool:
        return self.set("global_paused", bool(paused))

    # --- Auto-reply per user ---

    def is_auto_reply_enabled(self, user_id: str) -> bool:
        return self.get("auto_reply").get(str(user_id), True)

    def toggle_auto_reply(self, user_id: str, enabled: Optional[bool] = None) -> bool:
        """Flip (or set) auto-reply for a user. Returns the new value."""
        auto_reply = self.get("auto_reply")
        new_value = (not auto_reply.get(str(user_id), True)) if enabled is None else bool(enabled)
        auto_reply[str(user_id)] = new_value
        self.set("auto_reply", auto_reply)
        return new_value

    # --- Allowed users & pending requests ---

    def get_allowed_users(self) -> List[str]:
        return [str(u) for u in self.get("allowed_users")]

    def allow_user(self, user_id: str) -> bool:
        config = self.load()
        allowed = [str(u) for u in config["allowed_users"]]
        if str(user_id) not in allowed:
            allowed.append(str(user_id))
        config["allowed_users"] = allowed
        config["pending_requests"].pop(str(user_id), None)
        return self.save(config)

    def get_pending_requests(self) -> Dict[str, dict]:
        return self.get("pending_requests")

    def add_pending_request(self, user_id: str, username: str, content: str) -> dict:
        """Record (or refresh) a pending private-chat request."""
        request = {
            "userId": str(user_id),
            "username": username,
            "content": content,
            "time": int(time.time() * 1000),
        }
        pending = self.get_pending_requests()
        pending[str(user_id)] = request
        self.set("pending_requests", pending)
        return request

    def remove_pending_request(self, user_id: str) -> bool:
        pending = self.get_pending_requests()
        if pending.pop(str(user_id), None) is None:
            return False
        return self.set("pending_requests", pending)
