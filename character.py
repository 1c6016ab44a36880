"""
Kindred - Character Loader
Loads character definitions from markdown files.
"""

import os
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from config import CHARACTERS_DIR

# "## Profile" lines look like "- age: 19" or "age: 19"
_PROFILE_LINE = re.compile(r'^\s*[-*]?\s*([A-Za-z_ ]+?)\s*:\s*(.+?)\s*$')


@dataclass
class Character:
    """A loaded character definition."""
    name: str
    bot_role: str
    system_instruction: str
    age: str = ""
    nationality: str = ""
    gender: str = ""
    message_buffer_size: Optional[int] = None  # None = settings.memory_batch_size
    token_env: str = ""

    @property
    def token(self) -> Optional[str]:
        """Discord token from the character's own env variable, if it has one."""
        return os.getenv(self.token_env) if self.token_env else None


def _section(content: str, title: str) -> str:
    match = re.search(rf'##\s*{title}\s*\n(.*?)(?=\n##|\Z)', content, re.DOTALL | re.IGNORECASE)
    return match.group(1).strip() if match else ""


def _parse_profile(text: str) -> Dict[str, str]:
    profile = {}
    for line in text.split('\n'):
        match = _PROFILE_LINE.match(line)
        if match:
            profile[match.group(1).strip().lower().replace(' ', '_')] = match.group(2)
    return profile


def parse_character(key: str, content: str) -> Character:
    """Parse markdown: '# Name' title, '## Persona' and '## Profile' sections."""
    name = key.title()
    title_match = re.search(r'^#\s+(.+)$', content, re.MULTILINE)
    if title_match:
        name = title_match.group(1).strip()

    profile = _parse_profile(_section(content, "Profile"))

    buffer_size = None
    if "buffer_size" in profile:
        try:
            buffer_size = max(int(profile["buffer_size"]), 1)
        except ValueError:
            buffer_size = None

    return Character(
        name=name,
        bot_role=profile.get("role", key).lower(),
        system_instruction=_section(content, "Persona"),
        age=profile.get("age", ""),
        nationality=profile.get("nationality", ""),
        gender=profile.get("gender", ""),
        message_buffer_size=buffer_size,
        token_env=profile.get("token_env", ""),
    )


class CharacterManager:
    """Finds and caches character files."""

    def __init__(self, characters_dir: str = CHARACTERS_DIR):
        self.characters_dir = characters_dir
        self.characters: Dict[str, Character] = {}

    def list_available(self) -> List[str]:
        """List all available character files."""
        if not os.path.exists(self.characters_dir):
            return []
        return sorted(
            f[:-3] for f in os.listdir(self.characters_dir)
            if f.endswith('.md') and not f.startswith('_')
        )

    def load(self, name: str) -> Optional[Character]:
        """Load a character from file, None if it doesn't exist."""
        filepath = os.path.join(self.characters_dir, f"{name}.md")
        if not os.path.exists(filepath):
            return None

        with open(filepath, 'r', encoding='utf-8') as f:
            character = parse_character(name, f.read())
        self.characters[name] = character
        return character

    def get(self, name: str) -> Optional[Character]:
        """Requested character, else the first one available."""
        if name in self.characters:
            return self.characters[name]
        character = self.load(name)
        if character:
            return character
        for fallback in self.list_available():
            character = self.load(fallback)
            if character:
                return character
        return None
