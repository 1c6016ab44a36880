"""
Kindred - Core Types
Identity keys, platform-neutral inbound messages and the transport capability.
"""

from dataclasses import dataclass, field
from typing import List, Optional

DM_CHANNEL = "dm"
TEXT_CHANNEL = "text"


@dataclass(frozen=True)
class IdentityKey:
    """Namespace for memory lookups. No community_id means a private context."""
    agent_role: str
    user_id: str
    community_id: Optional[str] = None

    @property
    def is_private(self) -> bool:
        return self.community_id is None

    @property
    def context_tag(self) -> str:
        """Tag stored on chat entries: "dm" or "server:<id>"."""
        return "dm" if self.community_id is None else f"server:{self.community_id}"

    def __str__(self):
        if self.community_id is None:
            return f"{self.agent_role}/{self.user_id}"
        return f"{self.agent_role}/{self.user_id}@{self.community_id}"


@dataclass
class Attachment:
    url: str
    filename: str = ""
    content_type: str = ""

    @property
    def is_image(self) -> bool:
        return bool(self.content_type) and self.content_type.startswith("image/")


@dataclass
class MessageReference:
    """Pointer to a replied-to message; author_id is known only when cached."""
    message_id: str
    channel_id: Optional[str] = None
    author_id: Optional[str] = None


@dataclass
class ReplyContext:
    content: str
    author: str
    author_id: Optional[str] = None


@dataclass
class IncomingMessage:
    """A raw inbound message as delivered by the transport."""
    id: str
    author_id: str
    content: str
    channel_id: str
    channel_type: str = TEXT_CHANNEL
    channel_name: str = ""
    community_id: Optional[str] = None
    author_name: str = ""
    mentions: List[str] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)
    reference: Optional[MessageReference] = None
    is_bot: bool = False

    @property
    def is_private(self) -> bool:
        return self.channel_type == DM_CHANNEL


@dataclass
class CombinedMessage:
    """One logical turn built from a burst of buffered messages."""
    content: str
    author_id: str
    author_name: str
    channel_id: str
    channel_type: str
    community_id: Optional[str]
    attachments: List[Attachment] = field(default_factory=list)
    is_batched: bool = False
    original_messages: List[IncomingMessage] = field(default_factory=list)
    reply_context: Optional[ReplyContext] = None

    @property
    def is_private(self) -> bool:
        return self.community_id is None

    def identity(self, agent_role: str) -> IdentityKey:
        return IdentityKey(agent_role, self.author_id, self.community_id)


class Transport:
    """Platform operations the core needs. Implemented by the chat client adapter."""

    async def fetch_message(self, channel_id: str, message_id: str) -> Optional[IncomingMessage]:
        raise NotImplementedError

    async def send_typing(self, channel_id: str) -> None:
        raise NotImplementedError

    async def send_message(self, channel_id: str, text: str) -> None:
        raise NotImplementedError

    async def fetch_attachment(self, url: str) -> Optional[bytes]:
        """Download attachment bytes; None when unavailable."""
        return None
