"""
Kindred - Discord Utilities
Conversion from discord.py objects to core messages, media download and reply splitting.
"""

import re
from typing import List, Optional

import aiohttp
import discord

from models import DM_CHANNEL, TEXT_CHANNEL, Attachment, IncomingMessage, MessageReference

DISCORD_MESSAGE_LIMIT = 2000

# Shared aiohttp session for attachment downloads
_http_session: Optional[aiohttp.ClientSession] = None


async def get_http_session() -> aiohttp.ClientSession:
    """Get or create the reusable HTTP session."""
    global _http_session
    if _http_session is None or _http_session.closed:
        _http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
    return _http_session


async def close_http_session():
    global _http_session
    if _http_session is not None and not _http_session.closed:
        await _http_session.close()
    _http_session = None


async def download_attachment(url: str) -> Optional[bytes]:
    """Raw bytes of an attachment, None on a non-200 reply."""
    session = await get_http_session()
    async with session.get(url) as response:
        if response.status == 200:
            return await response.read()
    return None


def get_user_display_name(user) -> str:
    """Display name, then global name, then username."""
    return getattr(user, 'display_name', None) or getattr(user, 'global_name', None) or user.name


def to_incoming(message: discord.Message) -> IncomingMessage:
    """Translate a discord.Message into the core's inbound message."""
    is_dm = isinstance(message.channel, discord.DMChannel)

    reference = None
    if message.reference and message.reference.message_id:
        cached = message.reference.resolved if isinstance(message.reference.resolved, discord.Message) else None
        reference = MessageReference(
            message_id=str(message.reference.message_id),
            channel_id=str(message.reference.channel_id or message.channel.id),
            author_id=str(cached.author.id) if cached else None,
        )

    return IncomingMessage(
        id=str(message.id),
        author_id=str(message.author.id),
        author_name=get_user_display_name(message.author),
        content=message.content,
        channel_id=str(message.channel.id),
        channel_type=DM_CHANNEL if is_dm else TEXT_CHANNEL,
        channel_name="" if is_dm else getattr(message.channel, 'name', ""),
        community_id=None if is_dm or message.guild is None else str(message.guild.id),
        mentions=[str(u.id) for u in message.mentions],
        attachments=[
            Attachment(url=a.url, filename=a.filename, content_type=a.content_type or "")
            for a in message.attachments
        ],
        reference=reference,
        is_bot=message.author.bot,
    )


def split_message(content: str, max_length: int = DISCORD_MESSAGE_LIMIT) -> List[str]:
    """Break a reply into chunks Discord will accept, preferring paragraph then sentence breaks."""
    if len(content) <= max_length:
        return [content]

    pieces = []
    for para in content.split('\n\n'):
        if len(para) <= max_length:
            pieces.append(para)
            continue
        for sentence in re.split(r'(?<=[.!?])\s+', para):
            while len(sentence) > max_length:
                pieces.append(sentence[:max_length])
                sentence = sentence[max_length:]
            pieces.append(sentence)

    chunks = []
    current = ""
    for piece in pieces:
        joiner = '\n\n' if current else ''
        if len(current) + len(joiner) + len(piece) <= max_length:
            current += joiner + piece
        else:
            chunks.append(current)
            current = piece
    if current:
        chunks.append(current)
    return [c for c in chunks if c]
