"""
Kindred - Bot Instance
A discord.py client wired to one CompanionAgent; implements the agent's transport.
"""

import asyncio
from collections import OrderedDict
from typing import Dict, Optional

import discord

import logger as log
from agent import CompanionAgent
from character import Character
from config import Settings
from dashboard import DashboardHub
from discord_utils import close_http_session, download_attachment, split_message, to_incoming
from errors import ReferenceResolutionError
from memory import MemoryStore
from models import IncomingMessage, Transport
from prometheus_metrics import metrics_manager
from providers import ProviderDispatcher
from runtime_config import RuntimeConfig

SEEN_MESSAGE_LIMIT = 1000


class BotInstance(Transport):
    """Encapsulates a single Discord bot with its own client, character and agent."""

    def __init__(self, token: str, settings: Settings, character: Character, store: MemoryStore,
                 dispatcher: ProviderDispatcher, runtime: RuntimeConfig, hub: DashboardHub):
        self.token = token
        self.character = character
        self.name = character.name
        self.hub = hub

        intents = discord.Intents.default()
        intents.message_content = True
        intents.dm_messages = True
        self.client = discord.Client(intents=intents)

        self.agent = CompanionAgent(settings, character, store, dispatcher, self, runtime, hub)

        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._channels: Dict[str, discord.abc.Messageable] = {}

        self._setup_events()

    def _setup_events(self):
        """Register event handlers."""

        @self.client.event
        async def on_ready():
            self.agent.set_agent_user_id(self.client.user.id)
            self.hub.bind_loop(asyncio.get_running_loop())
            metrics_manager.update_bot_status(self.name, self.character.name, online=True)
            self.agent.publish_state()
            log.online(f"{self.client.user} is online!", self.name)

        @self.client.event
        async def on_message(message: discord.Message):
            if message.author == self.client.user or self._already_seen(str(message.id)):
                return
            self._channels[str(message.channel.id)] = message.channel
            await self.agent.handle_message(to_incoming(message))

    def _already_seen(self, message_id: str) -> bool:
        if message_id in self._seen:
            return True
        self._seen[message_id] = None
        if len(self._seen) > SEEN_MESSAGE_LIMIT:
            self._seen.popitem(last=False)
        return False

    async def _channel(self, channel_id: str):
        channel = self._channels.get(str(channel_id)) or self.client.get_channel(int(channel_id))
        if channel is None:
            channel = await self.client.fetch_channel(int(channel_id))
            self._channels[str(channel_id)] = channel
        return channel

    # --- Transport ---

    async def fetch_message(self, channel_id: str, message_id: str) -> Optional[IncomingMessage]:
        try:
            channel = await self._channel(channel_id)
            message = await channel.fetch_message(int(message_id))
        except (discord.HTTPException, ValueError) as e:
            raise ReferenceResolutionError(channel_id, message_id, e) from e
        return to_incoming(message)

    async def send_typing(self, channel_id: str) -> None:
        channel = await self._channel(channel_id)
        await channel.typing()

    async def send_message(self, channel_id: str, text: str) -> None:
        channel = await self._channel(channel_id)
        for chunk in split_message(text):
            await channel.send(chunk)

    async def fetch_attachment(self, url: str) -> Optional[bytes]:
        return await download_attachment(url)

    # --- Lifecycle ---

    async def start(self):
        """Start the bot."""
        await self.client.start(self.token)

    async def close(self):
        """Flush pending buffers and close the connection."""
        await self.agent.shutdown()
        await close_http_session()
        metrics_manager.update_bot_status(self.name, self.character.name, online=False)
        await self.client.close()
