"""
Kindred - Companion Agent
Owns the per-character state and runs the pipeline:
gate -> availability -> batcher -> prompt -> dispatch -> reply -> memory.
"""

import asyncio
import random
import time
from typing import Dict, Optional

import constants
import dashboard
import logger as log
from availability import AvailabilitySimulator
from character import Character
from config import Settings
from dashboard import DashboardHub
from engagement import EngagementGate
from errors import AllProvidersFailedError
from extractor import FactExtractor, MemoryConsolidator
from memory import MemoryStore
from message_batcher import MessageBatcher
from models import CombinedMessage, IdentityKey, IncomingMessage, Transport
from prometheus_metrics import metrics_manager
from prompt_builder import (
    STRUCTURED,
    TEXT,
    build_prompt,
    get_community_mention,
    realistic_typing_delay,
    reply_note,
    situation_note,
)
from providers import ProviderDispatcher
from runtime_config import RuntimeConfig


class CompanionAgent:
    """One character identity talking through one transport."""

    def __init__(
        self,
        settings: Settings,
        character: Character,
        store: MemoryStore,
        dispatcher: ProviderDispatcher,
        transport: Transport,
        runtime: RuntimeConfig,
        hub: DashboardHub = None,
        agent_user_id: str = None,
        rng: random.Random = None,
    ):
        self.settings = settings
        self.character = character
        self.store = store
        self.dispatcher = dispatcher
        self.transport = transport
        self.runtime = runtime
        self.hub = hub or DashboardHub()
        self.rng = rng or random.Random()
        self.name = character.name
        self.role = character.bot_role

        self.availability = AvailabilitySimulator(
            active_hours_start=settings.active_hours_start,
            active_hours_end=settings.active_hours_end,
            max_messages_per_hour=settings.max_messages_per_hour,
            rng=self.rng,
            name=self.name,
        )
        self.gate = EngagementGate(
            agent_user_id,
            self.availability,
            enable_random_ignore=settings.enable_random_ignore,
            rng=self.rng,
            name=self.name,
        )
        self.batcher = MessageBatcher(transport, self.process_combined,
                                      timeout=settings.message_buffer_timeout, name=self.name)
        self.consolidator = MemoryConsolidator(
            store,
            FactExtractor(dispatcher, character.name, name=self.name),
            batch_size=character.message_buffer_size or settings.memory_batch_size,
            name=self.name,
        )

        self.current_action = "idle"
        self._locks: Dict[IdentityKey, asyncio.Lock] = {}
        self._waiters: Dict[IdentityKey, int] = {}  # turns holding or queued on each lock
        self.sleep = asyncio.sleep

        override = runtime.get_active_provider()
        if override and not dispatcher.set_primary(override):
            log.warn(f"Saved provider '{override}' is not configured, keeping {dispatcher.primary}", self.name)

        self._register_commands()

    # --- Identity helpers ---

    @property
    def agent_user_id(self) -> Optional[str]:
        return self.gate.agent_user_id

    def set_agent_user_id(self, user_id: str):
        self.gate.agent_user_id = str(user_id)

    def is_allowed_user(self, user_id: str) -> bool:
        return str(user_id) in self.settings.allowed_users or str(user_id) in self.runtime.get_allowed_users()

    def _lock_for(self, identity: IdentityKey) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity] = lock
        return lock

    # --- Inbound ---

    async def handle_message(self, message: IncomingMessage) -> bool:
        """Run gating for one raw message. True if it was buffered for a reply."""
        if message.is_bot or (self.agent_user_id and str(message.author_id) == self.agent_user_id):
            return False

        if self.runtime.is_paused():
            log.debug(f"Bot is in away mode. Ignoring message from {message.author_name}", self.name)
            return False

        if message.is_private:
            if not self.is_allowed_user(message.author_id):
                self._record_pending(message)
                return False
            if not self.runtime.is_auto_reply_enabled(message.author_id):
                log.debug(f"Auto-reply is off for {message.author_name}", self.name)
                return False
        elif not self.settings.enable_server_support:
            return False

        community = self.settings.get_community(message.community_id)
        identity = IdentityKey(self.role, str(message.author_id), message.community_id)
        relationship = self.store.load_memory(identity)

        respond = self.gate.should_respond(message, community, relationship)
        metrics_manager.record_gate_decision(self.name, respond)
        if not respond:
            return False

        if self.availability.should_go_away(message.community_id):
            metrics_manager.record_away(self.name, self.availability.state.away_reason)
            away = self.availability.away_message()
            self.hub.log_activity(f"Going away ({self.availability.state.away_reason}): {away}")
            try:
                await self.transport.send_message(message.channel_id, away)
            except Exception as e:
                log.error(f"Could not send away message: {e}", self.name)
            self.publish_state()
            return False

        self.batcher.on_message(message)
        return True

    def _record_pending(self, message: IncomingMessage):
        log.info(f"New DM request from {message.author_name or message.author_id}", self.name)
        self.runtime.add_pending_request(message.author_id, message.author_name, message.content)
        self.hub.set_pending_requests(self.runtime.get_pending_requests())

    # --- Processing ---

    async def process_combined(self, combined: CombinedMessage):
        """Reply to one combined turn. Turns for the same identity run one at a time."""
        identity = combined.identity(self.role)
        lock = self._lock_for(identity)
        self._waiters[identity] = self._waiters.get(identity, 0) + 1
        try:
            async with lock:
                await self._respond(combined, identity)
        finally:
            self._waiters[identity] -= 1
            if not self._waiters[identity]:
                del self._waiters[identity]
                if self._locks.get(identity) is lock:
                    del self._locks[identity]

    async def _load_image(self, combined: CombinedMessage) -> Optional[bytes]:
        if not self.settings.enable_image_support:
            return None
        attachment = next((a for a in combined.attachments if a.is_image), None)
        if attachment is None:
            return None
        try:
            data = await self.transport.fetch_attachment(attachment.url)
        except Exception as e:
            log.warn(f"Failed to process image attachment: {e}", self.name)
            return None
        if data:
            self.hub.log_activity("Image processed successfully")
        return data

    def _user_content(self, combined: CombinedMessage) -> str:
        ctx = combined.reply_context
        if ctx is None:
            return combined.content
        replied_to_agent = self.agent_user_id is not None and ctx.author_id == self.agent_user_id
        return f"{reply_note(ctx.content, replied_to_agent)}\n\n{combined.content}"

    async def _respond(self, combined: CombinedMessage, identity: IdentityKey):
        start = time.time()
        user = {"id": combined.author_id, "username": combined.author_name}
        self._set_action("processing")

        try:
            chat = self.store.load_chat(identity)
            now_ms = int(time.time() * 1000)
            chat.append({
                "role": "user",
                "content": self._user_content(combined),
                "time": now_ms,
                "context": identity.context_tag,
            })
            chat = chat[-constants.MAX_CHAT_ENTRIES:]
            situation = situation_note(chat, now_ms)

            mentioned = None
            if identity.is_private and self.settings.enable_server_support:
                mentioned = get_community_mention(combined.content, self.settings.allowed_servers)

            view = self.store.get_combined_memory(identity, mentioned)
            image = await self._load_image(combined)
            agent_mood = self.store.get_ai_mood(self.role) if self.settings.enable_ai_emotions else None

            kind = STRUCTURED if self.dispatcher.primary_structured else TEXT
            prompt = build_prompt(self.character, chat, identity, view, situation, kind, agent_mood)
            self.hub.prompt_submitted(
                user,
                prompt.messages if prompt.structured else prompt.text,
                combined.is_batched,
                combined.reply_context is not None,
                self.dispatcher.primary,
            )

            result = await self.dispatcher.dispatch(prompt, identity, self.character.system_instruction, view, image)
            suffix = " (fallback)" if result.was_fallback else ""
            self.hub.log_activity(f"Response generated using {result.provider_used}{suffix}")

            energy = "tired" if self.availability.is_energy_low(identity.community_id) else "normal"
            delay = realistic_typing_delay(result.text, energy, self.rng,
                                           self.settings.min_typing_delay, self.settings.max_typing_delay)
            try:
                await self.transport.send_typing(combined.channel_id)
            except Exception as e:
                log.debug(f"Typing indicator failed: {e}", self.name)
            await self.sleep(min(delay * 0.5, constants.TYPING_WAIT_CAP))
            await self.transport.send_message(combined.channel_id, result.text)

        except AllProvidersFailedError as e:
            await self._fail(combined, e, "all_providers_failed", start)
            return
        except Exception as e:
            await self._fail(combined, e, type(e).__name__, start)
            return

        self.hub.response_received(user, result.text, result.provider_used, result.was_fallback)
        metrics_manager.record_message(self.name, 'dm' if identity.is_private else 'server')
        metrics_manager.record_response(self.name, True, time.time() - start, result.provider_used)
        metrics_manager.update_last_activity(self.name, time.time())
        log.ok(f"Replied to {combined.author_name or combined.author_id} via {result.provider_used}{suffix}", self.name)

        try:
            self.availability.increment_message_counter(identity.community_id)
            self.hub.increment_message_count()
            chat.append({
                "role": self.role,
                "content": result.text,
                "time": int(time.time() * 1000),
                "context": identity.context_tag,
            })
            self.store.save_chat(identity, chat)
            await self.consolidator.add_exchange(identity, combined.content, result.text)
        except Exception as e:
            log.error(f"Post-reply bookkeeping failed for {identity}: {e}", self.name)
            metrics_manager.record_error(self.name, type(e).__name__)
        finally:
            self._set_action("idle")

    async def _fail(self, combined: CombinedMessage, error: Exception, error_type: str, start: float):
        log.error(f"AI response error: {error}", self.name)
        self.hub.log_activity(f"Error generating response: {error}")
        metrics_manager.record_error(self.name, error_type)
        metrics_manager.record_response(self.name, False, time.time() - start)
        try:
            await self.transport.send_message(combined.channel_id, constants.APOLOGY_MESSAGE)
        except Exception as e:
            log.error(f"Error sending fallback message: {e}", self.name)
        self._set_action("idle")

    # --- State & commands ---

    def _set_action(self, action: str):
        self.current_action = action
        self.publish_state()

    def bot_state(self) -> dict:
        mood = self.store.get_ai_mood(self.role)
        return {
            "name": self.name,
            "mood": mood["mood"],
            "energy": mood["energy"],
            "isAway": self.runtime.is_paused(),
            "currentAction": self.current_action,
            "availability": self.availability.snapshot(),
            "primaryProvider": self.dispatcher.primary,
            "providerStatus": self.dispatcher.get_status(),
            "pendingBuffers": self.batcher.pending,
        }

    def publish_state(self):
        self.hub.update_bot_state(self.bot_state())

    def _register_commands(self):
        self.hub.register_command(dashboard.ACCEPT_PENDING, self.accept_pending)
        self.hub.register_command(dashboard.SET_BOT_STATE, self.set_bot_state)
        self.hub.register_command(dashboard.TOGGLE_AUTO_REPLY, self.toggle_auto_reply)
        self.hub.register_command(dashboard.CHANGE_PROVIDER, self.change_provider)
        self.hub.register_command(dashboard.RESET_AWAY, self.reset_away)

    def accept_pending(self, payload: dict) -> dict:
        user_id = str(payload.get("userId", ""))
        if not user_id:
            raise ValueError("userId is required")
        self.runtime.allow_user(user_id)
        self.hub.set_pending_requests(self.runtime.get_pending_requests())
        log.info(f"User accepted: {user_id}", self.name)
        return {"userId": user_id, "allowed": True}

    def set_bot_state(self, payload: dict) -> dict:
        if payload.get("mood") or payload.get("energy"):
            self.store.set_ai_mood(self.role, payload.get("mood"), payload.get("energy"))
        if "isAway" in payload:
            self.runtime.set_paused(bool(payload["isAway"]))
            log.info(f"Bot is now {'away' if payload['isAway'] else 'available'}", self.name)
        self.publish_state()
        return self.bot_state()

    def toggle_auto_reply(self, payload: dict) -> dict:
        user_id = str(payload["userId"])
        enabled = self.runtime.toggle_auto_reply(user_id, payload.get("enabled"))
        log.info(f"Auto-reply {'enabled' if enabled else 'disabled'} for user {user_id}", self.name)
        return {"userId": user_id, "enabled": enabled}

    def change_provider(self, payload: dict) -> dict:
        name = str(payload["provider"]).lower()
        if not self.dispatcher.set_primary(name):
            raise ValueError(f"Unknown AI provider: {name}")
        self.runtime.set_active_provider(name)
        log.info(f"Primary AI provider changed to {name}", self.name)
        self.publish_state()
        return {"provider": name}

    def reset_away(self, payload: dict = None) -> dict:
        self.availability.reset_away_status()
        self.hub.log_activity("AI away status reset. Now available again.")
        self.publish_state()
        return self.availability.snapshot()

    async def shutdown(self):
        await self.batcher.flush_all()
        await self.dispatcher.close()
