"""
Kindred - Message Batcher
Coalesces bursts of messages from one author in one channel into a single turn.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import constants
import logger as log
from errors import ReferenceResolutionError
from models import CombinedMessage, IncomingMessage, ReplyContext, Transport
from prometheus_metrics import metrics_manager

BufferKey = Tuple[str, str]
FlushCallback = Callable[[CombinedMessage], Awaitable[None]]


def buffer_key(message: IncomingMessage) -> BufferKey:
    """(author, channel) pair identifying a buffer."""
    return (str(message.author_id), str(message.channel_id))


def combine_messages(messages: List[IncomingMessage]) -> CombinedMessage:
    """Join buffered bodies in arrival order; metadata comes from the first message."""
    first = messages[0]
    return CombinedMessage(
        content="\n".join(m.content for m in messages),
        author_id=first.author_id,
        author_name=first.author_name,
        channel_id=first.channel_id,
        channel_type=first.channel_type,
        community_id=first.community_id,
        attachments=list(first.attachments),
        is_batched=len(messages) > 1,
        original_messages=list(messages),
    )


class MessageBatcher:
    """Debounced per-(author, channel) buffers with a single flush callback."""

    def __init__(self, transport: Transport, callback: FlushCallback,
                 timeout: float = constants.MESSAGE_BUFFER_TIMEOUT, name: str = None):
        self.transport = transport
        self.callback = callback
        self.timeout = timeout
        self.name = name

        self._buffers: Dict[BufferKey, dict] = {}  # key -> {messages, timer_task, community_id, start_time}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._buffers)

    def has_buffer(self, key: BufferKey) -> bool:
        return key in self._buffers

    def _schedule(self, key: BufferKey) -> asyncio.Task:
        task = asyncio.create_task(self._batch_timer(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def on_message(self, message: IncomingMessage) -> BufferKey:
        """Buffer a message and restart that buffer's quiet-period timer."""
        key = buffer_key(message)
        loop = asyncio.get_running_loop()

        if key in self._buffers:
            batch = self._buffers[key]
            batch['messages'].append(message)
            if batch['timer_task']:
                batch['timer_task'].cancel()
            batch['timer_task'] = self._schedule(key)
            log.debug(f"Buffered message {len(batch['messages'])} from {message.author_name or message.author_id}", self.name)
        else:
            self._buffers[key] = {
                'messages': [message],
                'community_id': message.community_id,
                'start_time': loop.time(),
                'timer_task': self._schedule(key),
            }
            metrics_manager.update_pending_buffers(self.name or "agent", len(self._buffers))
        return key

    async def _batch_timer(self, key: BufferKey):
        await asyncio.sleep(self.timeout)
        await self.flush(key)

    async def resolve_reply_context(self, message: IncomingMessage) -> Optional[ReplyContext]:
        """Fetch the replied-to message. Failures are logged and yield None."""
        ref = message.reference
        if ref is None or not ref.message_id:
            return None
        try:
            referenced = await self.transport.fetch_message(ref.channel_id or message.channel_id, ref.message_id)
        except ReferenceResolutionError as e:
            log.warn(str(e), self.name)
            return None
        except Exception as e:
            log.warn(f"Error fetching replied message: {e}", self.name)
            return None
        if referenced is None:
            return None
        return ReplyContext(
            content=referenced.content,
            author=referenced.author_name or str(referenced.author_id),
            author_id=str(referenced.author_id),
        )

    async def flush(self, key: BufferKey) -> Optional[CombinedMessage]:
        """Emit the buffer as one combined message. A missing buffer is a no-op."""
        batch = self._buffers.pop(key, None)
        if batch is None:
            return None

        timer = batch['timer_task']
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

        agent = self.name or "agent"
        metrics_manager.update_pending_buffers(agent, len(self._buffers))
        messages = batch['messages']
        if not messages:
            return None

        combined = combine_messages(messages)
        combined.reply_context = await self.resolve_reply_context(messages[0])
        metrics_manager.record_batch(agent, len(messages))

        if combined.is_batched:
            log.info(f"Combined {len(messages)} messages from {combined.author_name or combined.author_id}", self.name)

        try:
            await self.callback(combined)
        except Exception as e:
            log.error(f"Error processing batched message: {e}", self.name)
            metrics_manager.record_error(agent, type(e).__name__)
        return combined

    async def flush_all(self):
        """Flush every pending buffer (used on shutdown)."""
        for key in list(self._buffers):
            await self.flush(key)

    def cancel_all(self):
        for batch in self._buffers.values():
            if batch['timer_task']:
                batch['timer_task'].cancel()
        self._buffers.clear()
