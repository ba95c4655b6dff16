"""Channel plumbing: inbound event de-duplication and reply delivery.

Chat platforms redeliver events on network hiccups; each poller owns an
:class:`EventDedupCache` so a redelivered event produces no second reply.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Protocol

from .chat_service import ChatReply, ChatService, IncomingMessage

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_CAPACITY = 5000
DEFAULT_DEDUP_TTL_SECONDS = 6 * 60 * 60


class EventDedupCache:
    """Remembers recently seen event ids, bounded by age and count."""

    def __init__(
        self,
        capacity: int = DEFAULT_DEDUP_CAPACITY,
        ttl_seconds: float = DEFAULT_DEDUP_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            msg = "capacity must be positive"
            raise ValueError(msg)
        self._capacity = capacity
        self._ttl = ttl_seconds
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def _evict_expired(self, now: float) -> None:
        while self._seen:
            oldest_id, seen_at = next(iter(self._seen.items()))
            if now - seen_at <= self._ttl:
                break
            del self._seen[oldest_id]

    def seen(self, event_id: str) -> bool:
        now = self._clock()
        self._evict_expired(now)
        return event_id in self._seen

    def remember(self, event_id: str) -> None:
        now = self._clock()
        self._evict_expired(now)
        if event_id in self._seen:
            del self._seen[event_id]
        elif len(self._seen) >= self._capacity:
            self._seen.popitem(last=False)
        self._seen[event_id] = now

    def check_and_remember(self, event_id: str) -> bool:
        """Return True if *event_id* is new (and record it), False if it is a repeat."""
        if self.seen(event_id):
            return False
        self.remember(event_id)
        return True

    def __len__(self) -> int:
        return len(self._seen)


class ChannelSender(Protocol):
    """Outbound side of a chat channel."""

    async def send(self, chat_id: str, text: str) -> None: ...


async def handle_channel_event(
    event_id: str,
    incoming: IncomingMessage,
    service: ChatService,
    sender: ChannelSender,
    dedup: EventDedupCache,
) -> ChatReply | None:
    """Process one inbound channel event and push the reply back.

    Returns ``None`` for duplicates and empty messages. Delivery failures
    are logged; the reply is already stored either way.
    """
    if not dedup.check_and_remember(event_id):
        logger.info("Skipping duplicate event %s", event_id)
        return None
    if not incoming.text.strip():
        logger.info("Skipping empty message in event %s", event_id)
        return None

    reply = await service.handle_incoming_message(incoming)
    if incoming.external_chat_id:
        try:
            await sender.send(incoming.external_chat_id, reply.text)
        except Exception:
            logger.exception(
                "Failed to deliver reply for run %d to chat %s",
                reply.run_id,
                incoming.external_chat_id,
            )
    return reply
