"""
Message Events
Process-local publish/subscribe for live message updates.

The webhook processor and the dispatcher publish a MessageEvent whenever a
message row changes; the SSE endpoint subscribes and forwards the events of
the caller's tenant. Nothing is persisted: a subscriber that connects late
simply misses earlier events and catches up through the /updates feed.
"""
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import AsyncIterator, Optional, Set

logger = logging.getLogger("message_events")

SUBSCRIBER_QUEUE_SIZE = 100


@dataclass(frozen=True)
class MessageEvent:
    user_id: str
    phone_raw: Optional[str]
    event: str  # messages.upsert | messages.update | messages.send
    wamid: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class MessageEventBus:
    """
    Fan-out of MessageEvents to per-subscriber bounded queues.

    publish() never blocks: a subscriber whose queue is full loses the event.
    """

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    def publish(self, event: MessageEvent) -> int:
        """Deliver to every subscriber. Returns how many received it."""
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event.event} for slow subscriber (user={event.user_id})")
        return delivered

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    async def stream(self, user_id: Optional[str] = None) -> AsyncIterator[MessageEvent]:
        """
        Yield events as they are published, optionally only one tenant's.
        The subscription is dropped when the consumer stops iterating.
        """
        queue = self.subscribe()
        try:
            while True:
                event = await queue.get()
                if user_id is None or event.user_id == user_id:
                    yield event
        finally:
            self.unsubscribe(queue)


# Singleton instance
message_event_bus = MessageEventBus()
