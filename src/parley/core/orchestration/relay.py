from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

DEFAULT_SUBSCRIBER_QUEUE_SIZE = 1000


@dataclass
class RelayEvent:
    kind: str
    chat_id: str
    payload: dict[str, Any] = field(default_factory=dict)


class MessageRelay:
    """Fans pipeline events out to the transports subscribed to a chat.

    Publishing never waits. Events for a chat nobody is listening to are discarded,
    and a subscriber whose queue is full misses the event instead of stalling the turn.
    """

    def __init__(self, maxsize: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE) -> None:
        self.maxsize = maxsize
        self.logger = logging.getLogger("parley.relay")
        self._subscribers: dict[str, list[asyncio.Queue[RelayEvent]]] = {}

    def subscribe(self, chat_id: str) -> asyncio.Queue[RelayEvent]:
        queue: asyncio.Queue[RelayEvent] = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.setdefault(chat_id, []).append(queue)
        return queue

    def unsubscribe(self, chat_id: str, queue: asyncio.Queue[RelayEvent]) -> None:
        queues = self._subscribers.get(chat_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[chat_id]

    def subscriber_count(self, chat_id: str) -> int:
        return len(self._subscribers.get(chat_id, []))

    async def publish(self, event: RelayEvent) -> None:
        for queue in list(self._subscribers.get(event.chat_id, [])):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.logger.warning(
                    "relay_event_dropped",
                    extra={"extra_fields": {"chat_id": event.chat_id, "kind": event.kind}},
                )

    async def status(self, chat_id: str, status: str) -> None:
        await self.publish(RelayEvent(kind="status", chat_id=chat_id, payload={"status": status}))

    async def message(self, chat_id: str, turn: dict[str, Any]) -> None:
        await self.publish(RelayEvent(kind="message", chat_id=chat_id, payload=turn))

    async def delta(self, chat_id: str, turn_id: str, delta: str) -> None:
        await self.publish(RelayEvent(kind="delta", chat_id=chat_id, payload={"turn_id": turn_id, "delta": delta}))


def drain(queue: asyncio.Queue[RelayEvent]) -> list[RelayEvent]:
    events: list[RelayEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events
