"""In-process pub/sub for conversation change notifications."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global"
_QUEUE_MAXSIZE = 1000


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class EventBus:
    """Fan-out of event dicts to every queue subscribed to a channel.

    Slow subscribers never block publishers: when a subscriber's queue is
    full the event is dropped for that subscriber only.
    """

    def __init__(self) -> None:
        self._channels: dict[str, list[asyncio.Queue[dict[str, Any]]]] = {}

    def subscribe(self, channel: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=_QUEUE_MAXSIZE)
        self._channels.setdefault(channel, []).append(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        subscribers = self._channels.get(channel)
        if not subscribers:
            return
        try:
            subscribers.remove(queue)
        except ValueError:
            return
        if not subscribers:
            del self._channels[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, []))

    async def publish(self, channel: str, event: dict[str, Any]) -> None:
        for queue in list(self._channels.get(channel, [])):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping %s event for slow subscriber on %s", event.get("type"), channel)
