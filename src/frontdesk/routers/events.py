"""SSE broadcast endpoint for conversation changes."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

from ..services.event_bus import GLOBAL_CHANNEL, conversation_channel
from ._common import validate_conversation_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

_POLL_INTERVAL = 0.05


@router.get("/events")
async def event_stream(request: Request, conversation_id: str | None = None):
    """Long-lived SSE connection.

    Subscribes to the global channel always, and to ``conversation:{id}``
    when a conversation is given. Background turns started by scheduled
    tasks stream their events on the conversation channel.
    """
    if conversation_id:
        validate_conversation_id(conversation_id)

    event_bus = request.app.state.event_bus
    queues: list[tuple[str, asyncio.Queue[dict[str, Any]]]] = [(GLOBAL_CHANNEL, event_bus.subscribe(GLOBAL_CHANNEL))]
    if conversation_id:
        channel = conversation_channel(conversation_id)
        queues.append((channel, event_bus.subscribe(channel)))

    async def generate():
        try:
            while True:
                if await request.is_disconnected():
                    break

                event = None
                for _channel, queue in queues:
                    try:
                        event = queue.get_nowait()
                        break
                    except asyncio.QueueEmpty:
                        continue

                if event is None:
                    await asyncio.sleep(_POLL_INTERVAL)
                    continue

                yield {"event": event.get("type", "message"), "data": json.dumps(event.get("data", {}))}
        finally:
            for channel, queue in queues:
                event_bus.unsubscribe(channel, queue)

    return EventSourceResponse(generate())
