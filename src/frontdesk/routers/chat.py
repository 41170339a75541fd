"""Chat streaming endpoint with SSE."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from ..models import ChatRequest, StopResponse
from ._common import get_agent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


@router.post("/conversations/{conversation_id}/chat")
async def chat(conversation_id: str, body: ChatRequest, request: Request) -> EventSourceResponse:
    """Submit a user message (or resume after a confirmation) and stream the turn."""
    agent = get_agent(request, conversation_id)

    if body.resume:
        if body.message:
            raise HTTPException(status_code=400, detail="Send either a message or resume, not both")
        await agent.list_messages()
    else:
        if not body.message or not body.message.strip():
            raise HTTPException(status_code=400, detail="Message text is required")
        await agent.submit_user_message(body.message)

    async def event_generator():
        turn = agent.run_turn()
        try:
            async for event in turn:
                if await request.is_disconnected():
                    agent.stop()
                yield {"event": event["type"], "data": json.dumps(event)}
        except Exception:
            logger.exception("Chat stream error")
            yield {"event": "error", "data": json.dumps({"message": "An internal error occurred"})}
        finally:
            await turn.aclose()

    return EventSourceResponse(event_generator())


@router.post("/conversations/{conversation_id}/stop", response_model=StopResponse)
async def stop_generation(conversation_id: str, request: Request):
    agent = get_agent(request, conversation_id)
    return StopResponse(stopped=agent.stop())
