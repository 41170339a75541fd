"""Request helpers shared by the routers."""

from __future__ import annotations

from fastapi import HTTPException, Request

from ..services.conversation import CONVERSATION_ID_RE, ConversationAgent, ConversationRegistry


def validate_conversation_id(value: str) -> str:
    if not CONVERSATION_ID_RE.match(value):
        raise HTTPException(status_code=400, detail="Invalid conversation ID format")
    return value


def get_registry(request: Request) -> ConversationRegistry:
    return request.app.state.registry


def get_agent(request: Request, conversation_id: str) -> ConversationAgent:
    validate_conversation_id(conversation_id)
    return get_registry(request).get(conversation_id)
