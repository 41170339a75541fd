"""Conversation log, handoff, tool resolution and scheduled task endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from ..models import (
    ManualMessageRequest,
    MarkWaitingRequest,
    Message,
    PendingMessage,
    ResolveToolCallRequest,
    ResolveToolCallResponse,
    ScheduledTask,
)
from ._common import get_agent, get_registry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversations"])


@router.get("/conversations/{conversation_id}/messages", response_model=list[Message])
async def list_messages(conversation_id: str, request: Request):
    agent = get_agent(request, conversation_id)
    return await agent.list_messages()


@router.get("/conversations/{conversation_id}/pending-messages", response_model=list[PendingMessage])
async def list_pending_messages(conversation_id: str, request: Request):
    agent = get_agent(request, conversation_id)
    return await agent.list_pending_messages()


@router.post("/conversations/{conversation_id}/mark-waiting-human", response_model=Message)
async def mark_waiting_human(conversation_id: str, body: MarkWaitingRequest, request: Request):
    agent = get_agent(request, conversation_id)
    return await agent.mark_waiting_for_human(body.message_id)


@router.post("/conversations/{conversation_id}/manual-message", response_model=Message, status_code=201)
async def manual_message(conversation_id: str, body: ManualMessageRequest, request: Request):
    agent = get_agent(request, conversation_id)
    return await agent.submit_manual_assistant_message(body.message, responding_to=body.message_id)


@router.post(
    "/conversations/{conversation_id}/tool-calls/{tool_call_id}/resolve",
    response_model=ResolveToolCallResponse,
)
async def resolve_tool_call(conversation_id: str, tool_call_id: str, body: ResolveToolCallRequest, request: Request):
    agent = get_agent(request, conversation_id)
    message, changed = await agent.resolve_tool_call(body.message_id, tool_call_id, body.approved, body.result)
    return ResolveToolCallResponse(message=message, changed=changed)


@router.get("/conversations/{conversation_id}/scheduled-tasks", response_model=list[ScheduledTask])
async def list_scheduled_tasks(conversation_id: str, request: Request):
    get_agent(request, conversation_id)
    scheduler = get_registry(request).scheduler
    return scheduler.list_tasks(conversation_id)


@router.delete("/conversations/{conversation_id}/scheduled-tasks/{task_id}", status_code=204)
async def cancel_scheduled_task(conversation_id: str, task_id: str, request: Request):
    get_agent(request, conversation_id)
    scheduler = get_registry(request).scheduler
    if not scheduler.cancel(conversation_id, task_id):
        raise HTTPException(status_code=404, detail="Scheduled task not found")
