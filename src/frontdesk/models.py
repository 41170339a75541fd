"""Pydantic models for API request/response schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class Part(BaseModel):
    type: str
    text: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    state: str | None = None
    input: dict[str, Any] | None = None
    output: Any = None
    decision: str | None = None


class Message(BaseModel):
    id: str
    role: str
    parts: list[Part] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PendingMessage(BaseModel):
    id: str
    text: str
    created_at: str | None = None
    waiting_for_human: bool = False


class ScheduledTask(BaseModel):
    id: str
    conversation_id: str
    description: str
    run_at: str
    status: str
    created_at: str
    fired_at: str | None = None


class ChatRequest(BaseModel):
    message: str | None = Field(default=None, max_length=100_000)
    resume: bool = False


class MarkWaitingRequest(BaseModel):
    message_id: str = Field(min_length=1)


class ManualMessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=100_000)
    message_id: str | None = None


class ResolveToolCallRequest(BaseModel):
    message_id: str = Field(min_length=1)
    approved: bool
    result: Any = None


class ResolveToolCallResponse(BaseModel):
    message: Message
    changed: bool


class StopResponse(BaseModel):
    stopped: bool


class HealthResponse(BaseModel):
    status: str
    api_key_configured: bool
    model: str
