"""Bounded agentic loop: model steps, auto tool execution and confirmation halts."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator

from ..tools import ToolContext
from .ai_service import AIService
from .messages import is_tool_part, message_text
from .tool_executor import ToolExecutor

logger = logging.getLogger(__name__)


@dataclass
class AgentEvent:
    kind: str
    data: dict[str, Any]


def _tool_call_entry(part: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": part["tool_call_id"],
        "type": "function",
        "function": {"name": part["tool_name"], "arguments": json.dumps(part.get("input") or {})},
    }


def _assistant_to_model(message: dict[str, Any]) -> list[dict[str, Any]]:
    """Split one stored assistant message into OpenAI chat messages.

    Text that follows a tool call starts a new assistant message, so a turn
    spanning several model steps replays in the order the model produced it.
    Unresolved tool calls are left out: the model must not see a call
    without its result.
    """
    out: list[dict[str, Any]] = []
    content = ""
    calls: list[dict[str, Any]] = []

    def flush() -> None:
        nonlocal content, calls
        if calls:
            out.append({"role": "assistant", "content": content or None, "tool_calls": [_tool_call_entry(p) for p in calls]})
            for p in calls:
                out.append({"role": "tool", "tool_call_id": p["tool_call_id"], "content": json.dumps(p.get("output"))})
        elif content:
            out.append({"role": "assistant", "content": content})
        content = ""
        calls = []

    for part in message.get("parts", []):
        if is_tool_part(part):
            if part.get("state") == "output-available":
                calls.append(part)
        elif part.get("type") == "text":
            if calls:
                flush()
            content += part.get("text", "")
    flush()
    return out


def to_model_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert the stored log to OpenAI chat messages."""
    result: list[dict[str, Any]] = []
    for msg in messages:
        if msg["role"] == "user":
            result.append({"role": "user", "content": message_text(msg)})
        else:
            result.extend(_assistant_to_model(msg))
    return result


async def run_agent_loop(
    ai_service: AIService,
    messages: list[dict[str, Any]],
    executor: ToolExecutor,
    tools_openai: list[dict[str, Any]] | None,
    cancel_event: asyncio.Event | None = None,
    max_steps: int = 10,
    context: ToolContext | None = None,
) -> AsyncGenerator[AgentEvent, None]:
    """Run model steps until the model stops, a call needs confirmation, or max_steps is hit.

    ``messages`` is in OpenAI chat format and is extended in place with each
    step's assistant message and tool results. The final event is always
    ``done`` with a ``reason``.
    """
    for step in range(1, max_steps + 1):
        if cancel_event and cancel_event.is_set():
            yield AgentEvent(kind="done", data={"reason": "aborted"})
            return

        tool_calls: list[dict[str, Any]] = []
        content = ""

        async for event in ai_service.stream_chat(
            messages,
            tools=tools_openai,
            cancel_event=cancel_event,
        ):
            etype = event["event"]
            if etype == "token":
                content += event["data"]["content"]
                yield AgentEvent(kind="token", data=event["data"])
            elif etype == "tool_call":
                data = event["data"]
                tool_calls.append(data)
                yield AgentEvent(
                    kind="tool_call_start",
                    data={
                        "id": data["id"],
                        "tool_name": data["function_name"],
                        "arguments": data["arguments"],
                        "needs_confirmation": executor.registry.needs_confirmation(data["function_name"]),
                    },
                )
            elif etype == "error":
                yield AgentEvent(kind="error", data=event["data"])
                yield AgentEvent(kind="done", data={"reason": "error"})
                return
            elif etype == "done":
                break

        if cancel_event and cancel_event.is_set():
            yield AgentEvent(kind="done", data={"reason": "aborted"})
            return

        if not tool_calls:
            yield AgentEvent(kind="done", data={"reason": "stop"})
            return

        auto_calls = [tc for tc in tool_calls if not executor.registry.needs_confirmation(tc["function_name"])]
        confirm_calls = [tc for tc in tool_calls if executor.registry.needs_confirmation(tc["function_name"])]

        # Auto calls run concurrently; results are reported in the order the model asked for them
        results = await asyncio.gather(
            *(executor.execute(tc["function_name"], tc["arguments"], context=context) for tc in auto_calls)
        )
        for tc, (output, status) in zip(auto_calls, results):
            yield AgentEvent(
                kind="tool_call_end",
                data={"id": tc["id"], "tool_name": tc["function_name"], "output": output, "status": status},
            )

        if confirm_calls:
            for tc in confirm_calls:
                yield AgentEvent(
                    kind="confirmation_required",
                    data={"id": tc["id"], "tool_name": tc["function_name"], "arguments": tc["arguments"]},
                )
            yield AgentEvent(kind="done", data={"reason": "awaiting_confirmation"})
            return

        messages.append(
            {
                "role": "assistant",
                "content": content or None,
                "tool_calls": [
                    {
                        "id": tc["id"],
                        "type": "function",
                        "function": {"name": tc["function_name"], "arguments": json.dumps(tc["arguments"])},
                    }
                    for tc in auto_calls
                ],
            }
        )
        for tc, (output, _status) in zip(auto_calls, results):
            messages.append({"role": "tool", "tool_call_id": tc["id"], "content": json.dumps(output)})

        logger.debug("Step %d executed %d tool call(s)", step, len(auto_calls))

    logger.warning("Turn stopped after %d steps", max_steps)
    yield AgentEvent(kind="error", data={"message": f"Max steps ({max_steps}) reached", "code": "step_limit"})
    yield AgentEvent(kind="done", data={"reason": "step_limit"})
