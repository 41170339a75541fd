"""Message and part constructors plus read helpers.

Messages are plain dicts::

    {"id": str, "role": "user" | "assistant", "parts": [...], "metadata": {"created_at": str, ...}}

Parts are either text fragments or tool-invocation fragments.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

TEXT = "text"
TOOL_INVOCATION = "tool-invocation"

INPUT_AVAILABLE = "input-available"
OUTPUT_AVAILABLE = "output-available"

ROLES = ("user", "assistant")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_message(
    role: str,
    parts: list[dict[str, Any]],
    *,
    source: str | None = None,
    waiting_for_human: bool | None = None,
    message_id: str | None = None,
) -> dict[str, Any]:
    if role not in ROLES:
        raise ValueError(f"Unsupported message role: {role!r}")
    metadata: dict[str, Any] = {"created_at": _now()}
    if source:
        metadata["source"] = source
    if waiting_for_human is not None and role == "user":
        metadata["waiting_for_human"] = waiting_for_human
    return {
        "id": message_id or str(uuid.uuid4()),
        "role": role,
        "parts": parts,
        "metadata": metadata,
    }


def text_part(text: str) -> dict[str, Any]:
    return {"type": TEXT, "text": text}


def tool_part(tool_call_id: str, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": TOOL_INVOCATION,
        "tool_call_id": tool_call_id,
        "tool_name": tool_name,
        "state": INPUT_AVAILABLE,
        "input": arguments,
    }


def with_output(part: dict[str, Any], output: Any, decision: str) -> dict[str, Any]:
    """Return a copy of a tool-invocation part with its result attached."""
    patched = dict(part)
    patched["state"] = OUTPUT_AVAILABLE
    patched["output"] = output
    patched["decision"] = decision
    return patched


def is_tool_part(part: dict[str, Any]) -> bool:
    return part.get("type") == TOOL_INVOCATION


def message_text(message: dict[str, Any]) -> str:
    return "".join(p.get("text", "") for p in message.get("parts", []) if p.get("type") == TEXT)


def find_index(messages: list[dict[str, Any]], message_id: str) -> int:
    for i, msg in enumerate(messages):
        if msg["id"] == message_id:
            return i
    return -1
