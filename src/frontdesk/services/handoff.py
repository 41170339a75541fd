"""Human handoff state derived from the message log.

A conversation is waiting for a human when its last message is a user message
flagged ``waiting_for_human``. Flagging an older user message is recorded but
does not change the derived state. The operator's manual assistant reply ends
the wait because it becomes the newest message.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from ..errors import NotFoundError, ValidationError
from .messages import find_index, message_text


class HandoffState(str, Enum):
    NORMAL = "normal"
    WAITING_FOR_HUMAN = "waiting_for_human"


def _flagged(message: dict[str, Any]) -> bool:
    return message.get("role") == "user" and (message.get("metadata") or {}).get("waiting_for_human") is True


def state_of(messages: list[dict[str, Any]]) -> HandoffState:
    if messages and _flagged(messages[-1]):
        return HandoffState.WAITING_FOR_HUMAN
    return HandoffState.NORMAL


def is_waiting_for_human(messages: list[dict[str, Any]]) -> bool:
    return state_of(messages) is HandoffState.WAITING_FOR_HUMAN


def _set_flag(messages: list[dict[str, Any]], message_id: str, value: bool) -> list[dict[str, Any]]:
    idx = find_index(messages, message_id)
    if idx == -1:
        raise NotFoundError(f"Message {message_id} not found")
    target = messages[idx]
    if target["role"] != "user":
        raise ValidationError("Only user messages can wait for a human")
    patched = list(messages)
    patched[idx] = {**target, "metadata": {**(target.get("metadata") or {}), "waiting_for_human": value}}
    return patched


def mark_waiting(messages: list[dict[str, Any]], message_id: str) -> list[dict[str, Any]]:
    """Copy of the log with ``waiting_for_human`` set on one user message."""
    return _set_flag(messages, message_id, True)


def clear_waiting(messages: list[dict[str, Any]], message_id: str) -> list[dict[str, Any]]:
    """Copy of the log with ``waiting_for_human`` cleared on one user message."""
    return _set_flag(messages, message_id, False)


def pending_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """User messages without a directly following assistant reply, or explicitly flagged."""
    pending = []
    for i, msg in enumerate(messages):
        if msg["role"] != "user":
            continue
        next_msg = messages[i + 1] if i + 1 < len(messages) else None
        has_response = next_msg is not None and next_msg["role"] == "assistant"
        waiting = _flagged(msg)
        if not has_response or waiting:
            pending.append(
                {
                    "id": msg["id"],
                    "text": message_text(msg),
                    "created_at": (msg.get("metadata") or {}).get("created_at"),
                    "waiting_for_human": waiting,
                }
            )
    return pending
