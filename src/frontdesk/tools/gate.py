"""Tool confirmation gate.

Pure functions with no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Collection

from ..services.messages import OUTPUT_AVAILABLE, is_tool_part


@dataclass(frozen=True)
class ToolCallStatus:
    message_id: str
    tool_call_id: str
    tool_name: str
    needs_confirmation: bool
    is_resolved: bool

    @property
    def is_blocking(self) -> bool:
        return self.needs_confirmation and not self.is_resolved

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "needs_confirmation": self.needs_confirmation,
            "is_resolved": self.is_resolved,
        }


def needs_confirmation(tool_name: str, requires_confirmation: Collection[str]) -> bool:
    return tool_name in requires_confirmation


def is_resolved(part: dict[str, Any]) -> bool:
    return part.get("state") == OUTPUT_AVAILABLE


def inspect_message(message: dict[str, Any], requires_confirmation: Collection[str]) -> list[ToolCallStatus]:
    """Classify every tool-invocation fragment of a message."""
    return [
        ToolCallStatus(
            message_id=message["id"],
            tool_call_id=part["tool_call_id"],
            tool_name=part["tool_name"],
            needs_confirmation=needs_confirmation(part["tool_name"], requires_confirmation),
            is_resolved=is_resolved(part),
        )
        for part in message.get("parts", [])
        if is_tool_part(part)
    ]


def blocking_calls(
    messages: list[dict[str, Any]],
    requires_confirmation: Collection[str],
) -> list[ToolCallStatus]:
    """Unresolved confirmation-required calls. A new turn must not start while any exist."""
    return [s for msg in messages for s in inspect_message(msg, requires_confirmation) if s.is_blocking]


def dangling_calls(
    messages: list[dict[str, Any]],
    requires_confirmation: Collection[str],
) -> list[ToolCallStatus]:
    """Unresolved calls to tools that should have executed automatically."""
    return [
        s
        for msg in messages
        for s in inspect_message(msg, requires_confirmation)
        if not s.needs_confirmation and not s.is_resolved
    ]
