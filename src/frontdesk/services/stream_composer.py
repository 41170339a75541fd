"""Per-turn output sequencing and assistant message assembly."""

from __future__ import annotations

import uuid
from typing import Any

from .agent_loop import AgentEvent
from .messages import new_message, text_part, tool_part, with_output

FINISH_REASONS = frozenset(
    {"stop", "awaiting_confirmation", "step_limit", "aborted", "error", "waiting_for_human", "blocked"}
)


class StreamComposer:
    """Turns agent events into client events with strictly increasing ``seq``.

    The composer also keeps the parts of the assistant message being built,
    in the order their events were emitted. After ``finish`` nothing else is
    emitted.
    """

    def __init__(self, conversation_id: str, message_id: str | None = None) -> None:
        self.conversation_id = conversation_id
        self.message_id = message_id or str(uuid.uuid4())
        self._seq = 0
        self._parts: list[dict[str, Any]] = []
        self._started = False
        self.finish_reason: str | None = None

    @property
    def finished(self) -> bool:
        return self.finish_reason is not None

    def _emit(self, kind: str, **data: Any) -> dict[str, Any]:
        self._seq += 1
        return {"seq": self._seq, "type": kind, "conversation_id": self.conversation_id, **data}

    def start(self) -> list[dict[str, Any]]:
        if self._started:
            return []
        self._started = True
        return [self._emit("start", message_id=self.message_id)]

    def finish(self, reason: str) -> list[dict[str, Any]]:
        if self.finished:
            return []
        if reason not in FINISH_REASONS:
            raise ValueError(f"Unknown finish reason: {reason!r}")
        self.finish_reason = reason
        return [self._emit("finish", message_id=self.message_id, reason=reason)]

    def error(self, message: str, code: str = "internal_error") -> list[dict[str, Any]]:
        if self.finished:
            return []
        return [self._emit("error", message=message, code=code)]

    def placeholder(self) -> list[dict[str, Any]]:
        """Stream for a turn attempted while a human is expected to answer."""
        events = [self._emit("handoff", state="waiting_for_human")]
        return events + self.finish("waiting_for_human")

    def blocked(self, statuses: list[Any]) -> list[dict[str, Any]]:
        """Stream for a turn that cannot start because confirmations are outstanding."""
        events = [
            self._emit(
                "tool_confirmation_required",
                message_id=s.message_id,
                tool_call_id=s.tool_call_id,
                tool_name=s.tool_name,
            )
            for s in statuses
        ]
        return events + self.finish("blocked")

    def _find_tool_part(self, tool_call_id: str) -> int:
        for i, part in enumerate(self._parts):
            if part.get("tool_call_id") == tool_call_id:
                return i
        return -1

    def compose(self, event: AgentEvent) -> list[dict[str, Any]]:
        if self.finished:
            return []
        events = self.start()
        kind, data = event.kind, event.data

        if kind == "token":
            delta = data.get("content", "")
            if not delta:
                return events
            if self._parts and self._parts[-1]["type"] == "text":
                self._parts[-1] = text_part(self._parts[-1]["text"] + delta)
            else:
                self._parts.append(text_part(delta))
            events.append(self._emit("text_delta", message_id=self.message_id, delta=delta))

        elif kind == "tool_call_start":
            if self._find_tool_part(data["id"]) != -1:
                return events
            self._parts.append(tool_part(data["id"], data["tool_name"], data.get("arguments") or {}))
            events.append(
                self._emit(
                    "tool_input_available",
                    message_id=self.message_id,
                    tool_call_id=data["id"],
                    tool_name=data["tool_name"],
                    input=data.get("arguments") or {},
                    needs_confirmation=bool(data.get("needs_confirmation")),
                )
            )

        elif kind == "tool_call_end":
            idx = self._find_tool_part(data["id"])
            if idx == -1:
                return events
            self._parts[idx] = with_output(self._parts[idx], data.get("output"), "auto")
            events.append(
                self._emit(
                    "tool_output_available",
                    message_id=self.message_id,
                    tool_call_id=data["id"],
                    output=data.get("output"),
                    status=data.get("status", "success"),
                )
            )

        elif kind == "confirmation_required":
            events.append(
                self._emit(
                    "tool_confirmation_required",
                    message_id=self.message_id,
                    tool_call_id=data["id"],
                    tool_name=data["tool_name"],
                )
            )

        elif kind == "error":
            events.extend(self.error(data.get("message", "Unknown error"), data.get("code", "internal_error")))

        elif kind == "done":
            events.extend(self.finish(data.get("reason", "stop")))

        return events

    def assistant_message(self) -> dict[str, Any] | None:
        """The assembled assistant message, or None when the turn produced nothing."""
        if not self._parts:
            return None
        return new_message("assistant", [dict(p) for p in self._parts], source="model", message_id=self.message_id)
