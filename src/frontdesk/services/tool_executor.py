"""Tool execution: the auto path, confirmation resolution and dangling-call cleanup."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..errors import NotFoundError, StaleToolCallError, ValidationError
from ..tools import ToolContext, ToolRegistry
from ..tools.gate import dangling_calls, is_resolved
from .messages import find_index, is_tool_part, with_output

logger = logging.getLogger(__name__)

DENIED_RESULT = {"error": "User denied access to tool execution"}
INTERRUPTED_RESULT = {"error": "Tool call was interrupted before producing a result"}


class ToolExecutor:
    def __init__(self, registry: ToolRegistry, timeout: float = 30.0) -> None:
        self._registry = registry
        self._timeout = timeout

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def requires_confirmation(self) -> frozenset[str]:
        return self._registry.requires_confirmation

    async def execute(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        context: ToolContext | None = None,
    ) -> tuple[Any, str]:
        """Run a tool now. Returns (output, status); failures become error outputs."""
        try:
            result = await asyncio.wait_for(
                self._registry.call_tool(tool_name, arguments, context=context),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.0fs", tool_name, self._timeout)
            return {"error": f"Tool '{tool_name}' timed out"}, "error"
        except Exception as e:
            logger.warning("Tool %s failed: %s", tool_name, e)
            return {"error": str(e)}, "error"
        status = "error" if isinstance(result, dict) and "error" in result else "success"
        return result, status

    def cleanup(self, messages: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], int]:
        """Attach an error result to every unresolved call that should have auto-executed.

        Such calls are left behind when a turn is aborted between the model
        requesting a tool and the tool finishing. Confirmation-required calls
        are untouched: they are waiting on a person.
        """
        dangling = dangling_calls(messages, self.requires_confirmation)
        if not dangling:
            return messages, 0

        targets = {(s.message_id, s.tool_call_id) for s in dangling}
        patched: list[dict[str, Any]] = []
        for msg in messages:
            if not any(mid == msg["id"] for mid, _ in targets):
                patched.append(msg)
                continue
            parts = [
                with_output(p, dict(INTERRUPTED_RESULT), "interrupted")
                if is_tool_part(p) and (msg["id"], p["tool_call_id"]) in targets
                else p
                for p in msg["parts"]
            ]
            patched.append({**msg, "parts": parts})

        for s in dangling:
            logger.warning("Synthesized error result for interrupted tool call %s (%s)", s.tool_call_id, s.tool_name)
        return patched, len(dangling)

    def _locate(self, messages: list[dict[str, Any]], message_id: str, tool_call_id: str) -> tuple[int, int]:
        idx = find_index(messages, message_id)
        if idx == -1:
            raise NotFoundError(f"Message {message_id} not found")
        parts = messages[idx]["parts"]
        part_idx = next(
            (i for i, p in enumerate(parts) if is_tool_part(p) and p["tool_call_id"] == tool_call_id),
            -1,
        )
        if part_idx == -1:
            raise NotFoundError(f"Tool call {tool_call_id} not found in message {message_id}")
        tool_name = parts[part_idx]["tool_name"]
        if not self._registry.needs_confirmation(tool_name):
            raise ValidationError(f"Tool '{tool_name}' does not require confirmation")
        return idx, part_idx

    async def run_approved(
        self,
        messages: list[dict[str, Any]],
        message_id: str,
        tool_call_id: str,
        *,
        context: ToolContext | None = None,
    ) -> Any:
        """Execute an approved call against a snapshot of the log and return its output.

        Nothing is patched; pass the output to ``resolve`` as the result. A call
        that is already resolved is not run again: an approved one returns its
        stored output and a declined one returns None.
        """
        idx, part_idx = self._locate(messages, message_id, tool_call_id)
        part = messages[idx]["parts"][part_idx]
        if is_resolved(part):
            return part.get("output") if part.get("decision") == "approved" else None
        if not self._registry.has_tool(part["tool_name"]):
            return None
        output, _status = await self.execute(part["tool_name"], part.get("input") or {}, context=context)
        return output

    async def resolve(
        self,
        messages: list[dict[str, Any]],
        message_id: str,
        tool_call_id: str,
        *,
        approved: bool,
        result: Any = None,
        context: ToolContext | None = None,
    ) -> tuple[list[dict[str, Any]], bool]:
        """Patch the decision for a confirmation-required call into a copy of the log.

        Returns (messages, changed). Repeating an identical resolution returns
        the log unchanged; a conflicting one raises StaleToolCallError.
        """
        idx, part_idx = self._locate(messages, message_id, tool_call_id)
        message = messages[idx]
        part = message["parts"][part_idx]

        decision = "approved" if approved else "declined"
        if is_resolved(part):
            same_decision = part.get("decision") == decision
            same_payload = not approved or result is None or part.get("output") == result
            if same_decision and same_payload:
                logger.info("Tool call %s already resolved (%s); nothing to do", tool_call_id, decision)
                return messages, False
            raise StaleToolCallError(tool_call_id)

        if not approved:
            output: Any = dict(DENIED_RESULT)
        elif result is not None:
            output = result
        elif self._registry.has_tool(part["tool_name"]):
            output, _status = await self.execute(part["tool_name"], part.get("input") or {}, context=context)
        else:
            raise ValidationError(f"Tool '{part['tool_name']}' has no execution; provide a result")

        parts = list(message["parts"])
        parts[part_idx] = with_output(part, output, decision)
        patched = list(messages)
        patched[idx] = {**message, "parts": parts}
        logger.info("Tool call %s (%s) resolved: %s", tool_call_id, part["tool_name"], decision)
        return patched, True
