"""Built-in tool registry in OpenAI function-call format."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Iterable

from .gate import needs_confirmation

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Coroutine[Any, Any, dict[str, Any]]]


@dataclass
class ToolContext:
    """Per-call context handed to tools that act on their own conversation."""

    conversation_id: str
    scheduler: Any = None


class ToolRegistry:
    """Registry of tools plus the read-only set of tools that need confirmation."""

    def __init__(self, requires_confirmation: Iterable[str] = ()) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._definitions: dict[str, dict[str, Any]] = {}
        self._requires_confirmation = frozenset(requires_confirmation)

    @property
    def requires_confirmation(self) -> frozenset[str]:
        return self._requires_confirmation

    def needs_confirmation(self, name: str) -> bool:
        return needs_confirmation(name, self._requires_confirmation)

    def register(self, name: str, handler: ToolHandler, definition: dict[str, Any]) -> None:
        self._handlers[name] = handler
        self._definitions[name] = definition

    def has_tool(self, name: str) -> bool:
        return name in self._handlers

    def get_openai_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": defn.get("description", ""),
                    "parameters": defn.get("parameters", {}),
                },
            }
            for name, defn in self._definitions.items()
        ]

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolContext | None = None,
    ) -> dict[str, Any]:
        handler = self._handlers.get(name)
        if not handler:
            raise ValueError(f"Unknown tool: {name}")
        return await handler(**arguments, _context=context)

    def list_tools(self) -> list[str]:
        return list(self._handlers.keys())


def register_default_tools(registry: ToolRegistry, disabled: Iterable[str] = ()) -> None:
    """Register all built-in tools except the disabled ones."""
    from . import local_time, schedule, weather

    skip = set(disabled)
    entries = [
        (weather.DEFINITION, weather.handle),
        (local_time.DEFINITION, local_time.handle),
        (schedule.SCHEDULE_DEFINITION, schedule.handle_schedule),
        (schedule.LIST_DEFINITION, schedule.handle_list),
        (schedule.CANCEL_DEFINITION, schedule.handle_cancel),
    ]
    for defn, handler in entries:
        if defn["name"] in skip:
            logger.info("Tool disabled by config: %s", defn["name"])
            continue
        registry.register(defn["name"], handler, defn)
