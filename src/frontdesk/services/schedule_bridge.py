"""Delivers fired scheduled tasks into their conversations."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .conversation import ConversationRegistry

logger = logging.getLogger(__name__)


class ScheduleBridge:
    def __init__(self, registry: ConversationRegistry, *, run_turns: bool = True) -> None:
        self._registry = registry
        self._run_turns = run_turns
        self.last_turn: asyncio.Task[None] | None = None

    async def on_scheduled_task_fired(self, conversation_id: str, description: str) -> dict[str, Any]:
        """Append the synthetic user message and, unless a human is expected, start a turn."""
        agent = self._registry.get(conversation_id)
        message = await agent.inject_scheduled_message(description)
        if await agent.is_waiting_for_human():
            logger.info("Scheduled task for %s queued behind human handoff", conversation_id)
            return message
        if self._run_turns:
            self.last_turn = agent.start_background_turn()
        return message
