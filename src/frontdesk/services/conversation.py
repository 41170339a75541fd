"""Per-conversation single-writer agent and the registry that hands them out."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, AsyncGenerator

from ..db import ThreadSafeConnection
from ..errors import NotFoundError, ValidationError
from ..tools import ToolContext
from ..tools.gate import blocking_calls
from . import handoff, storage
from .agent_loop import AgentEvent, run_agent_loop, to_model_messages
from .ai_service import AIService
from .event_bus import GLOBAL_CHANNEL, EventBus, conversation_channel
from .messages import find_index, new_message, text_part
from .stream_composer import StreamComposer
from .tool_executor import ToolExecutor

logger = logging.getLogger(__name__)

CONVERSATION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
SCHEDULED_PREFIX = "Running scheduled task: "


def validate_conversation_id(conversation_id: str) -> str:
    if not CONVERSATION_ID_RE.match(conversation_id or ""):
        raise ValidationError("Invalid conversation id")
    return conversation_id


class ConversationAgent:
    """Owns one conversation's log.

    Every read-modify-write of the log happens under ``_write_lock``. Turns
    are admitted one at a time through ``_turn_lock``; a second turn waits
    for the first to finish. New user, scheduled and operator messages also
    wait for the in-flight turn, so a turn's reply always directly follows
    the history it answered. Flagging and tool resolution only take the
    write lock; flagging the latest user message interrupts the turn and its
    automatic reply is discarded.
    """

    def __init__(
        self,
        conversation_id: str,
        db: ThreadSafeConnection,
        ai_service: AIService,
        executor: ToolExecutor,
        *,
        max_steps: int = 10,
        event_bus: EventBus | None = None,
        scheduler: Any = None,
    ) -> None:
        self.conversation_id = validate_conversation_id(conversation_id)
        self._db = db
        self._ai_service = ai_service
        self._executor = executor
        self._max_steps = max_steps
        self._event_bus = event_bus
        self._scheduler = scheduler
        self._write_lock = asyncio.Lock()
        self._turn_lock = asyncio.Lock()
        self._cancel_event: asyncio.Event | None = None
        self._background: set[asyncio.Task[None]] = set()

    @property
    def turn_in_progress(self) -> bool:
        return self._turn_lock.locked()

    # --- notifications ---

    async def _notify(self, event_type: str, data: dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        event = {"type": event_type, "data": {"conversation_id": self.conversation_id, **data}}
        await self._event_bus.publish(conversation_channel(self.conversation_id), event)
        await self._event_bus.publish(GLOBAL_CHANNEL, event)

    # --- log access ---

    def _exists(self) -> bool:
        return storage.get_conversation(self._db, self.conversation_id) is not None

    async def list_messages(self) -> list[dict[str, Any]]:
        if not self._exists():
            raise NotFoundError(f"Conversation {self.conversation_id} not found")
        return storage.list_messages(self._db, self.conversation_id)

    async def list_pending_messages(self) -> list[dict[str, Any]]:
        return handoff.pending_messages(await self.list_messages())

    async def is_waiting_for_human(self) -> bool:
        if not self._exists():
            return False
        return handoff.is_waiting_for_human(storage.list_messages(self._db, self.conversation_id))

    async def _append(self, message: dict[str, Any]) -> dict[str, Any]:
        async with self._turn_lock, self._write_lock:
            storage.get_or_create_conversation(self._db, self.conversation_id)
            current = storage.list_messages(self._db, self.conversation_id)
            if message["role"] == "user" and handoff.is_waiting_for_human(current):
                message = {**message, "metadata": {**message["metadata"], "waiting_for_human": True}}
            storage.append_message(self._db, self.conversation_id, message)
        await self._notify("message_added", {"message": message})
        return message

    # --- operations ---

    async def submit_user_message(self, text: str, *, source: str = "user") -> dict[str, Any]:
        if not text or not text.strip():
            raise ValidationError("Message text is required")
        return await self._append(new_message("user", [text_part(text)], source=source))

    async def inject_scheduled_message(self, description: str) -> dict[str, Any]:
        return await self.submit_user_message(f"{SCHEDULED_PREFIX}{description}", source="schedule")

    async def submit_manual_assistant_message(
        self,
        text: str,
        responding_to: str | None = None,
    ) -> dict[str, Any]:
        """Post an operator reply; the referenced message's wait flag is cleared in the same write."""
        if not text or not text.strip():
            raise ValidationError("Message text is required")
        message = new_message("assistant", [text_part(text)], source="operator")
        async with self._turn_lock, self._write_lock:
            storage.get_or_create_conversation(self._db, self.conversation_id)
            current = storage.list_messages(self._db, self.conversation_id)
            if responding_to:
                current = handoff.clear_waiting(current, responding_to)
            storage.replace_messages(self._db, self.conversation_id, current + [message])
        logger.info("Operator replied in conversation %s", self.conversation_id)
        await self._notify("message_added", {"message": message, "responding_to": responding_to})
        return message

    async def mark_waiting_for_human(self, message_id: str) -> dict[str, Any]:
        async with self._write_lock:
            current = await self.list_messages()
            idx = find_index(current, message_id)
            if idx != -1 and (current[idx].get("metadata") or {}).get("waiting_for_human") is True:
                return current[idx]
            patched = handoff.mark_waiting(current, message_id)
            storage.replace_messages(self._db, self.conversation_id, patched)
            if handoff.is_waiting_for_human(patched) and self._cancel_event is not None:
                logger.info("Interrupting the running turn in conversation %s for a human", self.conversation_id)
                self._cancel_event.set()
        message = patched[find_index(patched, message_id)]
        logger.info("Conversation %s message %s marked waiting for human", self.conversation_id, message_id)
        await self._notify("message_updated", {"message": message})
        return message

    async def resolve_tool_call(
        self,
        message_id: str,
        tool_call_id: str,
        approved: bool,
        result: Any = None,
    ) -> tuple[dict[str, Any], bool]:
        if approved and result is None:
            # Run the tool outside the write lock; resolve re-checks the part under it
            result = await self._executor.run_approved(
                await self.list_messages(), message_id, tool_call_id, context=self._tool_context()
            )
        async with self._write_lock:
            current = await self.list_messages()
            patched, changed = await self._executor.resolve(
                current,
                message_id,
                tool_call_id,
                approved=approved,
                result=result,
                context=self._tool_context(),
            )
            if changed:
                storage.replace_messages(self._db, self.conversation_id, patched)
        message = patched[find_index(patched, message_id)]
        if changed:
            await self._notify("message_updated", {"message": message})
        return message, changed

    def stop(self) -> bool:
        """Abort the in-flight turn. Returns False when no turn is running."""
        if self._cancel_event is None or self._cancel_event.is_set():
            return False
        self._cancel_event.set()
        logger.info("Stop requested for conversation %s", self.conversation_id)
        return True

    def _tool_context(self) -> ToolContext:
        return ToolContext(conversation_id=self.conversation_id, scheduler=self._scheduler)

    # --- turns ---

    async def _prepare_history(self) -> list[dict[str, Any]]:
        async with self._write_lock:
            current = storage.list_messages(self._db, self.conversation_id)
            cleaned, count = self._executor.cleanup(current)
            if count:
                storage.replace_messages(self._db, self.conversation_id, cleaned)
        return cleaned

    async def _persist_assistant(self, composer: StreamComposer) -> None:
        message = composer.assistant_message()
        if message is None:
            return
        async with self._write_lock:
            if handoff.is_waiting_for_human(storage.list_messages(self._db, self.conversation_id)):
                logger.warning(
                    "Discarded automatic reply %s in conversation %s: a human took over mid-turn",
                    message["id"],
                    self.conversation_id,
                )
                return
            storage.append_message(self._db, self.conversation_id, message)
        await self._notify("message_added", {"message": message, "finish_reason": composer.finish_reason})

    async def _abort_reason(self) -> str:
        return "waiting_for_human" if await self.is_waiting_for_human() else "aborted"

    async def run_turn(self) -> AsyncGenerator[dict[str, Any], None]:
        """Run one turn, yielding client events. The assistant message is stored when the turn ends."""
        async with self._turn_lock:
            cancel_event = asyncio.Event()
            self._cancel_event = cancel_event
            composer = StreamComposer(self.conversation_id)
            try:
                if not self._exists():
                    raise NotFoundError(f"Conversation {self.conversation_id} not found")
                if await self.is_waiting_for_human():
                    logger.info("Conversation %s is waiting for a human; no model call", self.conversation_id)
                    for event in composer.placeholder():
                        yield event
                    return

                history = await self._prepare_history()
                blocking = blocking_calls(history, self._executor.requires_confirmation)
                if blocking:
                    for event in composer.blocked(blocking):
                        yield event
                    return

                for event in composer.start():
                    yield event
                try:
                    async for agent_event in run_agent_loop(
                        self._ai_service,
                        to_model_messages(history),
                        self._executor,
                        self._executor.registry.get_openai_tools(),
                        cancel_event=cancel_event,
                        max_steps=self._max_steps,
                        context=self._tool_context(),
                    ):
                        if agent_event.kind == "done" and agent_event.data.get("reason") == "aborted":
                            agent_event = AgentEvent(kind="done", data={"reason": await self._abort_reason()})
                        for event in composer.compose(agent_event):
                            yield event
                except Exception:
                    logger.exception("Turn failed in conversation %s", self.conversation_id)
                    for event in composer.error("Internal error during generation") + composer.finish("error"):
                        yield event

                for event in composer.finish(await self._abort_reason() if cancel_event.is_set() else "stop"):
                    yield event
            finally:
                self._cancel_event = None
                await asyncio.shield(self._persist_assistant(composer))

    async def _consume_background_turn(self) -> None:
        try:
            async for event in self.run_turn():
                if self._event_bus is not None:
                    await self._event_bus.publish(
                        conversation_channel(self.conversation_id), {"type": event["type"], "data": event}
                    )
        except Exception:
            logger.exception("Background turn failed in conversation %s", self.conversation_id)

    def start_background_turn(self) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(self._consume_background_turn())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def close(self) -> None:
        self.stop()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass


class ConversationRegistry:
    """Maps conversation ids to their single agent instance."""

    def __init__(
        self,
        db: ThreadSafeConnection,
        ai_service: AIService,
        executor: ToolExecutor,
        *,
        max_steps: int = 10,
        event_bus: EventBus | None = None,
        scheduler: Any = None,
    ) -> None:
        self._db = db
        self._ai_service = ai_service
        self._executor = executor
        self._max_steps = max_steps
        self._event_bus = event_bus
        self.scheduler = scheduler
        self._agents: dict[str, ConversationAgent] = {}

    def get(self, conversation_id: str) -> ConversationAgent:
        validate_conversation_id(conversation_id)
        agent = self._agents.get(conversation_id)
        if agent is None:
            agent = ConversationAgent(
                conversation_id,
                self._db,
                self._ai_service,
                self._executor,
                max_steps=self._max_steps,
                event_bus=self._event_bus,
                scheduler=self.scheduler,
            )
            self._agents[conversation_id] = agent
        return agent

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    async def close(self) -> None:
        for agent in list(self._agents.values()):
            await agent.close()
