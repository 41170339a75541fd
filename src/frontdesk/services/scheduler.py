"""Persistent one-shot task scheduler armed on the asyncio loop."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from ..db import ThreadSafeConnection
from ..errors import ValidationError
from . import storage

logger = logging.getLogger(__name__)

FiredCallback = Callable[[str, str], Awaitable[None]]


def _parse_run_at(value: str) -> datetime:
    run_at = datetime.fromisoformat(value)
    if run_at.tzinfo is None:
        run_at = run_at.replace(tzinfo=timezone.utc)
    return run_at


class TaskScheduler:
    """Runs "at time T" and "after N seconds" tasks for conversations.

    Tasks live in the ``scheduled_tasks`` table so they survive restarts.
    Each pending task has one asyncio timer; when it expires the row is
    claimed with ``mark_task_fired`` before ``on_fired`` is awaited, so a
    task is delivered at most once even if it is armed twice.
    """

    def __init__(self, db: ThreadSafeConnection, on_fired: FiredCallback | None = None) -> None:
        self._db = db
        self._on_fired = on_fired
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._running = False

    def set_callback(self, on_fired: FiredCallback) -> None:
        self._on_fired = on_fired

    def start(self) -> None:
        """Arm every pending task. Past-due tasks fire right away."""
        if self._running:
            return
        self._running = True
        pending = storage.list_scheduled_tasks(self._db)
        for task in pending:
            self._arm(task)
        logger.info("Task scheduler started with %d pending task(s)", len(pending))

    async def stop(self) -> None:
        self._running = False
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        for timer in timers:
            try:
                await timer
            except asyncio.CancelledError:
                pass
        logger.info("Task scheduler stopped")

    def schedule(
        self,
        conversation_id: str,
        description: str,
        *,
        run_at: datetime | None = None,
        delay_seconds: float | None = None,
    ) -> dict[str, Any]:
        if (run_at is None) == (delay_seconds is None):
            raise ValidationError("Provide exactly one of run_at or delay_seconds")
        if delay_seconds is not None:
            if delay_seconds < 0:
                raise ValidationError("delay_seconds must not be negative")
            run_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        elif run_at.tzinfo is None:
            run_at = run_at.replace(tzinfo=timezone.utc)

        task = storage.create_scheduled_task(self._db, conversation_id, description, run_at)
        logger.info("Scheduled task %s for conversation %s at %s", task["id"], conversation_id, task["run_at"])
        if self._running:
            self._arm(task)
        return task

    def list_tasks(self, conversation_id: str) -> list[dict[str, Any]]:
        return storage.list_scheduled_tasks(self._db, conversation_id)

    def cancel(self, conversation_id: str, task_id: str) -> bool:
        cancelled = storage.cancel_scheduled_task(self._db, conversation_id, task_id)
        timer = self._timers.pop(task_id, None)
        if cancelled and timer is not None:
            timer.cancel()
        if cancelled:
            logger.info("Cancelled scheduled task %s", task_id)
        return cancelled

    def _arm(self, task: dict[str, Any]) -> None:
        if task["id"] in self._timers:
            return
        delay = (_parse_run_at(task["run_at"]) - datetime.now(timezone.utc)).total_seconds()
        self._timers[task["id"]] = asyncio.get_running_loop().create_task(
            self._fire_after(task["id"], task["conversation_id"], task["description"], max(0.0, delay))
        )

    async def _fire_after(self, task_id: str, conversation_id: str, description: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(task_id, None)
        await self.fire(task_id, conversation_id, description)

    async def fire(self, task_id: str, conversation_id: str, description: str) -> bool:
        """Deliver one task now. Returns False if it was already delivered or cancelled."""
        if not storage.mark_task_fired(self._db, task_id):
            logger.debug("Task %s already claimed; skipping", task_id)
            return False
        logger.info("Firing scheduled task %s for conversation %s", task_id, conversation_id)
        if self._on_fired is None:
            logger.warning("No handler for fired task %s", task_id)
            return True
        try:
            await self._on_fired(conversation_id, description)
        except Exception:
            logger.exception("Scheduled task %s handler failed", task_id)
        return True
