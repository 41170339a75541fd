"""Scheduling tools: create, list and cancel tasks for the current conversation."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

SCHEDULE_DEFINITION: dict[str, Any] = {
    "name": "scheduleTask",
    "description": (
        "Schedule a task to run later in this conversation. When it fires, a message "
        "'Running scheduled task: <description>' is added and you carry it out."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "description": {"type": "string", "description": "What to do when the task fires"},
            "when": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["scheduled", "delayed", "cron", "no-schedule"]},
                    "date": {"type": "string", "description": "ISO 8601 date-time, for type 'scheduled'"},
                    "delayInSeconds": {"type": "integer", "description": "Delay, for type 'delayed'"},
                    "cron": {"type": "string", "description": "Cron expression (not supported)"},
                },
                "required": ["type"],
            },
        },
        "required": ["description", "when"],
    },
}

LIST_DEFINITION: dict[str, Any] = {
    "name": "getScheduledTasks",
    "description": "List the tasks scheduled in this conversation that have not fired yet.",
    "parameters": {"type": "object", "properties": {}},
}

CANCEL_DEFINITION: dict[str, Any] = {
    "name": "cancelScheduledTask",
    "description": "Cancel a scheduled task by its id.",
    "parameters": {
        "type": "object",
        "properties": {"taskId": {"type": "string", "description": "Id returned by scheduleTask"}},
        "required": ["taskId"],
    },
}


def _parse_date(raw: str) -> datetime:
    value = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


async def handle_schedule(
    description: str = "",
    when: dict[str, Any] | None = None,
    _context: Any = None,
    **_: Any,
) -> dict[str, Any]:
    if _context is None or _context.scheduler is None:
        return {"error": "Scheduling is not available"}
    if not description.strip():
        return {"error": "description is required"}

    when = when or {}
    kind = when.get("type")
    if kind == "scheduled":
        try:
            run_at = _parse_date(str(when.get("date", "")))
        except ValueError:
            return {"error": f"Invalid date: {when.get('date')!r}. Use ISO 8601."}
        task = _context.scheduler.schedule(_context.conversation_id, description, run_at=run_at)
    elif kind == "delayed":
        try:
            delay = int(when.get("delayInSeconds", 0))
        except (ValueError, TypeError):
            return {"error": "delayInSeconds must be an integer"}
        if delay < 0:
            return {"error": "delayInSeconds must not be negative"}
        task = _context.scheduler.schedule(_context.conversation_id, description, delay_seconds=delay)
    elif kind == "cron":
        return {"error": "Recurring cron schedules are not supported"}
    else:
        return {"error": "Not a valid schedule input"}

    return {
        "task_id": task["id"],
        "run_at": task["run_at"],
        "message": f"Task scheduled for {task['run_at']}: {description}",
    }


async def handle_list(_context: Any = None, **_: Any) -> dict[str, Any]:
    if _context is None or _context.scheduler is None:
        return {"error": "Scheduling is not available"}
    tasks = _context.scheduler.list_tasks(_context.conversation_id)
    return {
        "tasks": [{"id": t["id"], "description": t["description"], "run_at": t["run_at"]} for t in tasks],
        "count": len(tasks),
    }


async def handle_cancel(taskId: str = "", _context: Any = None, **_: Any) -> dict[str, Any]:  # noqa: N803
    if _context is None or _context.scheduler is None:
        return {"error": "Scheduling is not available"}
    if not _context.scheduler.cancel(_context.conversation_id, taskId):
        return {"error": f"No pending task with id {taskId!r}"}
    return {"cancelled": taskId}
