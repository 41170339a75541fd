"""SQLite data access layer for conversations, the message log and scheduled tasks."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from ..db import ThreadSafeConnection
from ..errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uuid() -> str:
    return str(uuid.uuid4())


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        logger.error("Storage failure while %s: %s", action, e)
        raise StorageError(f"Storage failure while {action}") from e


# --- Conversations ---


def get_conversation(db: ThreadSafeConnection, conversation_id: str) -> dict[str, Any] | None:
    with _storage_errors("reading conversation"):
        row = db.execute_fetchone("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
    if not row:
        return None
    return dict(row)


def get_or_create_conversation(db: ThreadSafeConnection, conversation_id: str) -> dict[str, Any]:
    now = _now()
    with _storage_errors("creating conversation"), db.transaction() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO conversations (id, created_at, updated_at) VALUES (?, ?, ?)",
            (conversation_id, now, now),
        )
    conv = get_conversation(db, conversation_id)
    if conv is None:
        raise StorageError(f"Conversation {conversation_id} was not persisted")
    return conv


# --- Messages ---


def _row_to_message(row: sqlite3.Row) -> dict[str, Any]:
    metadata = json.loads(row["metadata_json"] or "{}")
    metadata.setdefault("created_at", row["created_at"])
    return {
        "id": row["id"],
        "role": row["role"],
        "parts": json.loads(row["parts_json"] or "[]"),
        "metadata": metadata,
    }


def _select_messages(conn: sqlite3.Connection, conversation_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM messages WHERE conversation_id = ? ORDER BY position",
        (conversation_id,),
    ).fetchall()
    return [_row_to_message(r) for r in rows]


def _insert_message(conn: sqlite3.Connection, conversation_id: str, message: dict[str, Any], position: int) -> None:
    metadata = message.get("metadata") or {}
    conn.execute(
        "INSERT INTO messages (id, conversation_id, role, parts_json, metadata_json, created_at, position)"
        " VALUES (?, ?, ?, ?, ?, ?, ?)",
        (
            message["id"],
            conversation_id,
            message["role"],
            json.dumps(message.get("parts", [])),
            json.dumps(metadata),
            metadata.get("created_at") or _now(),
            position,
        ),
    )


def _require_conversation(conn: sqlite3.Connection, conversation_id: str) -> None:
    row = conn.execute("SELECT id FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
    if not row:
        raise NotFoundError(f"Conversation {conversation_id} not found")


def list_messages(db: ThreadSafeConnection, conversation_id: str) -> list[dict[str, Any]]:
    with _storage_errors("listing messages"):
        rows = db.execute_fetchall(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY position",
            (conversation_id,),
        )
    return [_row_to_message(r) for r in rows]


def append_message(
    db: ThreadSafeConnection,
    conversation_id: str,
    message: dict[str, Any],
) -> list[dict[str, Any]]:
    """Add a message at the tail of the log and return the full ordered log.

    Re-appending a message whose id is already stored is a no-op, so a retried
    append after an ambiguous failure cannot duplicate it.
    """
    now = _now()
    with _storage_errors("appending message"), db.transaction() as conn:
        _require_conversation(conn, conversation_id)
        existing = conn.execute(
            "SELECT conversation_id FROM messages WHERE id = ?",
            (message["id"],),
        ).fetchone()
        if existing:
            if existing["conversation_id"] != conversation_id:
                raise StorageError(f"Message id {message['id']} belongs to another conversation")
            logger.info("Append of existing message %s ignored", message["id"])
        else:
            pos_row = conn.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            _insert_message(conn, conversation_id, message, pos_row[0])
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, conversation_id),
            )
        return _select_messages(conn, conversation_id)


def replace_messages(
    db: ThreadSafeConnection,
    conversation_id: str,
    messages: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Atomically swap the stored log for ``messages``.

    ``messages`` must start with every stored message, in stored order, with
    unchanged ids and roles. New messages may follow. Anything that would drop
    or reorder history is rejected before a row is written.
    """
    now = _now()
    with _storage_errors("replacing messages"), db.transaction() as conn:
        _require_conversation(conn, conversation_id)
        stored = conn.execute(
            "SELECT id, role, position FROM messages WHERE conversation_id = ? ORDER BY position",
            (conversation_id,),
        ).fetchall()
        if len(messages) < len(stored):
            raise StorageError("Replacement would drop messages from the log")
        for row, msg in zip(stored, messages):
            if row["id"] != msg["id"] or row["role"] != msg["role"]:
                raise StorageError("Replacement would reorder or rewrite message identity")

        for msg in messages[: len(stored)]:
            conn.execute(
                "UPDATE messages SET parts_json = ?, metadata_json = ? WHERE id = ?",
                (json.dumps(msg.get("parts", [])), json.dumps(msg.get("metadata") or {}), msg["id"]),
            )
        next_position = stored[-1]["position"] + 1 if stored else 0
        for offset, msg in enumerate(messages[len(stored) :]):
            _insert_message(conn, conversation_id, msg, next_position + offset)

        conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id))
        return _select_messages(conn, conversation_id)


# --- Scheduled tasks ---


def create_scheduled_task(
    db: ThreadSafeConnection,
    conversation_id: str,
    description: str,
    run_at: datetime,
) -> dict[str, Any]:
    tid = _uuid()
    now = _now()
    with _storage_errors("creating scheduled task"), db.transaction() as conn:
        _require_conversation(conn, conversation_id)
        conn.execute(
            "INSERT INTO scheduled_tasks (id, conversation_id, description, run_at, status, created_at)"
            " VALUES (?, ?, ?, ?, 'pending', ?)",
            (tid, conversation_id, description, run_at.isoformat(), now),
        )
    return {
        "id": tid,
        "conversation_id": conversation_id,
        "description": description,
        "run_at": run_at.isoformat(),
        "status": "pending",
        "created_at": now,
        "fired_at": None,
    }


def get_scheduled_task(db: ThreadSafeConnection, task_id: str) -> dict[str, Any] | None:
    with _storage_errors("reading scheduled task"):
        row = db.execute_fetchone("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,))
    return dict(row) if row else None


def list_scheduled_tasks(
    db: ThreadSafeConnection,
    conversation_id: str | None = None,
    status: str = "pending",
) -> list[dict[str, Any]]:
    with _storage_errors("listing scheduled tasks"):
        if conversation_id:
            rows = db.execute_fetchall(
                "SELECT * FROM scheduled_tasks WHERE conversation_id = ? AND status = ? ORDER BY run_at",
                (conversation_id, status),
            )
        else:
            rows = db.execute_fetchall(
                "SELECT * FROM scheduled_tasks WHERE status = ? ORDER BY run_at",
                (status,),
            )
    return [dict(r) for r in rows]


def mark_task_fired(db: ThreadSafeConnection, task_id: str) -> bool:
    """Claim a pending task for delivery. Only the first caller gets True."""
    with _storage_errors("marking scheduled task fired"), db.transaction() as conn:
        cursor = conn.execute(
            "UPDATE scheduled_tasks SET status = 'fired', fired_at = ? WHERE id = ? AND status = 'pending'",
            (_now(), task_id),
        )
        return cursor.rowcount == 1


def cancel_scheduled_task(db: ThreadSafeConnection, conversation_id: str, task_id: str) -> bool:
    with _storage_errors("cancelling scheduled task"), db.transaction() as conn:
        cursor = conn.execute(
            "UPDATE scheduled_tasks SET status = 'cancelled'"
            " WHERE id = ? AND conversation_id = ? AND status = 'pending'",
            (task_id, conversation_id),
        )
        return cursor.rowcount == 1
