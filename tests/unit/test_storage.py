"""Tests for the message log and scheduled task storage."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from frontdesk.db import ThreadSafeConnection, connect_memory, init_db
from frontdesk.errors import NotFoundError, StorageError
from frontdesk.services.messages import new_message, text_part, tool_part, with_output
from frontdesk.services.storage import (
    append_message,
    cancel_scheduled_task,
    create_scheduled_task,
    get_conversation,
    get_or_create_conversation,
    get_scheduled_task,
    list_messages,
    list_scheduled_tasks,
    mark_task_fired,
    replace_messages,
)


@pytest.fixture()
def db() -> ThreadSafeConnection:
    conn = connect_memory()
    get_or_create_conversation(conn, "conv-1")
    return conn


def _user(text: str) -> dict:
    return new_message("user", [text_part(text)])


class TestConversations:
    def test_get_or_create_is_stable(self, db: ThreadSafeConnection) -> None:
        first = get_or_create_conversation(db, "conv-2")
        second = get_or_create_conversation(db, "conv-2")
        assert first["id"] == second["id"] == "conv-2"
        assert first["created_at"] == second["created_at"]

    def test_get_unknown_returns_none(self, db: ThreadSafeConnection) -> None:
        assert get_conversation(db, "missing") is None


class TestAppend:
    def test_append_returns_ordered_log(self, db: ThreadSafeConnection) -> None:
        a, b = _user("one"), _user("two")
        append_message(db, "conv-1", a)
        log = append_message(db, "conv-1", b)
        assert [m["id"] for m in log] == [a["id"], b["id"]]
        assert log[1]["parts"] == [{"type": "text", "text": "two"}]

    def test_append_is_idempotent_by_id(self, db: ThreadSafeConnection) -> None:
        msg = _user("hello")
        append_message(db, "conv-1", msg)
        log = append_message(db, "conv-1", msg)
        assert len(log) == 1

    def test_append_to_unknown_conversation_raises(self, db: ThreadSafeConnection) -> None:
        with pytest.raises(NotFoundError):
            append_message(db, "nope", _user("hi"))

    def test_append_id_from_other_conversation_rejected(self, db: ThreadSafeConnection) -> None:
        get_or_create_conversation(db, "conv-2")
        msg = _user("hi")
        append_message(db, "conv-1", msg)
        with pytest.raises(StorageError):
            append_message(db, "conv-2", msg)
        assert list_messages(db, "conv-2") == []

    def test_metadata_round_trips(self, db: ThreadSafeConnection) -> None:
        msg = new_message("user", [text_part("hi")], source="schedule", waiting_for_human=True)
        append_message(db, "conv-1", msg)
        stored = list_messages(db, "conv-1")[0]
        assert stored["metadata"]["source"] == "schedule"
        assert stored["metadata"]["waiting_for_human"] is True


class TestReplace:
    def test_replace_patches_parts_and_appends_tail(self, db: ThreadSafeConnection) -> None:
        part = tool_part("call-1", "getWeatherInformation", {"city": "Paris"})
        assistant = new_message("assistant", [part])
        append_message(db, "conv-1", _user("weather?"))
        log = append_message(db, "conv-1", assistant)

        patched = [log[0], {**log[1], "parts": [with_output(part, {"forecast": "sun"}, "approved")]}]
        extra = _user("thanks")
        result = replace_messages(db, "conv-1", patched + [extra])

        assert len(result) == 3
        assert result[1]["parts"][0]["state"] == "output-available"
        assert result[1]["parts"][0]["output"] == {"forecast": "sun"}
        assert result[2]["id"] == extra["id"]

    def test_replace_rejects_dropped_messages(self, db: ThreadSafeConnection) -> None:
        append_message(db, "conv-1", _user("one"))
        log = append_message(db, "conv-1", _user("two"))
        with pytest.raises(StorageError):
            replace_messages(db, "conv-1", log[:1])
        assert len(list_messages(db, "conv-1")) == 2

    def test_replace_rejects_reorder(self, db: ThreadSafeConnection) -> None:
        append_message(db, "conv-1", _user("one"))
        log = append_message(db, "conv-1", _user("two"))
        with pytest.raises(StorageError):
            replace_messages(db, "conv-1", [log[1], log[0]])
        assert [m["id"] for m in list_messages(db, "conv-1")] == [m["id"] for m in log]

    def test_replace_rejects_role_change(self, db: ThreadSafeConnection) -> None:
        log = append_message(db, "conv-1", _user("one"))
        with pytest.raises(StorageError):
            replace_messages(db, "conv-1", [{**log[0], "role": "assistant"}])

    def test_failed_replace_leaves_no_partial_write(self, db: ThreadSafeConnection) -> None:
        log = append_message(db, "conv-1", _user("one"))
        dup = _user("dup")
        # The second copy of dup violates the primary key after the first was inserted
        with pytest.raises(StorageError):
            replace_messages(db, "conv-1", log + [dup, dup])
        assert len(list_messages(db, "conv-1")) == 1


class TestScheduledTasks:
    def test_create_and_list_pending(self, db: ThreadSafeConnection) -> None:
        run_at = datetime.now(timezone.utc) + timedelta(hours=1)
        task = create_scheduled_task(db, "conv-1", "send reminder", run_at)
        tasks = list_scheduled_tasks(db, "conv-1")
        assert [t["id"] for t in tasks] == [task["id"]]
        assert tasks[0]["status"] == "pending"

    def test_mark_fired_only_once(self, db: ThreadSafeConnection) -> None:
        task = create_scheduled_task(db, "conv-1", "x", datetime.now(timezone.utc))
        assert mark_task_fired(db, task["id"]) is True
        assert mark_task_fired(db, task["id"]) is False
        assert get_scheduled_task(db, task["id"])["status"] == "fired"
        assert list_scheduled_tasks(db, "conv-1") == []

    def test_cancel_scoped_to_conversation(self, db: ThreadSafeConnection) -> None:
        get_or_create_conversation(db, "conv-2")
        task = create_scheduled_task(db, "conv-1", "x", datetime.now(timezone.utc))
        assert cancel_scheduled_task(db, "conv-2", task["id"]) is False
        assert cancel_scheduled_task(db, "conv-1", task["id"]) is True
        assert mark_task_fired(db, task["id"]) is False

    def test_create_for_unknown_conversation_raises(self, db: ThreadSafeConnection) -> None:
        with pytest.raises(NotFoundError):
            create_scheduled_task(db, "nope", "x", datetime.now(timezone.utc))


class TestInitDb:
    def test_init_db_creates_schema(self, tmp_path) -> None:
        db = init_db(tmp_path / "frontdesk.db")
        tables = {r["name"] for r in db.execute_fetchall("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"conversations", "messages", "scheduled_tasks"} <= tables
        db.close()

    def test_role_check_constraint(self) -> None:
        db = connect_memory()
        get_or_create_conversation(db, "c")
        with pytest.raises(sqlite3.IntegrityError):
            with db.transaction() as conn:
                conn.execute(
                    "INSERT INTO messages (id, conversation_id, role, created_at, position)"
                    " VALUES ('m', 'c', 'system', 'now', 0)"
                )
