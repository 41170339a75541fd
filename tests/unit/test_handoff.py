"""Tests for human handoff state derivation and flag patches."""

from __future__ import annotations

import pytest

from frontdesk.errors import NotFoundError, ValidationError
from frontdesk.services.handoff import (
    HandoffState,
    clear_waiting,
    is_waiting_for_human,
    mark_waiting,
    pending_messages,
    state_of,
)
from frontdesk.services.messages import new_message, text_part


def _user(text: str, **kwargs) -> dict:
    return new_message("user", [text_part(text)], **kwargs)


def _assistant(text: str) -> dict:
    return new_message("assistant", [text_part(text)])


class TestStateOf:
    def test_empty_log_is_normal(self) -> None:
        assert state_of([]) is HandoffState.NORMAL

    def test_flagged_last_user_message_waits(self) -> None:
        assert state_of([_user("help", waiting_for_human=True)]) is HandoffState.WAITING_FOR_HUMAN

    def test_assistant_reply_after_flag_ends_wait(self) -> None:
        msgs = [_user("help", waiting_for_human=True), _assistant("operator here")]
        assert state_of(msgs) is HandoffState.NORMAL

    def test_flag_on_older_message_has_no_effect(self) -> None:
        msgs = [_user("old", waiting_for_human=True), _assistant("hi"), _user("new")]
        assert not is_waiting_for_human(msgs)


class TestMarkAndClear:
    def test_mark_returns_patched_copy(self) -> None:
        msgs = [_user("hi")]
        patched = mark_waiting(msgs, msgs[0]["id"])
        assert patched[0]["metadata"]["waiting_for_human"] is True
        assert "waiting_for_human" not in msgs[0]["metadata"]
        assert patched[0]["metadata"]["created_at"] == msgs[0]["metadata"]["created_at"]

    def test_mark_unknown_message(self) -> None:
        with pytest.raises(NotFoundError):
            mark_waiting([_user("hi")], "missing")

    def test_mark_assistant_message_rejected(self) -> None:
        msgs = [_user("hi"), _assistant("hello")]
        with pytest.raises(ValidationError):
            mark_waiting(msgs, msgs[1]["id"])

    def test_clear(self) -> None:
        msgs = [_user("hi", waiting_for_human=True)]
        patched = clear_waiting(msgs, msgs[0]["id"])
        assert patched[0]["metadata"]["waiting_for_human"] is False
        assert state_of(patched) is HandoffState.NORMAL


class TestPendingMessages:
    def test_unanswered_and_flagged(self) -> None:
        answered_flagged = _user("a", waiting_for_human=True)
        answered = _user("b")
        unanswered = _user("c")
        msgs = [answered_flagged, _assistant("x"), answered, _assistant("y"), unanswered]

        pending = pending_messages(msgs)
        assert [p["id"] for p in pending] == [answered_flagged["id"], unanswered["id"]]
        assert pending[0]["waiting_for_human"] is True
        assert pending[1] == {
            "id": unanswered["id"],
            "text": "c",
            "created_at": unanswered["metadata"]["created_at"],
            "waiting_for_human": False,
        }

    def test_consecutive_user_messages(self) -> None:
        first, second = _user("one"), _user("two")
        assert [p["id"] for p in pending_messages([first, second])] == [first["id"], second["id"]]
