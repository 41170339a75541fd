"""Tests for the agent loop and stored-to-model message conversion."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import MagicMock

import pytest

from frontdesk.config import AIConfig
from frontdesk.services.agent_loop import AgentEvent, run_agent_loop, to_model_messages
from frontdesk.services.ai_service import AIService
from frontdesk.services.messages import new_message, text_part, tool_part, with_output
from frontdesk.services.tool_executor import ToolExecutor
from frontdesk.tools import ToolRegistry


def _make_ai_service() -> AIService:
    service = AIService.__new__(AIService)
    service.config = AIConfig(base_url="http://localhost:11434/v1", api_key="test-key", model="gpt-4")
    service.client = MagicMock()
    return service


def _make_executor() -> ToolExecutor:
    registry = ToolRegistry(requires_confirmation={"getWeatherInformation"})

    async def local_time(location: str = "", **_: Any) -> dict[str, Any]:
        return {"location": location, "local_time": "10:00"}

    async def failing(**_: Any) -> dict[str, Any]:
        raise RuntimeError("nope")

    registry.register("getLocalTime", local_time, {"name": "getLocalTime"})
    registry.register("failing", failing, {"name": "failing"})
    return ToolExecutor(registry)


def _tool_call(call_id: str, name: str, args: dict[str, Any]) -> dict[str, Any]:
    return {"event": "tool_call", "data": {"id": call_id, "function_name": name, "arguments": args}}


def _scripted(*steps: list[dict[str, Any]]):
    """stream_chat replacement that plays one scripted list of events per call."""
    calls: list[list[dict[str, Any]]] = []
    remaining = list(steps)

    async def fake_stream_chat(messages: Any, **kwargs: Any):
        calls.append(list(messages))
        for event in remaining.pop(0):
            yield event

    return fake_stream_chat, calls


async def _collect(gen) -> list[AgentEvent]:
    return [event async for event in gen]


class TestRunAgentLoop:
    @pytest.mark.asyncio
    async def test_text_only_step(self) -> None:
        ai_service = _make_ai_service()
        ai_service.stream_chat, _ = _scripted(
            [
                {"event": "token", "data": {"content": "Hel"}},
                {"event": "token", "data": {"content": "lo"}},
                {"event": "done", "data": {}},
            ]
        )
        events = await _collect(run_agent_loop(ai_service, [{"role": "user", "content": "hi"}], _make_executor(), None))
        assert [e.kind for e in events] == ["token", "token", "done"]
        assert events[-1].data == {"reason": "stop"}

    @pytest.mark.asyncio
    async def test_auto_tool_then_answer(self) -> None:
        ai_service = _make_ai_service()
        ai_service.stream_chat, calls = _scripted(
            [_tool_call("c1", "getLocalTime", {"location": "Europe/Oslo"})],
            [{"event": "token", "data": {"content": "It is 10:00"}}, {"event": "done", "data": {}}],
        )
        messages = [{"role": "user", "content": "time in Oslo?"}]
        events = await _collect(run_agent_loop(ai_service, messages, _make_executor(), []))

        kinds = [e.kind for e in events]
        assert kinds == ["tool_call_start", "tool_call_end", "token", "done"]
        assert events[0].data["needs_confirmation"] is False
        assert events[1].data["output"] == {"location": "Europe/Oslo", "local_time": "10:00"}
        # Second step sees the assistant tool call and its result
        second = calls[1]
        assert second[1]["tool_calls"][0]["id"] == "c1"
        assert second[2] == {
            "role": "tool",
            "tool_call_id": "c1",
            "content": json.dumps({"location": "Europe/Oslo", "local_time": "10:00"}),
        }

    @pytest.mark.asyncio
    async def test_confirmation_call_halts_turn(self) -> None:
        ai_service = _make_ai_service()
        ai_service.stream_chat, calls = _scripted(
            [
                _tool_call("c1", "getWeatherInformation", {"city": "Paris"}),
                _tool_call("c2", "getLocalTime", {"location": "Europe/Paris"}),
            ]
        )
        events = await _collect(run_agent_loop(ai_service, [], _make_executor(), []))
        kinds = [e.kind for e in events]
        assert kinds == ["tool_call_start", "tool_call_start", "tool_call_end", "confirmation_required", "done"]
        assert events[0].data["needs_confirmation"] is True
        assert events[2].data["id"] == "c2"
        assert events[3].data["id"] == "c1"
        assert events[-1].data["reason"] == "awaiting_confirmation"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_auto_results_reported_in_model_order(self) -> None:
        executor = _make_executor()

        async def slow_time(location: str = "", **_: Any) -> dict[str, Any]:
            await asyncio.sleep(0.05)
            return {"slow": location}

        executor.registry.register("slowTime", slow_time, {"name": "slowTime"})
        ai_service = _make_ai_service()
        ai_service.stream_chat, _ = _scripted(
            [_tool_call("a", "slowTime", {"location": "x"}), _tool_call("b", "getLocalTime", {"location": "y"})],
            [{"event": "done", "data": {}}],
        )
        events = await _collect(run_agent_loop(ai_service, [], executor, []))
        ends = [e.data["id"] for e in events if e.kind == "tool_call_end"]
        assert ends == ["a", "b"]

    @pytest.mark.asyncio
    async def test_tool_failure_reported_as_error_output(self) -> None:
        ai_service = _make_ai_service()
        ai_service.stream_chat, _ = _scripted([_tool_call("c1", "failing", {})], [{"event": "done", "data": {}}])
        events = await _collect(run_agent_loop(ai_service, [], _make_executor(), []))
        end = next(e for e in events if e.kind == "tool_call_end")
        assert end.data["status"] == "error"
        assert end.data["output"] == {"error": "nope"}
        assert events[-1].data["reason"] == "stop"

    @pytest.mark.asyncio
    async def test_step_limit(self) -> None:
        ai_service = _make_ai_service()
        ai_service.stream_chat, calls = _scripted(
            *[[_tool_call(f"c{i}", "getLocalTime", {"location": "UTC"})] for i in range(3)]
        )
        events = await _collect(run_agent_loop(ai_service, [], _make_executor(), [], max_steps=3))
        assert len(calls) == 3
        assert events[-2].kind == "error"
        assert events[-2].data["code"] == "step_limit"
        assert events[-1].data["reason"] == "step_limit"

    @pytest.mark.asyncio
    async def test_model_error_ends_turn(self) -> None:
        ai_service = _make_ai_service()
        ai_service.stream_chat, _ = _scripted(
            [
                {"event": "token", "data": {"content": "partial"}},
                {"event": "error", "data": {"message": "Rate limited", "code": "rate_limit"}},
            ]
        )
        events = await _collect(run_agent_loop(ai_service, [], _make_executor(), []))
        assert [e.kind for e in events] == ["token", "error", "done"]
        assert events[-1].data["reason"] == "error"

    @pytest.mark.asyncio
    async def test_cancel_before_tools_run(self) -> None:
        cancel = asyncio.Event()
        ai_service = _make_ai_service()

        async def fake_stream_chat(messages: Any, **kwargs: Any):
            yield _tool_call("c1", "getLocalTime", {"location": "UTC"})
            cancel.set()

        ai_service.stream_chat = fake_stream_chat
        events = await _collect(run_agent_loop(ai_service, [], _make_executor(), [], cancel_event=cancel))
        assert [e.kind for e in events] == ["tool_call_start", "done"]
        assert events[-1].data["reason"] == "aborted"

    @pytest.mark.asyncio
    async def test_retrying_events_are_ignored(self) -> None:
        ai_service = _make_ai_service()
        ai_service.stream_chat, _ = _scripted(
            [
                {"event": "retrying", "data": {"attempt": 2, "max_attempts": 3}},
                {"event": "token", "data": {"content": "ok"}},
                {"event": "done", "data": {}},
            ]
        )
        events = await _collect(run_agent_loop(ai_service, [], _make_executor(), []))
        assert [e.kind for e in events] == ["token", "done"]


class TestToModelMessages:
    def test_user_and_plain_assistant(self) -> None:
        msgs = [new_message("user", [text_part("hi")]), new_message("assistant", [text_part("hello")])]
        assert to_model_messages(msgs) == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]

    def test_resolved_tool_calls_become_tool_messages(self) -> None:
        part = with_output(tool_part("c1", "getLocalTime", {"location": "UTC"}), {"local_time": "09:00"}, "auto")
        msg = new_message("assistant", [text_part("Checking."), part, text_part("It is 09:00.")])
        out = to_model_messages([msg])
        assert out[0]["role"] == "assistant"
        assert out[0]["content"] == "Checking."
        assert out[0]["tool_calls"][0]["function"] == {"name": "getLocalTime", "arguments": '{"location": "UTC"}'}
        assert out[1] == {"role": "tool", "tool_call_id": "c1", "content": '{"local_time": "09:00"}'}
        assert out[2] == {"role": "assistant", "content": "It is 09:00."}

    def test_unresolved_tool_calls_are_dropped(self) -> None:
        pending = tool_part("c1", "getWeatherInformation", {"city": "Paris"})
        msg = new_message("assistant", [text_part("Need approval."), pending])
        assert to_model_messages([msg]) == [{"role": "assistant", "content": "Need approval."}]

    def test_assistant_without_content_is_skipped(self) -> None:
        msg = new_message("assistant", [tool_part("c1", "getWeatherInformation", {})])
        assert to_model_messages([msg]) == []
