"""Tests for the built-in tools and the tool registry."""

from __future__ import annotations

import zoneinfo
from datetime import datetime, timezone

import pytest

from frontdesk.db import connect_memory
from frontdesk.services import storage
from frontdesk.services.scheduler import TaskScheduler
from frontdesk.tools import ToolContext, ToolRegistry, local_time, register_default_tools, schedule, weather

_HAS_TZDATA = "Europe/Madrid" in zoneinfo.available_timezones()


@pytest.fixture()
def context() -> ToolContext:
    db = connect_memory()
    storage.get_or_create_conversation(db, "conv-1")
    return ToolContext(conversation_id="conv-1", scheduler=TaskScheduler(db))


class TestRegistry:
    def test_default_tools_registered(self) -> None:
        registry = ToolRegistry(requires_confirmation=["getWeatherInformation"])
        register_default_tools(registry)
        assert set(registry.list_tools()) == {
            "getWeatherInformation",
            "getLocalTime",
            "scheduleTask",
            "getScheduledTasks",
            "cancelScheduledTask",
        }
        assert registry.needs_confirmation("getWeatherInformation")
        assert not registry.needs_confirmation("getLocalTime")

    def test_disabled_tools_skipped(self) -> None:
        registry = ToolRegistry()
        register_default_tools(registry, disabled=["getLocalTime"])
        assert not registry.has_tool("getLocalTime")
        assert registry.has_tool("scheduleTask")

    def test_openai_format(self) -> None:
        registry = ToolRegistry()
        register_default_tools(registry)
        tools = {t["function"]["name"]: t for t in registry.get_openai_tools()}
        assert tools["getWeatherInformation"]["type"] == "function"
        assert tools["getWeatherInformation"]["function"]["parameters"]["required"] == ["city"]

    @pytest.mark.asyncio
    async def test_call_unknown_tool_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown tool"):
            await ToolRegistry().call_tool("nope", {})


class TestWeather:
    @pytest.mark.asyncio
    async def test_forecast(self) -> None:
        result = await weather.handle(city="Madrid")
        assert result == {"city": "Madrid", "forecast": "The weather in Madrid is sunny"}

    @pytest.mark.asyncio
    async def test_missing_city(self) -> None:
        assert "error" in await weather.handle(city="  ")


class TestLocalTime:
    @pytest.mark.asyncio
    @pytest.mark.skipif(not _HAS_TZDATA, reason="IANA time zone database not available")
    async def test_known_zone(self) -> None:
        result = await local_time.handle(location="Europe/Madrid")
        assert result["location"] == "Europe/Madrid"
        assert len(result["local_time"]) == 5

    @pytest.mark.asyncio
    async def test_unknown_zone(self) -> None:
        result = await local_time.handle(location="Not/AZone")
        assert "Unknown time zone" in result["error"]


class TestScheduleTools:
    @pytest.mark.asyncio
    async def test_delayed(self, context: ToolContext) -> None:
        result = await schedule.handle_schedule(
            description="send reminder", when={"type": "delayed", "delayInSeconds": 60}, _context=context
        )
        assert "task_id" in result
        listed = await schedule.handle_list(_context=context)
        assert listed["count"] == 1
        assert listed["tasks"][0]["description"] == "send reminder"

    @pytest.mark.asyncio
    async def test_scheduled_date(self, context: ToolContext) -> None:
        result = await schedule.handle_schedule(
            description="standup", when={"type": "scheduled", "date": "2030-05-01T09:00:00Z"}, _context=context
        )
        assert datetime.fromisoformat(result["run_at"]) == datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_invalid_date(self, context: ToolContext) -> None:
        result = await schedule.handle_schedule(
            description="x", when={"type": "scheduled", "date": "tomorrow"}, _context=context
        )
        assert "Invalid date" in result["error"]

    @pytest.mark.asyncio
    async def test_cron_rejected(self, context: ToolContext) -> None:
        result = await schedule.handle_schedule(
            description="x", when={"type": "cron", "cron": "0 9 * * *"}, _context=context
        )
        assert result == {"error": "Recurring cron schedules are not supported"}

    @pytest.mark.asyncio
    async def test_no_schedule(self, context: ToolContext) -> None:
        result = await schedule.handle_schedule(description="x", when={"type": "no-schedule"}, _context=context)
        assert result == {"error": "Not a valid schedule input"}

    @pytest.mark.asyncio
    async def test_cancel(self, context: ToolContext) -> None:
        created = await schedule.handle_schedule(
            description="x", when={"type": "delayed", "delayInSeconds": 60}, _context=context
        )
        assert await schedule.handle_cancel(taskId=created["task_id"], _context=context) == {
            "cancelled": created["task_id"]
        }
        assert "error" in await schedule.handle_cancel(taskId=created["task_id"], _context=context)

    @pytest.mark.asyncio
    async def test_without_scheduler(self) -> None:
        result = await schedule.handle_list(_context=ToolContext(conversation_id="conv-1"))
        assert result == {"error": "Scheduling is not available"}
