"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_DEFAULT_SYSTEM_PROMPT = """\
You are Frontdesk, a helpful AI assistant with access to a small set of tools. A human operator \
may read this conversation and take it over at any point.

<capabilities>
- Getting weather information for any city (the user must confirm before the lookup runs)
- Getting the local time for a location given as an IANA time zone (for example Europe/Madrid)
- Scheduling tasks to run once at a date or after a delay
- Listing and cancelling scheduled tasks
</capabilities>

<guidelines>
- Be helpful, accurate and concise. Lead with the answer.
- If the user asks to schedule a task, use the scheduleTask tool. Recurring cron schedules are not \
supported; say so instead of guessing.
- When a tool needs confirmation, call it and wait. Do not claim the result before it arrives.
- If a tool result is an error, explain it briefly and offer an alternative.
- Messages starting with "Running scheduled task:" were injected by the scheduler. Carry out the \
task they describe.
</guidelines>"""

DEFAULT_CONFIRMATION_TOOLS = ["getWeatherInformation"]


@dataclass
class AIConfig:
    base_url: str
    api_key: str = ""
    model: str = "gpt-4o"
    system_prompt: str = _DEFAULT_SYSTEM_PROMPT
    user_system_prompt: str = ""
    verify_ssl: bool = True
    request_timeout: int = 120  # seconds; create() deadline and total stream deadline
    chunk_stall_timeout: int = 30  # seconds without a chunk before the stream is abandoned
    retry_max_attempts: int = 2  # retries after the first attempt on transient errors
    retry_backoff_base: float = 1.0


@dataclass
class AppSettings:
    host: str = "127.0.0.1"
    port: int = 8080
    data_dir: Path = field(default_factory=lambda: Path.home() / ".frontdesk")


@dataclass
class ChatConfig:
    max_steps: int = 10
    tool_timeout: float = 30.0  # seconds per auto-executed tool call


@dataclass
class ToolsConfig:
    requires_confirmation: list[str] = field(default_factory=lambda: list(DEFAULT_CONFIRMATION_TOOLS))
    disabled: list[str] = field(default_factory=list)


@dataclass
class AppConfig:
    ai: AIConfig
    app: AppSettings = field(default_factory=AppSettings)
    chat: ChatConfig = field(default_factory=ChatConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)


def _get_config_path(data_dir: Path | None = None) -> Path:
    if data_dir:
        return data_dir / "config.yaml"
    return Path.home() / ".frontdesk" / "config.yaml"


def _clamped_int(raw: Any, default: int, lo: int, hi: int) -> int:
    try:
        value = int(raw)
    except (ValueError, TypeError):
        return default
    return max(lo, min(value, hi))


def _str_list(raw: Any, default: list[str]) -> list[str]:
    if not isinstance(raw, list):
        return list(default)
    return [str(item) for item in raw]


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    ai_raw = raw.get("ai", {})
    base_url = ai_raw.get("base_url") or os.environ.get("AI_CHAT_BASE_URL", "")
    api_key = ai_raw.get("api_key") or os.environ.get("AI_CHAT_API_KEY", "")
    model = ai_raw.get("model") or os.environ.get("AI_CHAT_MODEL", "gpt-4o")
    user_system_prompt = ai_raw.get("system_prompt") or os.environ.get("AI_CHAT_SYSTEM_PROMPT", "")
    if user_system_prompt:
        system_prompt = (
            _DEFAULT_SYSTEM_PROMPT + "\n\n<user_instructions>\n" + user_system_prompt + "\n</user_instructions>"
        )
    else:
        system_prompt = _DEFAULT_SYSTEM_PROMPT
        user_system_prompt = ""

    if not base_url:
        raise ValueError(
            "AI base_url is required. Set 'ai.base_url' in config.yaml "
            f"({path}) or AI_CHAT_BASE_URL environment variable."
        )

    verify_ssl_raw = ai_raw.get("verify_ssl", os.environ.get("AI_CHAT_VERIFY_SSL", "true"))
    verify_ssl = str(verify_ssl_raw).lower() not in ("false", "0", "no")
    request_timeout = _clamped_int(
        ai_raw.get("request_timeout", os.environ.get("AI_CHAT_REQUEST_TIMEOUT", 120)), 120, 10, 600
    )
    chunk_stall_timeout = _clamped_int(ai_raw.get("chunk_stall_timeout", 30), 30, 5, 600)
    retry_max_attempts = _clamped_int(ai_raw.get("retry_max_attempts", 2), 2, 0, 10)
    try:
        retry_backoff_base = max(0.0, float(ai_raw.get("retry_backoff_base", 1.0)))
    except (ValueError, TypeError):
        retry_backoff_base = 1.0

    ai = AIConfig(
        base_url=base_url,
        api_key=api_key,
        model=model,
        system_prompt=system_prompt,
        user_system_prompt=user_system_prompt,
        verify_ssl=verify_ssl,
        request_timeout=request_timeout,
        chunk_stall_timeout=chunk_stall_timeout,
        retry_max_attempts=retry_max_attempts,
        retry_backoff_base=retry_backoff_base,
    )

    app_raw = raw.get("app", {})
    data_dir = Path(os.path.expanduser(app_raw.get("data_dir", "~/.frontdesk")))
    app_settings = AppSettings(
        host=app_raw.get("host", "127.0.0.1"),
        port=int(app_raw.get("port", 8080)),
        data_dir=data_dir,
    )

    app_settings.data_dir.mkdir(parents=True, exist_ok=True)
    try:
        app_settings.data_dir.chmod(stat.S_IRWXU)  # 0700
        if path.exists():
            path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
    except OSError:
        pass  # May fail on Windows or non-owned files

    chat_raw = raw.get("chat", {})
    max_steps = _clamped_int(chat_raw.get("max_steps", os.environ.get("FRONTDESK_MAX_STEPS", 10)), 10, 1, 50)
    try:
        tool_timeout = max(1.0, min(float(chat_raw.get("tool_timeout", 30.0)), 600.0))
    except (ValueError, TypeError):
        tool_timeout = 30.0
    chat_config = ChatConfig(max_steps=max_steps, tool_timeout=tool_timeout)

    tools_raw = raw.get("tools", {})
    tools_config = ToolsConfig(
        requires_confirmation=_str_list(tools_raw.get("requires_confirmation"), DEFAULT_CONFIRMATION_TOOLS),
        disabled=_str_list(tools_raw.get("disabled"), []),
    )

    return AppConfig(
        ai=ai,
        app=app_settings,
        chat=chat_config,
        tools=tools_config,
    )
