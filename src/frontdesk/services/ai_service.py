"""OpenAI SDK wrapper for streaming chat completions."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    RateLimitError,
)

from ..config import AIConfig

logger = logging.getLogger(__name__)


class _StreamTimeoutError(Exception):
    """Raised when the stream stalls or exceeds its total deadline."""


class AIService:
    def __init__(self, config: AIConfig) -> None:
        self.config = config
        self._build_client()

    def _build_client(self) -> None:
        timeout = httpx.Timeout(float(self.config.request_timeout), connect=10.0)
        # SECURITY-REVIEW: verify=False only when user explicitly sets verify_ssl: false in config
        http_client = httpx.AsyncClient(verify=self.config.verify_ssl, timeout=timeout)
        self.client = AsyncOpenAI(
            base_url=self.config.base_url,
            api_key=self.config.api_key or "missing",
            http_client=http_client,
        )

    @staticmethod
    async def _iter_stream(
        stream_iter: Any,
        cancel_event: asyncio.Event | None,
        total_timeout: float,
        stall_timeout: float | None = None,
    ) -> AsyncGenerator[Any, None]:
        """Iterate an async stream with cancel-awareness and a hard total timeout.

        Stops if cancel_event is set or the stream is exhausted. Raises
        _StreamTimeoutError when total_timeout elapses or no chunk arrives for
        stall_timeout seconds.
        """
        deadline = asyncio.get_running_loop().time() + total_timeout

        while True:
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                raise _StreamTimeoutError()
            wait_limit = min(remaining, stall_timeout) if stall_timeout else remaining

            next_chunk = asyncio.ensure_future(stream_iter.__anext__())
            wait_tasks: list[asyncio.Future[Any]] = [next_chunk]
            cancel_wait = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None
            if cancel_wait:
                wait_tasks.append(cancel_wait)

            try:
                done, _pending = await asyncio.wait(wait_tasks, timeout=wait_limit, return_when=asyncio.FIRST_COMPLETED)
            except BaseException:
                next_chunk.cancel()
                if cancel_wait:
                    cancel_wait.cancel()
                raise

            if not done:
                next_chunk.cancel()
                if cancel_wait:
                    cancel_wait.cancel()
                logger.warning("Stream stalled: no chunk for %.0fs", wait_limit)
                raise _StreamTimeoutError()

            if cancel_wait and cancel_wait in done:
                next_chunk.cancel()
                return

            if cancel_wait:
                cancel_wait.cancel()

            try:
                chunk = next_chunk.result()
            except StopAsyncIteration:
                return

            yield chunk

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Stream one model step as ``token``, ``tool_call``, ``done`` and ``error`` events."""
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": [{"role": "system", "content": self.config.system_prompt}] + messages,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools

        max_attempts = max(1, self.config.retry_max_attempts + 1)
        last_transient_error: Exception | None = None

        for attempt in range(max_attempts):
            if cancel_event and cancel_event.is_set():
                return

            emitted = False
            try:
                stream = await self.client.chat.completions.create(**kwargs)
                current_tool_calls: dict[int, dict[str, Any]] = {}
                try:
                    async for chunk in self._iter_stream(
                        stream.__aiter__(),
                        cancel_event,
                        float(self.config.request_timeout),
                        float(self.config.chunk_stall_timeout),
                    ):
                        choice = chunk.choices[0] if chunk.choices else None
                        if not choice:
                            continue

                        delta = choice.delta
                        if delta and delta.content:
                            emitted = True
                            yield {"event": "token", "data": {"content": delta.content}}

                        if delta and delta.tool_calls:
                            for tc in delta.tool_calls:
                                entry = current_tool_calls.setdefault(
                                    tc.index, {"id": "", "function_name": "", "arguments": ""}
                                )
                                if tc.id:
                                    entry["id"] = tc.id
                                if tc.function and tc.function.name:
                                    entry["function_name"] = tc.function.name
                                if tc.function and tc.function.arguments:
                                    entry["arguments"] += tc.function.arguments

                        if choice.finish_reason == "tool_calls":
                            for _idx, tc_data in sorted(current_tool_calls.items()):
                                try:
                                    args = json.loads(tc_data["arguments"] or "{}")
                                except json.JSONDecodeError:
                                    args = {}
                                yield {
                                    "event": "tool_call",
                                    "data": {
                                        "id": tc_data["id"],
                                        "function_name": tc_data["function_name"],
                                        "arguments": args,
                                    },
                                }
                            return

                        if choice.finish_reason in ("stop", "length"):
                            yield {"event": "done", "data": {"finish_reason": choice.finish_reason}}
                            return
                finally:
                    if hasattr(stream, "close"):
                        try:
                            await asyncio.wait_for(stream.close(), timeout=2.0)
                        except Exception:
                            pass  # Don't let slow stream cleanup block cancellation

                # Stream ended without finish_reason (cancelled or truncated)
                return

            except AuthenticationError:
                logger.error("Authentication failed against %s", self.config.base_url)
                yield {
                    "event": "error",
                    "data": {"message": "Authentication failed. Check your API key.", "code": "auth_failed"},
                }
                return
            except BadRequestError as e:
                if "context_length" in str(e).lower():
                    logger.warning("Context length exceeded: %s", e)
                    yield {
                        "event": "error",
                        "data": {
                            "message": "Conversation too long for model context window.",
                            "code": "context_length_exceeded",
                        },
                    }
                else:
                    logger.exception("AI bad request error")
                    yield {"event": "error", "data": {"message": "AI request error", "code": "bad_request"}}
                return
            except RateLimitError as e:
                logger.warning("Rate limited by AI provider: %s", e)
                yield {"event": "error", "data": {"message": "Rate limited by API provider", "code": "rate_limit"}}
                return
            except APIStatusError as e:
                if e.status_code < 500 or emitted:
                    logger.warning("API error %d: %s", e.status_code, type(e).__name__)
                    yield {
                        "event": "error",
                        "data": {"message": f"API error (HTTP {e.status_code})", "code": "api_error"},
                    }
                    return
                last_transient_error = e
            except _StreamTimeoutError:
                logger.warning("Stream timed out mid-response")
                yield {"event": "error", "data": {"message": "Stream timed out", "code": "timeout"}}
                return
            except (APITimeoutError, APIConnectionError) as e:
                if isinstance(e, APITimeoutError):
                    # Stale pooled connections cause repeated timeouts
                    self._build_client()
                if emitted:
                    yield {"event": "error", "data": {"message": "Connection lost", "code": "connection_error"}}
                    return
                last_transient_error = e

            # Transient failure before any output: back off and retry
            if attempt < max_attempts - 1:
                delay = self.config.retry_backoff_base * (2**attempt)
                logger.warning(
                    "Transient error (attempt %d/%d): %s. Retrying in %.1fs...",
                    attempt + 1,
                    max_attempts,
                    type(last_transient_error).__name__,
                    delay,
                )
                yield {"event": "retrying", "data": {"attempt": attempt + 2, "max_attempts": max_attempts}}
                if cancel_event:
                    try:
                        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
                        return
                    except asyncio.TimeoutError:
                        pass
                else:
                    await asyncio.sleep(delay)

        timed_out = isinstance(last_transient_error, APITimeoutError)
        yield {
            "event": "error",
            "data": {
                "message": f"AI service unavailable ({max_attempts} attempts)",
                "code": "timeout" if timed_out else "connection_error",
            },
        }

    async def validate_connection(self) -> tuple[bool, str, list[str]]:
        try:
            models = await self.client.models.list()
            model_ids = [m.id for m in models.data]
            return True, "Connected successfully", model_ids
        except AuthenticationError:
            return False, "Authentication failed. Check your API key.", []
        except APITimeoutError:
            self._build_client()
            return False, "Connection timed out. The API may be slow or unreachable.", []
        except APIConnectionError:
            return False, f"Cannot connect to API at {self.config.base_url}.", []
        except Exception as e:
            logger.error("AI connection validation failed: %s", e)
            return False, "Connection to AI service failed", []
