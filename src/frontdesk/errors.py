"""Exception types shared by the storage, tool and conversation layers."""

from __future__ import annotations


class FrontdeskError(Exception):
    """Base class for errors scoped to a single conversation operation."""


class ValidationError(FrontdeskError):
    """A request is missing a required field or is otherwise malformed."""


class NotFoundError(FrontdeskError):
    """Unknown conversation, message or tool call identifier."""


class StorageError(FrontdeskError):
    """The message log could not be read or written.

    The operation must be treated as not applied. Appends and patches are safe to retry.
    """


class StaleToolCallError(FrontdeskError):
    """A tool call was already resolved with a different result."""

    def __init__(self, tool_call_id: str, message: str | None = None) -> None:
        self.tool_call_id = tool_call_id
        super().__init__(message or f"Tool call {tool_call_id} is already resolved with a different result")
