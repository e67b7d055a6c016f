"""Shared enums, error codes and the exception hierarchy."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentloop.messages import AgentState


class StopReason(str, Enum):
    """Canonical classification of why a turn ended."""

    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    ERROR = "error"
    CONTENT_FILTER = "content_filter"
    ABORTED = "aborted"


class ErrorCode:
    UNKNOWN_TOOL = "unknown_tool"
    VALIDATION_ERROR = "validation_error"
    ARGUMENT_PARSE_ERROR = "argument_parse_error"
    TOOL_EXCEPTION = "tool_exception"
    REJECTED = "rejected"
    MISSING_RESULT = "missing_result"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AgentloopError(Exception):
    """Base class for every error raised by agentloop."""


class ConfigError(AgentloopError):
    """Invalid configuration, unknown provider/model or bad credentials."""


class ProviderHTTPError(AgentloopError):
    """
    A provider answered with a non-2xx status.

    Attributes
    ----------
    status:
        HTTP status code.
    message:
        Human-readable message extracted from the provider's error envelope.
    body:
        Raw response body (possibly truncated).
    """

    RETRYABLE_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})

    def __init__(self, status: int, message: str, body: str = "") -> None:
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status in self.RETRYABLE_STATUSES


class StreamProtocolError(AgentloopError):
    """A malformed frame or an in-band provider error event.

    Reported through ``AgentErrorEvent``; never raised out of ``evaluate``.
    """


class ToolIterationLimitError(AgentloopError):
    """The tool-call loop went past its configured number of rounds."""

    def __init__(self, limit: int, state: AgentState) -> None:
        super().__init__(f"Too many tool iterations (limit={limit})")
        self.limit = limit
        self.state = state


class AbortedError(AgentloopError):
    """Raised at a loop boundary once the abort token has been set."""


class InvalidInputError(AgentloopError):
    """The input guardrail rejected the user's turn input."""

    def __init__(self, text: str) -> None:
        preview = text if len(text) <= 200 else text[:200] + "..."
        super().__init__(f"Input rejected by guardrail: {preview}")
        self.text = text
