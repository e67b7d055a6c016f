"""
Message and content model.

Every message carries an ordered list of typed content blocks.  Blocks are
dataclasses tagged with a ``type`` discriminant and messages with a ``role``
discriminant, so the whole history serializes to plain dicts (for session
stores) and back without guessing.

Assistant messages grow block by block while a turn streams in; once the
turn's ``MessageEndEvent`` has fired nothing mutates them again.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Union

from agentloop.types import StopReason


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass
class TextContent:
    text: str = ""
    # Opaque provider token (e.g. a Responses item id) used for resumption.
    text_signature: str | None = None
    type: str = field(default="text", init=False)


@dataclass
class ThinkingContent:
    thinking: str = ""
    thinking_signature: str | None = None
    redacted: bool = False
    type: str = field(default="thinking", init=False)


@dataclass
class ImageContent:
    data: str  # base64, no data-URL prefix
    mime_type: str = "image/png"
    type: str = field(default="image", init=False)

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass
class ToolCallContent:
    id: str
    name: str
    arguments: dict = field(default_factory=dict)
    # Gemini attaches reasoning signatures to function calls.
    thought_signature: str | None = None
    type: str = field(default="toolCall", init=False)


UserContentBlock = Union[TextContent, ImageContent]
AssistantContentBlock = Union[TextContent, ThinkingContent, ToolCallContent]
ToolResultContentBlock = Union[TextContent, ImageContent]
ContentBlock = Union[TextContent, ThinkingContent, ImageContent, ToolCallContent]

_BLOCK_TYPES: dict[str, type] = {
    "text": TextContent,
    "thinking": ThinkingContent,
    "image": ImageContent,
    "toolCall": ToolCallContent,
}


# ---------------------------------------------------------------------------
# Usage and tool calls
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    """Token counts for one turn (or, on ``AgentState``, a whole session)."""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    total: int = 0
    cost: float = 0.0

    def add(self, other: Usage) -> Usage:
        self.input += other.input
        self.output += other.output
        self.cache_read += other.cache_read
        self.cache_write += other.cache_write
        self.total += other.total
        self.cost += other.cost
        return self


@dataclass
class AgentToolCall:
    """A completed tool call as the provider sent it.

    ``arguments`` stays the raw JSON string; it is only parsed when the
    tool is about to run, and a parse failure becomes an error result.
    """

    call_id: str
    name: str
    arguments: str = "{}"


@dataclass
class PendingToolCall:
    """
    A tool call awaiting execution, with an approval decision.

    ``approved`` is tri-state: ``None`` while undecided, then ``True`` or
    ``False``.  The orchestration loop consumes each pending call exactly once.
    """

    call_id: str
    name: str
    arguments: str = "{}"
    approved: bool | None = None
    rejected_reason: str | None = None

    @classmethod
    def from_call(cls, call: AgentToolCall) -> PendingToolCall:
        return cls(call_id=call.call_id, name=call.name, arguments=call.arguments)

    @property
    def decided(self) -> bool:
        return self.approved is not None

    def approve(self) -> None:
        self.approved = True
        self.rejected_reason = None

    def reject(self, reason: str = "Tool call rejected by user") -> None:
        self.approved = False
        self.rejected_reason = reason


def loads_tool_arguments(raw: str | None) -> dict:
    """Lenient parse used when replaying tool calls to a provider."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def _coerce_content(content: Any) -> list:
    if content is None:
        return []
    if isinstance(content, str):
        return [TextContent(text=content)]
    return list(content)


@dataclass
class UserMessage:
    content: list[UserContentBlock] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)
    role: str = field(default="user", init=False)

    def __post_init__(self) -> None:
        self.content = _coerce_content(self.content)


@dataclass
class AssistantMessage:
    content: list[AssistantContentBlock] = field(default_factory=list)
    tool_calls: list[AgentToolCall] = field(default_factory=list)
    api: str = ""
    provider: str = ""
    model: str = ""
    response_id: str | None = None
    usage: Usage = field(default_factory=Usage)
    stop_reason: StopReason | None = None
    error_message: str | None = None
    timestamp: float = field(default_factory=time.time)
    role: str = field(default="assistant", init=False)

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextContent))

    @property
    def thinking(self) -> str:
        return "".join(
            b.thinking for b in self.content if isinstance(b, ThinkingContent)
        )


@dataclass
class ToolResultMessage:
    call_id: str
    name: str
    content: list[ToolResultContentBlock] = field(default_factory=list)
    is_error: bool = False
    timestamp: float = field(default_factory=time.time)
    role: str = field(default="toolResult", init=False)

    def __post_init__(self) -> None:
        self.content = _coerce_content(self.content)


@dataclass
class CompactionSummaryMessage:
    """Stands in for a prefix of history that was summarized away."""

    summary: str
    tokens_before: int = 0
    compacted_at: float = field(default_factory=time.time)
    role: str = field(default="compactionSummary", init=False)


Message = Union[UserMessage, AssistantMessage, ToolResultMessage, CompactionSummaryMessage]

_MESSAGE_TYPES: dict[str, type] = {
    "user": UserMessage,
    "assistant": AssistantMessage,
    "toolResult": ToolResultMessage,
    "compactionSummary": CompactionSummaryMessage,
}

# What ``evaluate`` accepts as a turn's input.  ``None`` resumes pending calls.
TurnInput = Union[str, UserMessage, list, None]


def message_text(msg: Message) -> str:
    """Concatenated plain text of a message (summary text for compactions)."""
    if isinstance(msg, CompactionSummaryMessage):
        return msg.summary
    return "".join(b.text for b in msg.content if isinstance(b, TextContent))


def message_thinking(msg: Message) -> str:
    if not isinstance(msg, AssistantMessage):
        return ""
    return msg.thinking


def include_in_context(msg: Message) -> bool:
    """Whether *msg* should be sent back to a provider.

    Assistant turns that failed or were aborted carry partial content that
    providers reject on replay, so they stay in history but not in context.
    """
    if isinstance(msg, AssistantMessage):
        return msg.stop_reason not in (StopReason.ERROR, StopReason.ABORTED)
    return True


def context_messages(messages: list[Message]) -> list[Message]:
    """Messages a provider should see.

    Anything before the most recent compaction summary has been superseded
    by it; the remainder is filtered through ``include_in_context``.
    """
    start = 0
    for idx in range(len(messages) - 1, -1, -1):
        if isinstance(messages[idx], CompactionSummaryMessage):
            start = idx
            break
    return [m for m in messages[start:] if include_in_context(m)]


def turn_input_messages(turn_input: TurnInput) -> list[Message]:
    """Convert a turn input into the messages it contributes to history."""
    if turn_input is None:
        return []
    if isinstance(turn_input, str):
        return [UserMessage(content=turn_input)]
    if isinstance(turn_input, UserMessage):
        return [turn_input]
    if isinstance(turn_input, list):
        if not turn_input:
            return []
        if all(isinstance(m, ToolResultMessage) for m in turn_input):
            return list(turn_input)
        if all(isinstance(b, (TextContent, ImageContent)) for b in turn_input):
            return [UserMessage(content=list(turn_input))]
    raise TypeError(f"Unsupported turn input: {type(turn_input).__name__}")


# ---------------------------------------------------------------------------
# Agent state
# ---------------------------------------------------------------------------


@dataclass
class AgentState:
    """Per-conversation accumulator mutated by every turn."""

    messages: list[Message] = field(default_factory=list)
    pending_tool_calls: list[PendingToolCall] = field(default_factory=list)
    most_recent_stop_reason: StopReason | None = None
    response_id: str | None = None
    session_id: str | None = None
    usage: Usage = field(default_factory=Usage)
    last_compaction: CompactionSummaryMessage | None = None

    def last_assistant_message(self) -> AssistantMessage | None:
        for msg in reversed(self.messages):
            if isinstance(msg, AssistantMessage):
                return msg
        return None

    def append_turn_input(self, turn_input: TurnInput) -> None:
        self.messages.extend(turn_input_messages(turn_input))

    def append_response(
        self, turn_input: TurnInput, message: AssistantMessage, usage: Usage
    ) -> None:
        """Record a finished turn: its input, the reply, and the usage."""
        self.append_turn_input(turn_input)
        self.messages.append(message)
        if message.response_id is not None:
            self.response_id = message.response_id
        self.usage.add(usage)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def message_to_dict(msg: Message) -> dict[str, Any]:
    d = asdict(msg)
    stop = d.get("stop_reason")
    if isinstance(stop, StopReason):
        d["stop_reason"] = stop.value
    return d


def _block_from_dict(data: dict[str, Any]) -> ContentBlock:
    data = dict(data)
    kind = data.pop("type", "text")
    cls = _BLOCK_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown content block type: {kind!r}")
    return cls(**data)


def message_from_dict(data: dict[str, Any]) -> Message:
    """Rebuild a message produced by ``message_to_dict``."""
    data = dict(data)
    role = data.pop("role", None)
    cls = _MESSAGE_TYPES.get(role)
    if cls is None:
        raise ValueError(f"Unknown message role: {role!r}")

    if "content" in data:
        data["content"] = [_block_from_dict(b) for b in data["content"]]
    if cls is AssistantMessage:
        data["tool_calls"] = [AgentToolCall(**tc) for tc in data.get("tool_calls", [])]
        data["usage"] = Usage(**data.get("usage", {}))
        if data.get("stop_reason") is not None:
            data["stop_reason"] = StopReason(data["stop_reason"])
    return cls(**data)
