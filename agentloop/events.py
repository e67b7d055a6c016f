"""
Lifecycle events and the channel that carries them.

The core never calls back into the consumer.  Every event is written to an
``EventChannel`` that the caller drains, either concurrently (``async for``)
or after the fact (``drain()``).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Union

from agentloop.messages import AssistantMessage, PendingToolCall, ToolResultMessage

if TYPE_CHECKING:
    from agentloop.messages import AgentState

# Kinds carried by ``MessageUpdateEvent``.
UPDATE_TEXT = "text"
UPDATE_REASONING = "reasoning"
UPDATE_TOOL_ARGUMENTS = "tool_arguments"
UPDATE_REFUSAL = "refusal"


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


@dataclass
class AgentEvaluateStartEvent:
    evaluate_id: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class AgentEvaluateEndEvent:
    evaluate_id: str
    state: AgentState | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class TurnStartEvent:
    turn_id: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class TurnEndEvent:
    turn_id: str
    message: AssistantMessage | None = None
    error: Exception | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class MessageStartEvent:
    role: str
    message: AssistantMessage


@dataclass
class MessageUpdateEvent:
    role: str
    message: AssistantMessage
    kind: str
    delta: str
    item_id: str | None = None


@dataclass
class MessageEndEvent:
    role: str
    message: AssistantMessage


@dataclass
class ToolCallRequestEvent:
    pending_call: PendingToolCall
    requires_approval: bool = False


@dataclass
class ToolExecutionStartEvent:
    pending_call: PendingToolCall


@dataclass
class ToolExecutionEndEvent:
    pending_call: PendingToolCall
    result: ToolResultMessage
    duration_ms: int = 0
    error_code: str | None = None


@dataclass
class AgentErrorEvent:
    error: Exception


AgentEvent = Union[
    AgentEvaluateStartEvent,
    AgentEvaluateEndEvent,
    TurnStartEvent,
    TurnEndEvent,
    MessageStartEvent,
    MessageUpdateEvent,
    MessageEndEvent,
    ToolCallRequestEvent,
    ToolExecutionStartEvent,
    ToolExecutionEndEvent,
    AgentErrorEvent,
]


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------

_CLOSED = object()


class EventChannel:
    """
    Unbounded FIFO of lifecycle events.

    ``emit`` never blocks, so the synchronous normalizer can write to it from
    inside the stream-read loop.  Consumers either iterate with ``async for``
    (which ends once ``close()`` has been called and the backlog is empty) or
    call ``drain()`` to take whatever is queued right now.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: AgentEvent) -> None:
        if self._closed:
            raise RuntimeError("Cannot emit on a closed EventChannel")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def drain(self) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _CLOSED:
                # Keep the marker so a later ``async for`` still terminates.
                self._queue.put_nowait(_CLOSED)
                break
            events.append(item)
        return events

    def __aiter__(self) -> AsyncIterator[AgentEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[AgentEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                return
            yield item
