"""Session entries and replaying them into an ``AgentState``."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from agentloop.messages import (
    AgentState,
    AssistantMessage,
    Message,
    PendingToolCall,
    ToolResultMessage,
    message_from_dict,
    message_to_dict,
)
from agentloop.types import StopReason


@dataclass
class SessionEntry:
    """
    One append to a session: the messages a single ``evaluate`` added.

    A compaction entry instead holds the complete post-compaction history
    and replaces everything before it on replay.
    """

    messages: list[Message] = field(default_factory=list)
    is_compaction: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "is_compaction": self.is_compaction,
            "messages": [message_to_dict(m) for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionEntry:
        return cls(
            id=data["id"],
            created_at=data.get("created_at", 0.0),
            is_compaction=bool(data.get("is_compaction", False)),
            messages=[message_from_dict(m) for m in data.get("messages", [])],
        )


def _dangling_calls(messages: list[Message]) -> list[PendingToolCall]:
    """Tool calls of the trailing assistant turn that never got results."""
    answered: set[str] = set()
    for msg in reversed(messages):
        if isinstance(msg, ToolResultMessage):
            answered.add(msg.call_id)
            continue
        if isinstance(msg, AssistantMessage) and msg.stop_reason == StopReason.TOOL_CALLS:
            return [
                PendingToolCall.from_call(tc) for tc in msg.tool_calls if tc.call_id not in answered
            ]
        return []
    return []


def replay(entries: list[SessionEntry], session_id: str | None = None) -> AgentState:
    """Rebuild conversation state from stored entries, oldest first."""
    state = AgentState(session_id=session_id)
    for entry in entries:
        if entry.is_compaction:
            state.messages = list(entry.messages)
            state.last_compaction = None
        else:
            state.messages.extend(entry.messages)
    for msg in state.messages:
        if isinstance(msg, AssistantMessage):
            state.usage.add(msg.usage)
            if msg.response_id is not None:
                state.response_id = msg.response_id
            state.most_recent_stop_reason = msg.stop_reason
    state.pending_tool_calls = _dangling_calls(state.messages)
    return state
