"""
History compaction.

When the previous provider call's prompt came close to the model's context
window, the oldest part of the conversation is summarized by a tool-less
copy of the agent and replaced with a ``CompactionSummaryMessage``.  Cuts
only ever happen in front of a ``UserMessage`` so a tool call is never
separated from its result.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from agentloop.llm.models import Model
from agentloop.llm.providers import get_adapter
from agentloop.messages import (
    AgentState,
    AssistantMessage,
    CompactionSummaryMessage,
    ImageContent,
    Message,
    ToolResultMessage,
    UserMessage,
    message_text,
)

if TYPE_CHECKING:
    from agentloop.abort import AbortToken
    from agentloop.agent import Agent
    from agentloop.llm.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

IMAGE_CHARS = 1000
RESULT_PREVIEW_LIMIT = 500

SUMMARY_PROMPT = """\
You are summarizing a conversation between a user and an AI assistant for context continuity.
The assistant may have used tools during the conversation.
Produce a structured summary in the following format:

## Goal
[What is the user trying to accomplish?]

## Constraints & Preferences
- [Listed constraints or preferences, or "(none)"]

## Progress
### Done
- [x] [Completed tasks]
### In Progress
- [ ] [Current work]
### Blocked
- [Issues preventing progress, if any]

## Key Decisions
- **[Decision]**: [Brief rationale]

## Next Steps
1. [Ordered list for continuation]

## Critical Context
- [Any data, references, file paths, or constraints needed to continue]
"""

UPDATE_PROMPT = """\
You are updating a conversation summary for context continuity.
The assistant may have used tools during the conversation.
A previous summary exists. Merge new information while preserving all previous content.
Move items from "In Progress" to "Done" as appropriate. Add new decisions and next steps.

<previous-summary>
{summary}
</previous-summary>

Produce the updated summary in the same structured format:

## Goal
## Constraints & Preferences
## Progress
### Done
### In Progress
### Blocked
## Key Decisions
## Next Steps
## Critical Context
"""


@dataclass
class CompactionConfig:
    enabled: bool = True
    reserve_tokens: int = 16384
    keep_recent_tokens: int = 20000


# ---------------------------------------------------------------------------
# Estimation and cut points
# ---------------------------------------------------------------------------


def estimate_tokens(msg: Message) -> int:
    """Rough size of *msg* at ~4 characters per token."""
    extra = 0
    if isinstance(msg, AssistantMessage):
        extra = sum(len(tc.arguments) for tc in msg.tool_calls)
    elif isinstance(msg, (UserMessage, ToolResultMessage)):
        extra = IMAGE_CHARS * sum(1 for b in msg.content if isinstance(b, ImageContent))
    return math.ceil((len(message_text(msg)) + extra) / 4)


def find_cut_point(messages: list[Message], keep_recent_tokens: int) -> int | None:
    """
    Index of the first message to keep, or ``None`` when nothing can go.

    Walks back from the end until *keep_recent_tokens* are covered, then
    forward to the next ``UserMessage``; when none follows, back to the
    closest earlier one.
    """
    if len(messages) <= 1:
        return None
    accumulated = 0
    candidate = None
    for idx in range(len(messages) - 1, -1, -1):
        accumulated += estimate_tokens(messages[idx])
        if accumulated >= keep_recent_tokens:
            candidate = idx
            break
    if candidate is None:
        return None
    for idx in range(candidate, len(messages)):
        if isinstance(messages[idx], UserMessage):
            return idx
    for idx in range(candidate - 1, 0, -1):
        if isinstance(messages[idx], UserMessage):
            return idx
    return None


def format_messages_for_summary(messages: list[Message]) -> str:
    parts: list[str] = []
    for msg in messages:
        if isinstance(msg, UserMessage):
            parts.append(f"User: {message_text(msg)}")
        elif isinstance(msg, AssistantMessage):
            text = message_text(msg)
            if text:
                parts.append(f"Assistant: {text}")
            for tc in msg.tool_calls:
                parts.append(f"Assistant called tool: {tc.name}({tc.arguments})")
        elif isinstance(msg, ToolResultMessage):
            text = message_text(msg)
            if len(text) > RESULT_PREVIEW_LIMIT:
                text = text[:RESULT_PREVIEW_LIMIT] + "... (truncated)"
            label = "error" if msg.is_error else "result"
            parts.append(f"Tool {msg.name} {label}: {text}")
        elif isinstance(msg, CompactionSummaryMessage):
            parts.append(f"Previous summary:\n{msg.summary}")
    return "\n\n".join(parts)


def prompt_tokens(msg: AssistantMessage | None) -> int:
    if msg is None:
        return 0
    u = msg.usage
    return u.input + u.cache_read + u.cache_write


# ---------------------------------------------------------------------------
# Compactor
# ---------------------------------------------------------------------------


class Compactor:
    """
    Summarize-and-replace for one conversation's history.

    Parameters
    ----------
    config:
        Thresholds; ``enabled=False`` turns every call into a no-op.
    adapter_factory:
        Builds the adapter used for the summary call, keyed by api name.
    """

    def __init__(
        self,
        config: CompactionConfig | None = None,
        *,
        adapter_factory: Callable[..., ProviderAdapter] = get_adapter,
    ) -> None:
        self.config = config or CompactionConfig()
        self.adapter_factory = adapter_factory

    def should_compact(self, state: AgentState, model: Model) -> bool:
        if not self.config.enabled:
            return False
        used = prompt_tokens(state.last_assistant_message())
        return used > 0 and used > model.context_window - self.config.reserve_tokens

    async def maybe_compact(
        self,
        agent: Agent,
        state: AgentState,
        *,
        api_key: str | None = None,
        abort: AbortToken | None = None,
        **options: Any,
    ) -> CompactionSummaryMessage | None:
        if not self.should_compact(state, agent.model):
            return None
        return await self.compact(agent, state, api_key=api_key, abort=abort, **options)

    async def summarize(
        self,
        agent: Agent,
        messages: list[Message],
        previous: CompactionSummaryMessage | None,
        *,
        api_key: str | None = None,
        abort: AbortToken | None = None,
        **options: Any,
    ) -> str:
        if previous is not None:
            prompt = UPDATE_PROMPT.format(summary=previous.summary)
        else:
            prompt = SUMMARY_PROMPT
        summarizer = agent.without_tools(prompt=prompt, name=f"{agent.name}-compaction")
        adapter = self.adapter_factory(summarizer.model.api)
        response = await adapter.stream(
            summarizer,
            AgentState(),
            "Summarize this conversation:\n\n" + format_messages_for_summary(messages),
            api_key=summarizer.resolve_api_key(api_key),
            abort=abort,
            **options,
        )
        return message_text(response.message)

    async def compact(
        self,
        agent: Agent,
        state: AgentState,
        *,
        api_key: str | None = None,
        abort: AbortToken | None = None,
        **options: Any,
    ) -> CompactionSummaryMessage | None:
        """
        Replace everything before the cut point with a summary.

        Returns the new summary message (also stored as
        ``state.last_compaction``), or ``None`` when nothing was compacted.
        """
        messages = state.messages
        cut = find_cut_point(messages, self.config.keep_recent_tokens)
        if cut is None:
            return None
        previous = messages[0] if isinstance(messages[0], CompactionSummaryMessage) else None
        start = 1 if previous is not None else 0
        discard = messages[start:cut]
        if not discard:
            return None

        try:
            summary = await self.summarize(
                agent, discard, previous, api_key=api_key, abort=abort, **options
            )
        except Exception:
            logger.warning("Compaction summary generation failed, skipping compaction", exc_info=True)
            return None

        tokens_before = sum(estimate_tokens(m) for m in discard)
        if previous is not None:
            tokens_before += previous.tokens_before
        compaction = CompactionSummaryMessage(summary=summary, tokens_before=tokens_before)
        state.messages[:] = [compaction, *messages[cut:]]
        state.last_compaction = compaction
        logger.info(
            "Compacted %d messages (~%d tokens) for %s", len(discard), tokens_before, agent.name
        )
        return compaction
