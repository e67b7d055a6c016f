"""
Provider-neutral history clean-up applied before every request.

``transform_messages`` takes the context history plus the new turn input and
returns a copy that any adapter can transcode without special cases:

  - empty text/thinking blocks are dropped;
  - thinking keeps its signature only when replayed to the model that made
    it, otherwise it degrades to plain text;
  - tool-call ids are rewritten with the adapter's id normalizer and the
    matching tool results follow the rewrite;
  - a compaction summary becomes a user message carrying the summary;
  - a tool call with no result before the next user/assistant message gets
    a synthetic error result, since every provider rejects dangling calls.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable

from agentloop.llm.models import Model
from agentloop.messages import (
    AssistantMessage,
    CompactionSummaryMessage,
    Message,
    TextContent,
    ThinkingContent,
    ToolCallContent,
    ToolResultMessage,
    UserMessage,
)

MISSING_RESULT_TEXT = "No result provided"
SUMMARY_PREFIX = "[Previous conversation summary]\n\n"


def _same_model(msg: AssistantMessage, model: Model) -> bool:
    return msg.provider == model.provider and msg.api == model.api and msg.model == model.id


def _transform_assistant(
    msg: AssistantMessage,
    model: Model,
    normalize_id: Callable[[str], str],
    id_map: dict[str, str],
) -> AssistantMessage:
    same = _same_model(msg, model)
    blocks = []
    for block in msg.content:
        if isinstance(block, TextContent):
            if not block.text:
                continue
            blocks.append(
                TextContent(text=block.text, text_signature=block.text_signature if same else None)
            )
        elif isinstance(block, ThinkingContent):
            if same and block.thinking_signature:
                # Encrypted/redacted reasoning may have no visible text.
                blocks.append(replace(block))
            elif block.thinking:
                blocks.append(TextContent(text=block.thinking))
        elif isinstance(block, ToolCallContent):
            new_id = normalize_id(block.id)
            if new_id != block.id:
                id_map[block.id] = new_id
            blocks.append(
                ToolCallContent(
                    id=new_id,
                    name=block.name,
                    arguments=block.arguments,
                    thought_signature=block.thought_signature if same else None,
                )
            )
    tool_calls = [
        replace(tc, call_id=id_map.get(tc.call_id, tc.call_id)) for tc in msg.tool_calls
    ]
    return replace(msg, content=blocks, tool_calls=tool_calls)


def transform_messages(
    messages: list[Message],
    model: Model,
    normalize_tool_call_id: Callable[[str], str] | None = None,
) -> list[Message]:
    normalize_id = normalize_tool_call_id or (lambda call_id: call_id)
    id_map: dict[str, str] = {}

    transformed: list[Message] = []
    for msg in messages:
        if isinstance(msg, AssistantMessage):
            transformed.append(_transform_assistant(msg, model, normalize_id, id_map))
        elif isinstance(msg, ToolResultMessage) and msg.call_id in id_map:
            transformed.append(replace(msg, call_id=id_map[msg.call_id]))
        elif isinstance(msg, CompactionSummaryMessage):
            transformed.append(
                UserMessage(content=SUMMARY_PREFIX + msg.summary, timestamp=msg.compacted_at)
            )
        else:
            transformed.append(msg)

    result: list[Message] = []
    pending: list[ToolCallContent] = []
    resolved: set[str] = set()

    def flush() -> None:
        for call in pending:
            if call.id not in resolved:
                result.append(
                    ToolResultMessage(
                        call_id=call.id,
                        name=call.name,
                        content=[TextContent(text=MISSING_RESULT_TEXT)],
                        is_error=True,
                    )
                )
        pending.clear()
        resolved.clear()

    for msg in transformed:
        if isinstance(msg, AssistantMessage):
            flush()
            result.append(msg)
            pending.extend(b for b in msg.content if isinstance(b, ToolCallContent))
        elif isinstance(msg, ToolResultMessage):
            resolved.add(msg.call_id)
            result.append(msg)
        else:
            flush()
            result.append(msg)
    flush()
    return result
