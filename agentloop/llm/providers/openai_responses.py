"""
OpenAI Responses API adapter (``POST {base_url}/responses``).

Conversation state is chained server-side with ``previous_response_id``
when the last assistant turn in context came from this API; otherwise the
whole transformed history is sent as input items.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Callable

from agentloop.llm.compat import openai_tool_id
from agentloop.llm.models import Model
from agentloop.llm.providers.base import (
    ProviderAdapter,
    TurnContext,
    merge_headers,
    pop_option,
)
from agentloop.llm.sse import SSEEvent
from agentloop.messages import (
    AgentState,
    AssistantMessage,
    ImageContent,
    Message,
    TextContent,
    ThinkingContent,
    ToolCallContent,
    ToolResultMessage,
    TurnInput,
    Usage,
    UserMessage,
    message_text,
)
from agentloop.types import StopReason, StreamProtocolError

if TYPE_CHECKING:
    from agentloop.agent import Agent

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Input items
# ---------------------------------------------------------------------------


def _input_content(blocks: list) -> list[dict]:
    content: list[dict] = []
    for block in blocks:
        if isinstance(block, TextContent):
            content.append({"type": "input_text", "text": block.text})
        elif isinstance(block, ImageContent):
            content.append({"type": "input_image", "image_url": block.data_url()})
    return content


def tool_output(result: ToolResultMessage) -> str | list[dict]:
    """A single text block goes out as a plain string."""
    content = _input_content(result.content)
    if not content:
        return ""
    if len(content) == 1 and content[0]["type"] == "input_text":
        return content[0]["text"]
    return content


def message_items(msg: Message) -> list[dict]:
    """Responses input items for one message."""
    if isinstance(msg, UserMessage):
        content = _input_content(msg.content)
        return [{"role": "user", "content": content}] if content else []
    if isinstance(msg, ToolResultMessage):
        return [
            {
                "type": "function_call_output",
                "call_id": msg.call_id,
                "output": tool_output(msg),
            }
        ]

    items: list[dict] = []
    thinking = "".join(b.thinking for b in msg.content if isinstance(b, ThinkingContent))
    if thinking:
        items.append(
            {
                "type": "reasoning",
                "summary": [{"type": "summary_text", "text": thinking}],
                "status": "completed",
            }
        )
    text = message_text(msg)
    if text:
        items.append(
            {
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": text}],
                "status": "completed",
            }
        )
    calls = [b for b in msg.content if isinstance(b, ToolCallContent)]
    if calls:
        for block in calls:
            items.append(
                {
                    "type": "function_call",
                    "call_id": block.id,
                    "name": block.name,
                    "arguments": json.dumps(block.arguments),
                }
            )
    else:
        for tc in msg.tool_calls:
            items.append(
                {
                    "type": "function_call",
                    "call_id": tc.call_id,
                    "name": tc.name,
                    "arguments": tc.arguments,
                }
            )
    return items


def input_items(messages: list[Message]) -> list[dict]:
    items: list[dict] = []
    for msg in messages:
        items.extend(message_items(msg))
    return items


def responses_usage(raw: dict | None, *, subtract_cached: bool = False) -> Usage:
    """Usage from a Responses ``usage`` object.

    Codex counts cached tokens inside ``input_tokens``; *subtract_cached*
    removes them so they are not billed twice.
    """
    usage = Usage()
    if not raw:
        return usage
    input_tokens = raw.get("input_tokens") or 0
    output_tokens = raw.get("output_tokens") or 0
    details = raw.get("input_tokens_details") or {}
    cached = details.get("cached_tokens") or 0
    usage.input = input_tokens - cached if subtract_cached else input_tokens
    usage.output = output_tokens
    usage.cache_read = cached
    usage.total = raw.get("total_tokens") or input_tokens + output_tokens
    return usage


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class OpenAIResponsesAdapter(ProviderAdapter):
    """``/responses`` with server-side conversation chaining."""

    api = "openai-responses"
    id_prefix = "openai"

    def normalize_tool_call_id(self, model: Model) -> Callable[[str], str] | None:
        return openai_tool_id

    def endpoint(self, model: Model, options: dict[str, Any]) -> str:
        return f"{model.base_url.rstrip('/')}/responses"

    def build_headers(
        self, model: Model, api_key: str, state: AgentState, options: dict[str, Any]
    ) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        return merge_headers(headers, model)

    def build_tools(self, agent: Agent) -> list[dict] | None:
        tools = [t.to_responses_schema() for t in agent.tools.list()]
        return tools or None

    def chained_response_id(self, state: AgentState, messages: list[Message]) -> str | None:
        """``state.response_id`` if it belongs to the last assistant turn in context."""
        if not state.response_id:
            return None
        for msg in reversed(messages):
            if isinstance(msg, AssistantMessage):
                if msg.api == self.api and msg.response_id == state.response_id:
                    return state.response_id
                return None
        return None

    def build_body(
        self,
        agent: Agent,
        model: Model,
        state: AgentState,
        messages: list[Message],
        turn_input: TurnInput,
        options: dict[str, Any],
    ) -> dict[str, Any]:
        previous = self.chained_response_id(state, messages)
        if previous is not None:
            last = max(i for i, m in enumerate(messages) if isinstance(m, AssistantMessage))
            items = input_items(messages[last + 1 :])
        else:
            items = input_items(messages)

        body: dict[str, Any] = {"model": model.id, "input": items, "stream": True}
        if previous is not None:
            body["previous_response_id"] = previous
        instructions = pop_option(options, "instructions")
        if instructions or agent.prompt:
            body["instructions"] = instructions or agent.prompt
        tools = self.build_tools(agent)
        if tools:
            body["tools"] = tools
        max_tokens = pop_option(options, "max_tokens", "max_output_tokens", "max_completion_tokens")
        if max_tokens is not None:
            body["max_output_tokens"] = max_tokens
        effort = pop_option(options, "reasoning_effort", "reasoning")
        if isinstance(effort, dict):
            body["reasoning"] = effort
        elif effort is not None:
            body["reasoning"] = {"effort": effort, "summary": "auto"}
        body.update(options)
        return body

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def handle_event(self, turn: TurnContext, event: SSEEvent, data: Any) -> None:
        if not isinstance(data, dict):
            return
        kind = data.get("type") or event.event or ""
        norm = turn.normalizer
        item_id = data.get("item_id")

        if kind == "response.created":
            response = data.get("response") or {}
            if response.get("id"):
                turn.message.response_id = str(response["id"])
            norm.start()
        elif kind == "response.output_item.added":
            norm.start()
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                norm.tool_call_started(
                    call_id=item.get("call_id"),
                    name=item.get("name") or "",
                    item_id=item.get("id"),
                    arguments=item.get("arguments") or "",
                )
        elif kind == "response.content_part.added":
            norm.start()
        elif kind == "response.reasoning_summary_part.added":
            norm.start()
            # Summary parts are joined by a blank line, never trailed by one.
            if data.get("summary_index"):
                norm.thinking_delta("\n\n", signature=item_id, item_id=item_id)
        elif kind in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
            norm.thinking_delta(data.get("delta") or "", signature=item_id, item_id=item_id)
        elif kind == "response.output_text.delta":
            norm.text_delta(data.get("delta") or "", signature=item_id, item_id=item_id)
        elif kind == "response.refusal.delta":
            norm.refusal_delta(data.get("delta") or "", item_id=item_id)
        elif kind == "response.function_call_arguments.delta":
            norm.tool_arguments_delta(
                data.get("delta") or "", call_id=data.get("call_id"), item_id=item_id
            )
        elif kind == "response.output_item.done":
            self._output_item_done(turn, data.get("item") or {})
        elif kind in ("response.completed", "response.done"):
            self._response_finished(turn, data.get("response") or {})
            turn.done = True
        elif kind in ("response.failed", "response.incomplete"):
            response = data.get("response") or {}
            self._response_finished(turn, response)
            if kind == "response.failed":
                turn.message.error_message = self.failure_message(data)
            turn.done = True
        elif kind == "error":
            turn.finish_reason = "failed"
            norm.error(StreamProtocolError(self.format_error_event(data)))

    def _output_item_done(self, turn: TurnContext, item: dict) -> None:
        norm = turn.normalizer
        norm.start()
        item_type = item.get("type")
        if item_type == "function_call":
            norm.tool_call_done(
                call_id=item.get("call_id"),
                name=item.get("name"),
                arguments=item.get("arguments"),
                item_id=item.get("id"),
            )
        elif item_type == "reasoning":
            summary = item.get("summary") or []
            text = "\n\n".join(
                s.get("text", "") for s in summary if isinstance(s, dict)
            )
            norm.complete_thinking(text, signature=item.get("id"))
        elif item_type == "message":
            parts = []
            for part in item.get("content") or []:
                if not isinstance(part, dict):
                    continue
                if part.get("type") == "output_text":
                    parts.append(part.get("text") or "")
                elif part.get("type") == "refusal":
                    parts.append(part.get("refusal") or "")
            norm.complete_text("".join(parts), signature=item.get("id"))

    def _response_finished(self, turn: TurnContext, response: dict) -> None:
        if response.get("status"):
            turn.finish_reason = str(response["status"])
        if response.get("id"):
            turn.message.response_id = str(response["id"])
        if response.get("usage"):
            turn.usage = self.usage_from(response["usage"])

    def usage_from(self, raw: dict) -> Usage:
        return responses_usage(raw)

    def failure_message(self, data: dict) -> str:
        err = (data.get("response") or {}).get("error") or {}
        return str(err.get("message") or "Response failed")

    def format_error_event(self, data: dict) -> str:
        message = data.get("message") or "unknown error"
        code = data.get("code")
        return f"{message} (code={code})" if code else str(message)

    def stop_reason(self, turn: TurnContext) -> StopReason:
        status = turn.finish_reason
        if status in ("failed", "cancelled"):
            return StopReason.ERROR
        if status == "incomplete":
            return StopReason.LENGTH
        return StopReason.TOOL_CALLS if turn.message.tool_calls else StopReason.STOP
