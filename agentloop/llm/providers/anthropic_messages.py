"""
Anthropic Messages API adapter (``POST {base_url}/v1/messages``).

Content blocks stream by index: ``content_block_start`` opens a block,
deltas extend it and ``content_block_stop`` closes it.  Tool results must be
bundled into a single user message per round.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

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
    loads_tool_arguments,
)
from agentloop.types import StopReason, StreamProtocolError

if TYPE_CHECKING:
    from agentloop.agent import Agent

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
TOOL_STREAMING_BETA = "fine-grained-tool-streaming-2025-05-14"
OAUTH_BETA = "oauth-2025-04-20"
OAUTH_TOOL_PREFIX = "agentloop_"
OAUTH_IDENTITY = "You are Claude Code, Anthropic's official CLI for Claude."
IMAGE_PLACEHOLDER = "(see attached image)"

_STOP_MAP = {
    "tool_use": StopReason.TOOL_CALLS,
    "max_tokens": StopReason.LENGTH,
    "refusal": StopReason.CONTENT_FILTER,
    "end_turn": StopReason.STOP,
    "stop_sequence": StopReason.STOP,
    "pause_turn": StopReason.STOP,
}


def is_oauth_token(api_key: str) -> bool:
    return "sk-ant-oat" in api_key


def sanitize_tool_call_id(call_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "_", call_id)[:64]


def _image_block(block: ImageContent) -> dict:
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": block.mime_type, "data": block.data},
    }


def tool_result_content(result: ToolResultMessage) -> str | list[dict]:
    """Plain text unless the result carries images."""
    if not any(isinstance(b, ImageContent) for b in result.content):
        return "\n".join(b.text for b in result.content if isinstance(b, TextContent))
    content: list[dict] = []
    for block in result.content:
        if isinstance(block, TextContent):
            content.append({"type": "text", "text": block.text})
        elif isinstance(block, ImageContent):
            content.append(_image_block(block))
    if not any(c["type"] == "text" for c in content):
        content.insert(0, {"type": "text", "text": IMAGE_PLACEHOLDER})
    return content


def tool_result_block(result: ToolResultMessage) -> dict:
    return {
        "type": "tool_result",
        "tool_use_id": sanitize_tool_call_id(result.call_id),
        "content": tool_result_content(result),
        "is_error": result.is_error,
    }


def anthropic_usage(raw: dict | None, usage: Usage | None = None) -> Usage:
    """Fold a Messages ``usage`` object into *usage*; missing fields keep their value."""
    usage = usage or Usage()
    if not raw:
        return usage
    if raw.get("input_tokens") is not None:
        usage.input = raw["input_tokens"]
    if raw.get("output_tokens") is not None:
        usage.output = raw["output_tokens"]
    if raw.get("cache_creation_input_tokens") is not None:
        usage.cache_write = raw["cache_creation_input_tokens"]
    if raw.get("cache_read_input_tokens") is not None:
        usage.cache_read = raw["cache_read_input_tokens"]
    usage.total = usage.input + usage.output + usage.cache_write + usage.cache_read
    return usage


class AnthropicMessagesAdapter(ProviderAdapter):
    """``/v1/messages`` with API-key or OAuth credentials."""

    api = "anthropic-messages"
    id_prefix = "toolu"

    def normalize_tool_call_id(self, model: Model):
        return sanitize_tool_call_id

    def endpoint(self, model: Model, options: dict[str, Any]) -> str:
        return f"{model.base_url.rstrip('/')}/v1/messages"

    def prepare_api_key(self, api_key: str, options: dict[str, Any]) -> str:
        options["oauth"] = is_oauth_token(api_key)
        return api_key

    def tool_name_map(self, agent: Agent, api_key: str) -> dict[str, str]:
        if not is_oauth_token(api_key):
            return {}
        return {OAUTH_TOOL_PREFIX + t.name: t.name for t in agent.tools.list()}

    def build_headers(
        self, model: Model, api_key: str, state: AgentState, options: dict[str, Any]
    ) -> dict[str, str]:
        headers = {
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
            "Accept": "application/json",
            "anthropic-dangerous-direct-browser-access": "true",
        }
        if is_oauth_token(api_key):
            headers["Authorization"] = f"Bearer {api_key}"
            headers["anthropic-beta"] = f"{OAUTH_BETA},{TOOL_STREAMING_BETA}"
        else:
            headers["x-api-key"] = api_key
            headers["anthropic-beta"] = TOOL_STREAMING_BETA
        return merge_headers(headers, model)

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def _user_message(self, msg: UserMessage, model: Model) -> dict | None:
        blocks: list[dict] = []
        for block in msg.content:
            if isinstance(block, TextContent):
                if block.text.strip():
                    blocks.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageContent) and model.supports_images:
                blocks.append(_image_block(block))
        if not blocks:
            return None
        if all(b["type"] == "text" for b in blocks):
            return {"role": "user", "content": "".join(b["text"] for b in blocks)}
        return {"role": "user", "content": blocks}

    def _assistant_message(self, msg: AssistantMessage, prefix: str) -> dict | None:
        blocks: list[dict] = []
        saw_calls = False
        for block in msg.content:
            if isinstance(block, TextContent):
                if block.text.strip():
                    blocks.append({"type": "text", "text": block.text})
            elif isinstance(block, ThinkingContent):
                if block.redacted and block.thinking_signature:
                    blocks.append({"type": "redacted_thinking", "data": block.thinking_signature})
                elif block.thinking_signature:
                    blocks.append(
                        {
                            "type": "thinking",
                            "thinking": block.thinking,
                            "signature": block.thinking_signature,
                        }
                    )
                elif block.thinking.strip():
                    blocks.append({"type": "text", "text": block.thinking})
            elif isinstance(block, ToolCallContent):
                saw_calls = True
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": sanitize_tool_call_id(block.id),
                        "name": prefix + block.name,
                        "input": block.arguments,
                    }
                )
        if not saw_calls:
            for call in msg.tool_calls:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": sanitize_tool_call_id(call.call_id),
                        "name": prefix + call.name,
                        "input": loads_tool_arguments(call.arguments),
                    }
                )
        if not blocks:
            return None
        return {"role": "assistant", "content": blocks}

    def build_messages(self, messages: list[Message], model: Model, prefix: str = "") -> list[dict]:
        out: list[dict] = []
        i = 0
        while i < len(messages):
            msg = messages[i]
            if isinstance(msg, ToolResultMessage):
                blocks = []
                while i < len(messages) and isinstance(messages[i], ToolResultMessage):
                    blocks.append(tool_result_block(messages[i]))
                    i += 1
                out.append({"role": "user", "content": blocks})
                continue
            if isinstance(msg, UserMessage):
                converted = self._user_message(msg, model)
            else:
                converted = self._assistant_message(msg, prefix)
            if converted is not None:
                out.append(converted)
            i += 1
        return out

    def build_tools(self, agent: Agent, prefix: str = "") -> list[dict]:
        return [
            {
                "name": prefix + t.name,
                "description": t.description,
                "input_schema": t.parameters,
            }
            for t in agent.tools.list()
        ]

    def build_body(
        self,
        agent: Agent,
        model: Model,
        state: AgentState,
        messages: list[Message],
        turn_input: TurnInput,
        options: dict[str, Any],
    ) -> dict[str, Any]:
        oauth = bool(pop_option(options, "oauth"))
        prefix = OAUTH_TOOL_PREFIX if oauth else ""
        max_tokens = pop_option(options, "max_tokens", "max_output_tokens")

        body: dict[str, Any] = {
            "model": model.id,
            "messages": self.build_messages(messages, model, prefix),
            "max_tokens": max_tokens or model.max_tokens,
            "stream": True,
        }
        if oauth:
            system = [{"type": "text", "text": OAUTH_IDENTITY}]
            if agent.prompt:
                system.append({"type": "text", "text": agent.prompt})
            for block in system:
                block["cache_control"] = {"type": "ephemeral"}
            body["system"] = system
        elif agent.prompt:
            body["system"] = agent.prompt

        tools = self.build_tools(agent, prefix)
        if tools:
            body["tools"] = tools
        budget = pop_option(options, "thinking_budget")
        if budget:
            body["thinking"] = {"type": "enabled", "budget_tokens": int(budget)}
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
        index = data.get("index", 0)

        if kind == "message_start":
            message = data.get("message") or {}
            if message.get("id"):
                turn.message.response_id = str(message["id"])
            turn.usage = anthropic_usage(message.get("usage"), turn.usage)
            norm.start()
        elif kind == "content_block_start":
            self._block_start(turn, index, data.get("content_block") or {})
        elif kind == "content_block_delta":
            self._block_delta(turn, index, data.get("delta") or {})
        elif kind == "content_block_stop":
            if turn.block_kinds.pop(index, None) == "tool_use":
                norm.tool_call_done(call_id=turn.index_keys.pop(index, None))
        elif kind == "message_delta":
            delta = data.get("delta") or {}
            if delta.get("stop_reason"):
                turn.finish_reason = delta["stop_reason"]
            turn.usage = anthropic_usage(data.get("usage"), turn.usage)
        elif kind == "message_stop":
            turn.done = True
        elif kind == "error":
            err = data.get("error") or {}
            message = err.get("message") or "unknown error"
            if err.get("type"):
                message = f"{err['type']}: {message}"
            norm.error(StreamProtocolError(f"Anthropic stream error: {message}"))

    def _block_start(self, turn: TurnContext, index: int, block: dict) -> None:
        norm = turn.normalizer
        block_type = block.get("type")
        turn.block_kinds[index] = block_type
        if block_type == "text":
            norm.open_text()
            if block.get("text"):
                norm.text_delta(block["text"])
        elif block_type == "thinking":
            norm.open_thinking(block.get("signature") or None)
            if block.get("thinking"):
                norm.thinking_delta(block["thinking"])
        elif block_type == "redacted_thinking":
            norm.open_thinking(block.get("data"), redacted=True)
        elif block_type == "tool_use":
            call_id = block.get("id")
            name = block.get("name") or ""
            arguments = block.get("input")
            acc = norm.tool_call_started(
                call_id=call_id,
                name=turn.tool_names.get(name, name),
                arguments=json.dumps(arguments) if arguments else "",
            )
            turn.index_keys[index] = acc.id

    def _block_delta(self, turn: TurnContext, index: int, delta: dict) -> None:
        norm = turn.normalizer
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            norm.text_delta(delta.get("text") or "")
        elif delta_type == "thinking_delta":
            norm.thinking_delta(delta.get("thinking") or "")
        elif delta_type == "signature_delta":
            norm.append_thinking_signature(delta.get("signature") or "")
        elif delta_type == "input_json_delta":
            norm.tool_arguments_delta(
                delta.get("partial_json") or "", call_id=turn.index_keys.get(index)
            )

    def stop_reason(self, turn: TurnContext) -> StopReason:
        if turn.message.tool_calls:
            return StopReason.TOOL_CALLS
        return _STOP_MAP.get(turn.finish_reason or "", StopReason.STOP)
