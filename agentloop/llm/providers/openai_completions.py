"""
OpenAI-compatible chat-completion adapter.

Works with any endpoint that speaks the ``/chat/completions`` wire protocol
(OpenAI itself, Mistral, xAI, Groq, Cerebras, OpenRouter, vLLM, LM Studio...).
Per-provider deviations are resolved by ``agentloop.llm.compat``.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import TYPE_CHECKING, Any, Callable

from agentloop.abort import AbortToken
from agentloop.llm.compat import (
    CompletionsCompat,
    mistral_tool_id,
    openai_tool_id,
    resolve_compat,
    sanitize_tool_id,
)
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
    message_text,
)
from agentloop.types import StopReason, StreamProtocolError

if TYPE_CHECKING:
    from agentloop.agent import Agent

logger = logging.getLogger(__name__)

REASONING_FIELDS = ("reasoning_content", "reasoning", "reasoning_text")
TOOL_IMAGES_PREFIX = "Attached image(s) from tool result:"
TOOL_RESULT_ACK = "I have processed the tool results."
IMAGE_PLACEHOLDER = "(see attached image)"

_FINISH_MAP = {
    "tool_calls": StopReason.TOOL_CALLS,
    "function_call": StopReason.TOOL_CALLS,
    "length": StopReason.LENGTH,
    "content_filter": StopReason.CONTENT_FILTER,
    "stop": StopReason.STOP,
}


def _has_tool_history(messages: list[Message]) -> bool:
    return any(
        isinstance(m, ToolResultMessage)
        or (isinstance(m, AssistantMessage) and m.tool_calls)
        for m in messages
    )


def reasoning_details_from_signature(signature: str | None) -> list | None:
    """The ``reasoning_details`` list a thinking signature carries, if any."""
    if not signature or not signature.startswith("["):
        return None
    try:
        parsed = json.loads(signature)
    except ValueError:
        return None
    return parsed if isinstance(parsed, list) else None


def _detail_text(detail: Any) -> str | None:
    if not isinstance(detail, dict):
        return None
    text = detail.get("text")
    if not isinstance(text, str):
        text = detail.get("summary")
    return text if isinstance(text, str) else None


class OpenAICompletionsAdapter(ProviderAdapter):
    """``/chat/completions``, streaming or not."""

    api = "openai-completions"
    id_prefix = "openai"

    def normalize_tool_call_id(self, model: Model) -> Callable[[str], str] | None:
        compat = resolve_compat(model)
        if compat.requires_mistral_tool_ids:
            return mistral_tool_id
        if model.provider == "openai":
            return openai_tool_id
        if model.provider == "github-copilot" and "claude" in model.id.lower():
            return sanitize_tool_id
        return None

    def endpoint(self, model: Model, options: dict[str, Any]) -> str:
        return f"{model.base_url.rstrip('/')}/chat/completions"

    def build_headers(
        self, model: Model, api_key: str, state: AgentState, options: dict[str, Any]
    ) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return merge_headers(headers, model)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def build_tools(self, agent: Agent, messages: list[Message]) -> list[dict] | None:
        tools = agent.tools.to_openai_schema()
        if tools:
            return tools
        # Some servers reject tool history unless a tools array is present.
        return [] if _has_tool_history(messages) else None

    def build_messages(
        self, agent: Agent, model: Model, messages: list[Message], compat: CompletionsCompat
    ) -> list[dict]:
        out: list[dict] = []
        if agent.prompt:
            role = "developer" if model.reasoning and compat.supports_developer_role else "system"
            out.append({"role": role, "content": agent.prompt})

        last_role: str | None = None
        i = 0
        while i < len(messages):
            msg = messages[i]
            if (
                compat.requires_assistant_after_tool_result
                and last_role == "toolResult"
                and isinstance(msg, UserMessage)
            ):
                out.append({"role": "assistant", "content": TOOL_RESULT_ACK})

            if isinstance(msg, UserMessage):
                parts = self._user_parts(msg, model)
                if parts:
                    out.append({"role": "user", "content": parts})
                    last_role = "user"
            elif isinstance(msg, AssistantMessage):
                converted = self._assistant_message(msg, model, compat)
                if converted is not None:
                    out.append(converted)
                    last_role = "assistant"
            elif isinstance(msg, ToolResultMessage):
                images: list[dict] = []
                while i < len(messages) and isinstance(messages[i], ToolResultMessage):
                    result = messages[i]
                    text = message_text(result)
                    entry = {
                        "role": "tool",
                        "content": text or IMAGE_PLACEHOLDER,
                        "tool_call_id": result.call_id,
                    }
                    if compat.requires_tool_result_name:
                        entry["name"] = result.name
                    out.append(entry)
                    if model.supports_images:
                        images.extend(
                            {"type": "image_url", "image_url": {"url": b.data_url()}}
                            for b in result.content
                            if isinstance(b, ImageContent)
                        )
                    i += 1
                if images:
                    if compat.requires_assistant_after_tool_result:
                        out.append({"role": "assistant", "content": TOOL_RESULT_ACK})
                    out.append(
                        {
                            "role": "user",
                            "content": [{"type": "text", "text": TOOL_IMAGES_PREFIX}, *images],
                        }
                    )
                    last_role = "user"
                else:
                    last_role = "toolResult"
                continue
            i += 1
        return out

    def _user_parts(self, msg: UserMessage, model: Model) -> list[dict]:
        parts: list[dict] = []
        for block in msg.content:
            if isinstance(block, TextContent):
                parts.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageContent) and model.supports_images:
                parts.append({"type": "image_url", "image_url": {"url": block.data_url()}})
        return parts

    def _assistant_message(
        self, msg: AssistantMessage, model: Model, compat: CompletionsCompat
    ) -> dict | None:
        entry: dict[str, Any] = {
            "role": "assistant",
            "content": "" if compat.requires_assistant_after_tool_result else None,
        }
        texts = [b.text for b in msg.content if isinstance(b, TextContent) and b.text.strip()]
        thinking = [b for b in msg.content if isinstance(b, ThinkingContent) and b.thinking.strip()]
        calls = [b for b in msg.content if isinstance(b, ToolCallContent)]
        if not calls and msg.tool_calls:
            calls = [
                ToolCallContent(id=tc.call_id, name=tc.name, arguments=loads_tool_arguments(tc.arguments))
                for tc in msg.tool_calls
            ]

        content: list[dict] = [{"type": "text", "text": t} for t in texts]
        has_reasoning = False
        # Encrypted-only details have no visible text but still go back.
        details = None
        for block in msg.content:
            if isinstance(block, ThinkingContent):
                details = reasoning_details_from_signature(block.thinking_signature)
                if details is not None:
                    break
        if details is not None:
            entry["reasoning_details"] = details
            has_reasoning = True
        if thinking and compat.requires_thinking_as_text:
            joined = "\n\n".join(b.thinking for b in thinking)
            content.insert(0, {"type": "text", "text": joined})
        elif details is None and thinking and thinking[0].thinking_signature:
            # Replayed under the field it streamed in (e.g. reasoning_content).
            entry[thinking[0].thinking_signature] = "\n".join(b.thinking for b in thinking)
            has_reasoning = True
        if content:
            entry["content"] = content

        if calls:
            entry["tool_calls"] = [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
                }
                for c in calls
            ]

        if not content and not calls and not has_reasoning:
            return None
        return entry

    def build_body(
        self,
        agent: Agent,
        model: Model,
        state: AgentState,
        messages: list[Message],
        turn_input: TurnInput,
        options: dict[str, Any],
    ) -> dict[str, Any]:
        compat = resolve_compat(model)
        use_stream = pop_option(options, "stream")
        use_stream = True if use_stream is None else bool(use_stream)

        body: dict[str, Any] = {
            "model": model.id,
            "messages": self.build_messages(agent, model, messages, compat),
            "stream": use_stream,
        }
        tools = self.build_tools(agent, messages)
        if tools is not None:
            body["tools"] = tools

        effort = pop_option(options, "reasoning_effort", "reasoning")
        if effort is not None and compat.supports_reasoning_effort:
            body["reasoning_effort"] = effort
        if compat.thinking_format == "zai" and model.reasoning and "thinking" not in options:
            body["thinking"] = {"type": "enabled" if effort is not None else "disabled"}

        max_tokens = pop_option(options, "max_tokens", "max_completion_tokens", "maxTokens")
        if max_tokens is not None:
            body[compat.max_tokens_field] = max_tokens

        if compat.supports_usage_in_streaming and use_stream and "stream_options" not in options:
            body["stream_options"] = {"include_usage": True}
        if compat.supports_store and "store" not in options:
            body["store"] = False
        body.update(options)
        return body

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def send(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
        turn: TurnContext,
        abort: AbortToken | None,
    ) -> None:
        if body.get("stream", True):
            await super().send(url, body, headers, turn, abort)
            return
        headers = {**headers, "Accept": "application/json"}
        data = await self.post_json(url, body, headers)
        self.handle_completion(turn, data)

    def handle_completion(self, turn: TurnContext, data: dict) -> None:
        """Fold a whole (non-streamed) completion."""
        norm = turn.normalizer
        if data.get("id"):
            turn.message.response_id = str(data["id"])
        if data.get("usage"):
            turn.usage = self.usage_from(data["usage"])
        choices = data.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        message = choice.get("message") or {}

        if message.get("reasoning_details"):
            self.fold_reasoning_details(turn, message["reasoning_details"])
        else:
            reasoning = [message[f] for f in REASONING_FIELDS if message.get(f)]
            if reasoning:
                norm.thinking_delta("\n\n".join(reasoning))
        content = message.get("content")
        if isinstance(content, str) and content:
            norm.text_delta(content)
        elif isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text" and part.get("text"):
                    norm.text_delta(part["text"])
        for tc in message.get("tool_calls") or []:
            function = tc.get("function") or {}
            norm.tool_call_done(
                call_id=tc.get("id") or f"{self.id_prefix}-{uuid.uuid4().hex}",
                name=function.get("name") or "",
                arguments=function.get("arguments") or "{}",
            )
        turn.finish_reason = choice.get("finish_reason")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def handle_event(self, turn: TurnContext, event: SSEEvent, data: Any) -> None:
        if not isinstance(data, dict):
            return
        norm = turn.normalizer
        if data.get("id"):
            turn.message.response_id = str(data["id"])
        if data.get("usage"):
            turn.usage = self.usage_from(data["usage"])
        if isinstance(data.get("error"), dict):
            norm.error(StreamProtocolError(str(data["error"].get("message") or data["error"])))
            return

        choices = data.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        delta = choice.get("delta") or {}

        if delta.get("content"):
            norm.text_delta(delta["content"])
        if delta.get("reasoning_details"):
            # OpenRouter mirrors the same text in ``reasoning``; details win.
            self.fold_reasoning_details(turn, delta["reasoning_details"])
        else:
            for name in REASONING_FIELDS:
                value = delta.get(name)
                if value:
                    norm.thinking_delta(value, signature=name)
        for tool_delta in delta.get("tool_calls") or []:
            index = tool_delta.get("index", 0)
            key = turn.index_keys.setdefault(index, f"{self.id_prefix}-{uuid.uuid4().hex}")
            function = tool_delta.get("function") or {}
            norm.tool_call_started(
                call_id=tool_delta.get("id"), name=function.get("name") or "", item_id=key
            )
            if function.get("arguments"):
                norm.tool_arguments_delta(function["arguments"], item_id=key)
        if choice.get("finish_reason"):
            turn.finish_reason = choice["finish_reason"]

    def fold_reasoning_details(self, turn: TurnContext, details: Any) -> None:
        """
        Fold a ``reasoning_details`` chunk into the open thinking block.

        Details arrive either as fragments (OpenRouter) or as cumulative
        snapshots (MiniMax); only the unseen suffix becomes a delta.  The
        merged detail list is kept as the block's signature so it can be
        sent back verbatim.
        """
        norm = turn.normalizer
        if not isinstance(details, list):
            details = [details]
        new_text: list[str] = []
        for detail in details:
            if not isinstance(detail, dict):
                continue
            text = _detail_text(detail)
            self._merge_detail(turn, detail, text)
            if text is None:
                continue
            buffer = turn.reasoning_buffer
            if buffer and text.startswith(buffer):
                new_text.append(text[len(buffer):])
                turn.reasoning_buffer = text
            else:
                new_text.append(text)
                turn.reasoning_buffer += text
        signature = json.dumps(turn.reasoning_details)
        delta = "".join(new_text)
        if delta:
            norm.thinking_delta(delta)
            norm.message.content[-1].thinking_signature = signature
        elif norm.message.content and isinstance(norm.message.content[-1], ThinkingContent):
            norm.message.content[-1].thinking_signature = signature
        elif turn.reasoning_details:
            norm.open_thinking(signature)

    def _merge_detail(self, turn: TurnContext, detail: dict, text: str | None) -> None:
        stored = turn.reasoning_details
        last = stored[-1] if stored else None
        same_slot = (
            last is not None
            and last.get("type") == detail.get("type")
            and last.get("index") == detail.get("index")
        )
        if not same_slot or text is None:
            stored.append(dict(detail))
            return
        key = "text" if "text" in detail else "summary"
        previous = last.get(key) or ""
        merged = dict(last)
        merged.update(detail)
        merged[key] = text if text.startswith(previous) else previous + text
        stored[-1] = merged

    def usage_from(self, raw: dict) -> Usage:
        details = raw.get("prompt_tokens_details") or {}
        cached = details.get("cached_tokens") or 0
        prompt = raw.get("prompt_tokens") or 0
        output = raw.get("completion_tokens") or 0
        return Usage(
            input=prompt - cached,
            output=output,
            cache_read=cached,
            total=raw.get("total_tokens") or prompt + output,
        )

    def stop_reason(self, turn: TurnContext) -> StopReason:
        if turn.message.tool_calls:
            return StopReason.TOOL_CALLS
        return _FINISH_MAP.get(turn.finish_reason or "stop", StopReason.STOP)
