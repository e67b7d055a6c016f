"""
Google Generative AI adapter (``models/{id}:streamGenerateContent?alt=sse``).

Gemini has no streaming tool-argument deltas: every ``functionCall`` part
arrives complete.  Reasoning comes back as ``thought`` text parts, and
opaque ``thoughtSignature`` values must be replayed on the same parts they
arrived with, but only to the model that produced them.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import TYPE_CHECKING, Any

from agentloop.llm.compat import sanitize_tool_id
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

IMAGE_PLACEHOLDER = "(see attached image)"
TOOL_IMAGE_PREFIX = "Tool result image:"

_SIGNATURE_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")

_FINISH_MAP = {
    "STOP": StopReason.STOP,
    "MAX_TOKENS": StopReason.LENGTH,
    "SAFETY": StopReason.CONTENT_FILTER,
    "RECITATION": StopReason.CONTENT_FILTER,
    "BLOCKLIST": StopReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": StopReason.CONTENT_FILTER,
    "SPII": StopReason.CONTENT_FILTER,
}

_TOOL_CHOICE = {"auto": "AUTO", "none": "NONE", "any": "ANY", "required": "ANY"}


def requires_tool_call_id(model_id: str) -> bool:
    """Only Claude and gpt-oss models served through Gemini want call ids."""
    return model_id.startswith(("claude-", "gpt-oss-"))


def valid_thought_signature(signature: str | None) -> bool:
    if not signature or len(signature) % 4:
        return False
    return bool(_SIGNATURE_RE.match(signature))


def supports_multimodal_function_response(model_id: str) -> bool:
    return "gemini-3" in model_id.lower()


def historical_call_text(block: ToolCallContent) -> str:
    return (
        f'[Historical context: a different model called tool "{block.name}" with '
        f"arguments: {json.dumps(block.arguments)}. Do not mimic this format - use "
        "proper function calling.]"
    )


def _inline(block: ImageContent) -> dict:
    return {"inlineData": {"mimeType": block.mime_type, "data": block.data}}


def google_usage(raw: dict | None) -> Usage:
    usage = Usage()
    if not raw:
        return usage
    usage.input = raw.get("promptTokenCount") or 0
    usage.output = (raw.get("candidatesTokenCount") or 0) + (raw.get("thoughtsTokenCount") or 0)
    usage.cache_read = raw.get("cachedContentTokenCount") or 0
    usage.total = raw.get("totalTokenCount") or usage.input + usage.output
    return usage


class GoogleGenerativeAdapter(ProviderAdapter):
    """``streamGenerateContent`` on the public Generative Language API."""

    api = "google-generative-ai"
    id_prefix = "gemini"

    def normalize_tool_call_id(self, model: Model):
        if requires_tool_call_id(model.id):
            return sanitize_tool_id
        return None

    def endpoint(self, model: Model, options: dict[str, Any]) -> str:
        return f"{model.base_url.rstrip('/')}/models/{model.id}:streamGenerateContent?alt=sse"

    def build_headers(
        self, model: Model, api_key: str, state: AgentState, options: dict[str, Any]
    ) -> dict[str, str]:
        headers = {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        return merge_headers(headers, model)

    # ------------------------------------------------------------------
    # Contents
    # ------------------------------------------------------------------

    def _user_content(self, msg: UserMessage, model: Model) -> dict | None:
        parts: list[dict] = []
        for block in msg.content:
            if isinstance(block, TextContent):
                if block.text.strip():
                    parts.append({"text": block.text})
            elif isinstance(block, ImageContent) and model.supports_images:
                parts.append(_inline(block))
        return {"role": "user", "parts": parts} if parts else None

    def _model_content(self, msg: AssistantMessage, model: Model) -> dict | None:
        blocks = list(msg.content)
        if not any(isinstance(b, ToolCallContent) for b in blocks):
            blocks.extend(
                ToolCallContent(
                    id=tc.call_id, name=tc.name, arguments=loads_tool_arguments(tc.arguments)
                )
                for tc in msg.tool_calls
            )
        include_id = requires_tool_call_id(model.id)
        gemini3 = "gemini-3" in model.id.lower()

        parts: list[dict] = []
        for block in blocks:
            if isinstance(block, TextContent):
                if not block.text.strip():
                    continue
                part: dict = {"text": block.text}
                if valid_thought_signature(block.text_signature):
                    part["thoughtSignature"] = block.text_signature
                parts.append(part)
            elif isinstance(block, ThinkingContent):
                if not block.thinking.strip():
                    continue
                part = {"text": block.thinking, "thought": True}
                if valid_thought_signature(block.thinking_signature):
                    part["thoughtSignature"] = block.thinking_signature
                parts.append(part)
            elif isinstance(block, ToolCallContent):
                signature = (
                    block.thought_signature
                    if valid_thought_signature(block.thought_signature)
                    else None
                )
                if gemini3 and signature is None:
                    parts.append({"text": historical_call_text(block)})
                    continue
                call: dict = {"name": block.name, "args": block.arguments}
                if include_id:
                    call["id"] = block.id
                part = {"functionCall": call}
                if signature is not None:
                    part["thoughtSignature"] = signature
                parts.append(part)
        return {"role": "model", "parts": parts} if parts else None

    def _tool_result(self, msg: ToolResultMessage, model: Model, contents: list[dict]) -> None:
        text = "\n".join(b.text for b in msg.content if isinstance(b, TextContent))
        images = [
            _inline(b)
            for b in msg.content
            if isinstance(b, ImageContent) and model.supports_images
        ]
        value = text if text else (IMAGE_PLACEHOLDER if images else "")
        multimodal = supports_multimodal_function_response(model.id)

        response: dict = {
            "name": msg.name,
            "response": {"error": value} if msg.is_error else {"output": value},
        }
        if requires_tool_call_id(model.id):
            response["id"] = msg.call_id
        if images and multimodal:
            response["parts"] = images
        part = {"functionResponse": response}

        last = contents[-1] if contents else None
        if (
            last is not None
            and last["role"] == "user"
            and any("functionResponse" in p for p in last["parts"])
        ):
            last["parts"].append(part)
        else:
            contents.append({"role": "user", "parts": [part]})
        if images and not multimodal:
            contents.append({"role": "user", "parts": [{"text": TOOL_IMAGE_PREFIX}, *images]})

    def build_contents(self, messages: list[Message], model: Model) -> list[dict]:
        contents: list[dict] = []
        for msg in messages:
            if isinstance(msg, ToolResultMessage):
                self._tool_result(msg, model, contents)
                continue
            if isinstance(msg, UserMessage):
                content = self._user_content(msg, model)
            else:
                content = self._model_content(msg, model)
            if content is not None:
                contents.append(content)
        return contents

    def build_tools(self, agent: Agent) -> list[dict] | None:
        decls = [
            {"name": t.name, "description": t.description, "parameters": t.parameters}
            for t in agent.tools.list()
        ]
        return [{"functionDeclarations": decls}] if decls else None

    def build_request(
        self, agent: Agent, model: Model, messages: list[Message], options: dict[str, Any]
    ) -> dict[str, Any]:
        """The ``GenerateContentRequest`` shared by both Google APIs."""
        request: dict[str, Any] = {"contents": self.build_contents(messages, model)}
        if agent.prompt:
            request["systemInstruction"] = {"parts": [{"text": agent.prompt}]}

        generation: dict[str, Any] = {}
        temperature = pop_option(options, "temperature")
        if temperature is not None:
            generation["temperature"] = temperature
        max_tokens = pop_option(options, "max_tokens", "max_output_tokens", "maxOutputTokens")
        if max_tokens is not None:
            generation["maxOutputTokens"] = max_tokens
        thinking = self._thinking_config(options)
        if thinking is not None:
            generation["thinkingConfig"] = thinking
        if generation:
            request["generationConfig"] = generation

        tools = self.build_tools(agent)
        if tools:
            request["tools"] = tools
        choice = pop_option(options, "tool_choice")
        if choice is not None:
            mode = _TOOL_CHOICE.get(str(choice).lower(), "AUTO")
            request["toolConfig"] = {"functionCallingConfig": {"mode": mode}}
        request.update(options)
        return request

    def _thinking_config(self, options: dict[str, Any]) -> dict[str, Any] | None:
        thinking = pop_option(options, "thinking")
        level = pop_option(options, "thinking_level")
        budget = pop_option(options, "thinking_budget")
        if isinstance(thinking, dict):
            if not thinking.get("enabled", True):
                return None
            level = thinking.get("level", level)
            budget = thinking.get("budget_tokens", thinking.get("budgetTokens", budget))
        elif not thinking and level is None and budget is None:
            return None
        config: dict[str, Any] = {"includeThoughts": True}
        if level is not None:
            config["thinkingLevel"] = str(level).upper()
        elif budget is not None:
            config["thinkingBudget"] = int(budget)
        return config

    def build_body(
        self,
        agent: Agent,
        model: Model,
        state: AgentState,
        messages: list[Message],
        turn_input: TurnInput,
        options: dict[str, Any],
    ) -> dict[str, Any]:
        return self.build_request(agent, model, messages, options)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def unwrap(self, data: Any) -> dict | None:
        """The ``GenerateContentResponse`` inside one stream frame."""
        return data if isinstance(data, dict) else None

    def handle_event(self, turn: TurnContext, event: SSEEvent, data: Any) -> None:
        chunk = self.unwrap(data)
        if chunk is None:
            return
        norm = turn.normalizer
        if isinstance(chunk.get("error"), dict):
            err = chunk["error"]
            norm.error(StreamProtocolError(f"Gemini stream error: {err.get('message') or err}"))
            return
        if chunk.get("responseId"):
            turn.message.response_id = str(chunk["responseId"])
        if chunk.get("usageMetadata"):
            turn.usage = google_usage(chunk["usageMetadata"])

        candidates = chunk.get("candidates") or []
        if not candidates:
            return
        candidate = candidates[0]
        if candidate.get("finishReason"):
            turn.finish_reason = candidate["finishReason"]
        parts = (candidate.get("content") or {}).get("parts") or []
        for part in parts:
            self._part(turn, part)

    def _part(self, turn: TurnContext, part: dict) -> None:
        norm = turn.normalizer
        signature = part.get("thoughtSignature")
        if "text" in part and part.get("thought"):
            norm.thinking_delta(part["text"] or "", signature=signature)
        elif "text" in part:
            norm.text_delta(part["text"] or "", signature=signature)
        elif "functionCall" in part:
            call = part["functionCall"] or {}
            call_id = call.get("id")
            if call_id and requires_tool_call_id(turn.model.id):
                call_id = sanitize_tool_id(call_id)
            if not call_id or call_id in turn.seen_call_ids:
                call_id = f"{self.id_prefix}-{uuid.uuid4().hex}"
            turn.seen_call_ids.add(call_id)
            norm.tool_call_done(
                call_id=call_id,
                name=call.get("name") or "",
                arguments=json.dumps(call.get("args") or {}),
            )
            if signature:
                block = turn.message.content[-1]
                if isinstance(block, ToolCallContent):
                    block.thought_signature = signature

    def stop_reason(self, turn: TurnContext) -> StopReason:
        if turn.message.tool_calls:
            return StopReason.TOOL_CALLS
        if turn.finish_reason is None:
            return StopReason.STOP
        return _FINISH_MAP.get(turn.finish_reason, StopReason.ERROR)
