"""
ChatGPT-backend Codex adapter (``POST .../codex/responses``).

Speaks the Responses event grammar but with no server-side storage: every
request carries the full history, reasoning is requested as encrypted
content, and the access token is a ChatGPT OAuth JWT whose payload names
the account.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import time
from typing import TYPE_CHECKING, Any, Mapping

from agentloop.llm.models import Model
from agentloop.llm.providers.base import pop_option
from agentloop.llm.providers.openai_responses import (
    OpenAIResponsesAdapter,
    input_items,
    responses_usage,
)
from agentloop.messages import (
    AgentState,
    Message,
    ToolResultMessage,
    TurnInput,
    Usage,
)
from agentloop.types import ConfigError

if TYPE_CHECKING:
    from agentloop.agent import Agent

logger = logging.getLogger(__name__)

CODEX_BASE_URL = "https://chatgpt.com/backend-api"
JWT_CLAIM_PATH = "https://api.openai.com/auth"
ORIGINATOR = "agentloop"
ORPHAN_OUTPUT_LIMIT = 16000

_USAGE_LIMIT_CODES = re.compile(r"usage_limit_reached|usage_not_included|rate_limit_exceeded", re.I)


def resolve_codex_url(base_url: str | None) -> str:
    url = (base_url or "").strip() or CODEX_BASE_URL
    url = url.rstrip("/")
    if url.endswith("/codex/responses"):
        return url
    if url.endswith("/codex"):
        return url + "/responses"
    return url + "/codex/responses"


def clamp_reasoning_effort(model_id: str, effort: str) -> str:
    """Map an effort onto the values a given Codex model accepts."""
    model_id = model_id.rsplit("/", 1)[-1]
    if model_id.startswith(("gpt-5.2", "gpt-5.3")) and effort == "minimal":
        return "low"
    if model_id == "gpt-5.1" and effort == "xhigh":
        return "high"
    if model_id == "gpt-5.1-codex-mini":
        return "high" if effort in ("high", "xhigh") else "medium"
    return effort


def _b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def account_id_from_token(access_token: str) -> str | None:
    parts = access_token.split(".")
    if len(parts) != 3:
        return None
    try:
        payload = json.loads(_b64url_decode(parts[1]))
    except (ValueError, UnicodeDecodeError):
        return None
    claims = payload.get(JWT_CLAIM_PATH) if isinstance(payload, dict) else None
    if not isinstance(claims, dict):
        return None
    account = claims.get("chatgpt_account_id")
    return account if isinstance(account, str) and account else None


def transform_request_body(
    body: dict[str, Any],
    *,
    reasoning_effort: str | None = None,
    reasoning_summary: str | None = None,
    text_verbosity: str | None = None,
    include: list[str] | None = None,
    developer_messages: list[str] | None = None,
    tool_names: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Apply the request rules the Codex backend insists on."""
    body["store"] = False
    body["stream"] = True
    tool_names = tool_names or {}

    items = body.get("input")
    if isinstance(items, list):
        filtered: list[Any] = []
        call_ids: set[str] = set()
        for item in items:
            if not isinstance(item, dict):
                filtered.append(item)
                continue
            if item.get("type") == "item_reference":
                continue
            item = {k: v for k, v in item.items() if k != "id"}
            if item.get("type") == "function_call" and isinstance(item.get("call_id"), str):
                call_ids.add(item["call_id"])
            filtered.append(item)

        mapped: list[Any] = []
        for item in filtered:
            if (
                isinstance(item, dict)
                and item.get("type") == "function_call_output"
                and item.get("call_id") not in call_ids
            ):
                call_id = item.get("call_id", "")
                output = item.get("output", "")
                text = output if isinstance(output, str) else json.dumps(output)
                if len(text) > ORPHAN_OUTPUT_LIMIT:
                    text = text[:ORPHAN_OUTPUT_LIMIT] + "\n...[truncated]"
                name = tool_names.get(call_id, "tool")
                mapped.append(
                    {
                        "type": "message",
                        "role": "assistant",
                        "content": f"[Previous {name} result; call_id={call_id}]: {text}",
                    }
                )
                continue
            mapped.append(item)

        if developer_messages:
            mapped = [
                {
                    "type": "message",
                    "role": "developer",
                    "content": [{"type": "input_text", "text": msg}],
                }
                for msg in developer_messages
            ] + mapped
        body["input"] = mapped

    if reasoning_effort is not None:
        body["reasoning"] = {
            "effort": clamp_reasoning_effort(str(body.get("model", "")), reasoning_effort),
            "summary": reasoning_summary or "auto",
        }
    else:
        body.pop("reasoning", None)

    body["text"] = {**(body.get("text") or {}), "verbosity": text_verbosity or "medium"}

    includes = list(include or [])
    includes.append("reasoning.encrypted_content")
    body["include"] = list(dict.fromkeys(includes))

    body.pop("max_output_tokens", None)
    body.pop("max_completion_tokens", None)
    return body


# ---------------------------------------------------------------------------
# Error formatting
# ---------------------------------------------------------------------------


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}...[truncated {len(text) - limit}]"


def format_codex_failure(raw: dict) -> str:
    response = raw.get("response") if isinstance(raw.get("response"), dict) else None
    error = raw.get("error") if isinstance(raw.get("error"), dict) else None
    if error is None and response is not None and isinstance(response.get("error"), dict):
        error = response["error"]
    error = error or {}

    message = error.get("message") or raw.get("message")
    if not message and response is not None:
        message = response.get("message")
    code = error.get("code") or error.get("type") or raw.get("code")
    status = (response or {}).get("status") or raw.get("status")

    meta = []
    if code:
        meta.append(f"code={code}")
    if status:
        meta.append(f"status={status}")
    if message:
        suffix = f" ({', '.join(meta)})" if meta else ""
        return f"Codex response failed: {message}{suffix}"
    if meta:
        return f"Codex response failed ({', '.join(meta)})"
    return f"Codex response failed: {_truncate(json.dumps(raw), 800)}"


def format_codex_error_event(raw: dict) -> str:
    return format_codex_failure(raw).replace("response failed", "error event", 1)


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_codex_error(
    status: int, body: str, headers: Mapping[str, str], *, now: float | None = None
) -> str:
    """Readable message for a non-2xx Codex answer, with usage-limit hints."""
    message = body or f"Request failed ({status})"
    try:
        parsed = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return message
    err = parsed.get("error") if isinstance(parsed, dict) else None
    if not isinstance(err, dict):
        err = {}

    resets_at = _int_or_none(err.get("resets_at"))
    if resets_at is None:
        resets_at = _int_or_none(headers.get("x-codex-primary-reset-at"))
    if resets_at is None:
        resets_at = _int_or_none(headers.get("x-codex-secondary-reset-at"))
    now_ms = (time.time() if now is None else now) * 1000
    mins = None if resets_at is None else max(0, round((resets_at * 1000 - now_ms) / 60000))

    friendly = None
    code = str(err.get("code") or err.get("type") or "")
    if _USAGE_LIMIT_CODES.search(code) or status == 429:
        plan_type = err.get("plan_type")
        plan = f" ({str(plan_type).lower()} plan)" if plan_type else ""
        when = f" Try again in ~{mins} min." if mins is not None else ""
        friendly = f"You have hit your ChatGPT usage limit{plan}.{when}".strip()

    if isinstance(err.get("message"), str) and err["message"]:
        return err["message"]
    return friendly or message


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class OpenAICodexAdapter(OpenAIResponsesAdapter):
    """Responses grammar against the ChatGPT Codex backend."""

    api = "openai-codex-responses"
    id_prefix = "codex"

    def __init__(self, *, max_retries: int = 3, **kw: Any) -> None:
        super().__init__(max_retries=max_retries, **kw)

    def normalize_tool_call_id(self, model: Model):
        return None

    def endpoint(self, model: Model, options: dict[str, Any]) -> str:
        return resolve_codex_url(model.base_url)

    def build_headers(
        self, model: Model, api_key: str, state: AgentState, options: dict[str, Any]
    ) -> dict[str, str]:
        headers = dict(model.headers or {})
        headers.pop("x-api-key", None)
        account_id = pop_option(options, "account_id") or account_id_from_token(api_key)
        if not account_id:
            raise ConfigError("Could not determine ChatGPT account id from the Codex access token")
        headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "chatgpt-account-id": str(account_id),
                "OpenAI-Beta": "responses=experimental",
                "originator": ORIGINATOR,
                "User-Agent": ORIGINATOR,
                "Accept": "text/event-stream",
                "Content-Type": "application/json",
            }
        )
        if state.session_id:
            headers["session_id"] = state.session_id
            headers["conversation_id"] = state.session_id
        return headers

    def build_body(
        self,
        agent: Agent,
        model: Model,
        state: AgentState,
        messages: list[Message],
        turn_input: TurnInput,
        options: dict[str, Any],
    ) -> dict[str, Any]:
        items = input_items(messages)
        # The backend only takes plain-text tool outputs.
        for item in items:
            if item.get("type") == "function_call_output" and not isinstance(item["output"], str):
                item["output"] = "".join(
                    c.get("text", "") for c in item["output"] if c.get("type") == "input_text"
                )
        tool_names = {m.call_id: m.name for m in messages if isinstance(m, ToolResultMessage)}

        body: dict[str, Any] = {"model": model.id, "input": items}
        if agent.prompt:
            body["instructions"] = agent.prompt
        tools = self.build_tools(agent)
        if tools:
            body["tools"] = tools

        effort = pop_option(options, "reasoning_effort", "reasoning")
        summary = pop_option(options, "reasoning_summary")
        verbosity = pop_option(options, "text_verbosity", "verbosity")
        include = pop_option(options, "include")
        developer = pop_option(options, "developer_messages")
        pop_option(options, "max_tokens", "max_output_tokens", "max_completion_tokens")
        body.update(options)
        return transform_request_body(
            body,
            reasoning_effort=effort,
            reasoning_summary=summary,
            text_verbosity=verbosity,
            include=include,
            developer_messages=developer,
            tool_names=tool_names,
        )

    def usage_from(self, raw: dict) -> Usage:
        return responses_usage(raw, subtract_cached=True)

    def format_error(self, status: int, body: str, headers: Mapping[str, str]) -> str:
        return parse_codex_error(status, body, headers)

    def format_error_event(self, data: dict) -> str:
        return format_codex_error_event(data)

    def failure_message(self, data: dict) -> str:
        return format_codex_failure(data)

