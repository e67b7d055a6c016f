"""
Abstract base class for provider adapters.

An adapter runs one turn against one wire protocol.  The shared pipeline is:

  1. transcode ``context_messages(state) + turn input`` (after
     ``transform_messages``) into the provider's request body;
  2. POST it and read the Server-Sent-Events stream (retrying only before
     any byte of the stream was consumed);
  3. feed every decoded frame to ``handle_event``, which translates it into
     ``StreamNormalizer`` calls;
  4. close the message, map the provider's stop vocabulary onto
     ``StopReason`` and normalize usage.

Subclasses implement the request shape and the event grammar; transport,
framing, retries, abort and error envelopes live here.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Mapping

import httpx

from agentloop.abort import AbortToken
from agentloop.events import EventChannel
from agentloop.llm.models import Model, calculate_cost
from agentloop.llm.normalizer import StreamNormalizer
from agentloop.llm.sse import SSEEvent, iter_sse
from agentloop.llm.transform import transform_messages
from agentloop.messages import (
    AgentState,
    AssistantMessage,
    Message,
    PendingToolCall,
    TurnInput,
    Usage,
    context_messages,
    turn_input_messages,
)
from agentloop.types import ProviderHTTPError, StopReason, StreamProtocolError

if TYPE_CHECKING:
    from agentloop.agent import Agent

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 4000


@dataclass
class AgentResponse:
    """What one adapter call produces."""

    message: AssistantMessage
    usage: Usage
    stop_reason: StopReason
    # The same objects announced by ``ToolCallRequestEvent``.
    pending: list[PendingToolCall] = field(default_factory=list)


@dataclass
class TurnContext:
    """Mutable per-turn state an adapter's event handler works against."""

    normalizer: StreamNormalizer
    model: Model
    usage: Usage = field(default_factory=Usage)
    # Raw provider finish reason / response status.
    finish_reason: str | None = None
    # Provider index (completions tool deltas, Anthropic content blocks)
    # to the key the normalizer knows the call under.
    index_keys: dict[int, str] = field(default_factory=dict)
    block_kinds: dict[int, str] = field(default_factory=dict)
    seen_call_ids: set[str] = field(default_factory=set)
    # Streamed reasoning_details: text seen so far and the merged entries.
    reasoning_buffer: str = ""
    reasoning_details: list[dict] = field(default_factory=list)
    # External tool name -> registered name (Anthropic OAuth prefixing).
    tool_names: dict[str, str] = field(default_factory=dict)
    # Set by a handler once the provider's logical end-of-stream arrives.
    done: bool = False

    @property
    def message(self) -> AssistantMessage:
        return self.normalizer.message


class ProviderAdapter(ABC):
    """
    One wire protocol.

    Parameters
    ----------
    timeout:
        HTTP timeout in seconds (connect and per-read).
    max_retries:
        Retries on transport errors and retryable statuses.  Only applies
        before the stream starts; a turn that already produced output is
        never replayed.
    retry_delay:
        Base delay between retries; doubles each attempt.
    transport:
        Optional ``httpx`` transport, e.g. ``httpx.MockTransport`` in tests.
    """

    api: str = ""
    id_prefix: str = "call"

    def __init__(
        self,
        *,
        timeout: float = 120.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.transport = transport

    # ------------------------------------------------------------------
    # Hooks for subclasses
    # ------------------------------------------------------------------

    @abstractmethod
    def endpoint(self, model: Model, options: dict[str, Any]) -> str:
        """Full URL to POST to."""

    @abstractmethod
    def build_headers(
        self, model: Model, api_key: str, state: AgentState, options: dict[str, Any]
    ) -> dict[str, str]:
        ...

    @abstractmethod
    def build_body(
        self,
        agent: Agent,
        model: Model,
        state: AgentState,
        messages: list[Message],
        turn_input: TurnInput,
        options: dict[str, Any],
    ) -> dict[str, Any]:
        """Provider request body.

        *messages* is the already transformed context (history plus the
        turn input); *turn_input* is passed for adapters that only send
        the new input and chain server-side state instead.
        """

    @abstractmethod
    def handle_event(self, turn: TurnContext, event: SSEEvent, data: Any) -> None:
        """Fold one decoded frame into the normalizer."""

    @abstractmethod
    def stop_reason(self, turn: TurnContext) -> StopReason:
        ...

    def normalize_tool_call_id(self, model: Model) -> Callable[[str], str] | None:
        return None

    def prepare_api_key(self, api_key: str, options: dict[str, Any]) -> str:
        return api_key

    def tool_name_map(self, agent: Agent, api_key: str) -> dict[str, str]:
        """Wire tool name -> registered name, for adapters that rename tools."""
        return {}

    def finish(self, turn: TurnContext) -> None:
        """Called once the stream is exhausted and not aborted."""
        turn.normalizer.flush_tool_calls()

    def format_error(self, status: int, body: str, headers: Mapping[str, str]) -> str:
        """Extract a readable message from a provider error envelope."""
        return extract_error_message(body) or httpx.codes.get_reason_phrase(status) or "error"

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def context(
        self, model: Model, state: AgentState, turn_input: TurnInput
    ) -> list[Message]:
        history = context_messages(state.messages) + turn_input_messages(turn_input)
        return transform_messages(history, model, self.normalize_tool_call_id(model))

    async def stream(
        self,
        agent: Agent,
        state: AgentState,
        turn_input: TurnInput,
        *,
        api_key: str,
        abort: AbortToken | None = None,
        channel: EventChannel | None = None,
        model: Model | None = None,
        **options: Any,
    ) -> AgentResponse:
        """
        Run one turn and return the finished assistant message.

        ``state`` is read, never mutated; the caller appends the result.
        Raises ``ProviderHTTPError`` for non-2xx answers and lets
        ``httpx.TransportError`` propagate once retries are exhausted.
        """
        model = model or agent.model
        options = {**agent.options, **options}
        api_key = self.prepare_api_key(api_key, options)

        messages = self.context(model, state, turn_input)
        body = self.build_body(agent, model, state, messages, turn_input, options)
        if model.kw:
            body = {**model.kw, **body}
        headers = self.build_headers(model, api_key, state, options)
        url = self.endpoint(model, options)

        message = AssistantMessage(api=model.api, provider=model.provider, model=model.id)
        normalizer = StreamNormalizer(
            message,
            channel,
            requires_approval=agent.tools.requires_approval,
            id_prefix=self.id_prefix,
        )
        turn = TurnContext(
            normalizer=normalizer,
            model=model,
            tool_names=self.tool_name_map(agent, api_key),
        )

        logger.info(
            "REQUEST: api=%s model=%s messages=%d tools=%d api_key=%s...",
            model.api,
            model.id,
            len(messages),
            len(agent.tools),
            api_key[:12] if api_key else "(none)",
        )
        await self.send(url, body, headers, turn, abort)

        if abort is not None and abort.aborted:
            normalizer.abort()
        elif not normalizer.failed:
            self.finish(turn)
        normalizer.end()

        usage = turn.usage
        if not usage.total:
            usage.total = usage.input + usage.output + usage.cache_read + usage.cache_write
        calculate_cost(model, usage)

        if normalizer.aborted:
            stop = StopReason.ABORTED
        elif normalizer.failed:
            stop = StopReason.ERROR
        else:
            stop = self.stop_reason(turn)
        message.usage = usage
        message.stop_reason = stop
        return AgentResponse(
            message=message, usage=usage, stop_reason=stop, pending=list(normalizer.pending)
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _backoff(self, attempt: int, reason: str) -> None:
        delay = self.retry_delay * (2 ** (attempt - 1))
        logger.warning(
            "%s: retrying after %s (attempt %d/%d, %.1fs)",
            self.api,
            reason,
            attempt,
            self.max_retries,
            delay,
        )
        if delay > 0:
            await asyncio.sleep(delay)

    async def _status_error(self, response: httpx.Response) -> ProviderHTTPError:
        raw = (await response.aread()).decode("utf-8", errors="replace")
        message = self.format_error(response.status_code, raw, response.headers)
        return ProviderHTTPError(response.status_code, message, raw[:_ERROR_BODY_LIMIT])

    async def send(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
        turn: TurnContext,
        abort: AbortToken | None,
    ) -> None:
        attempt = 0
        async with self._client() as client:
            while True:
                try:
                    async with client.stream("POST", url, json=body, headers=headers) as response:
                        if response.status_code >= 400:
                            error = await self._status_error(response)
                            if error.retryable and attempt < self.max_retries:
                                attempt += 1
                                await self._backoff(attempt, f"HTTP {error.status}")
                                continue
                            raise error
                        await self._consume(response, turn, abort)
                        return
                except httpx.TransportError as exc:
                    if turn.normalizer.started or attempt >= self.max_retries:
                        raise
                    attempt += 1
                    await self._backoff(attempt, type(exc).__name__)

    async def post_json(
        self, url: str, body: dict[str, Any], headers: dict[str, str]
    ) -> Any:
        """Non-streaming POST with the same retry policy."""
        attempt = 0
        async with self._client() as client:
            while True:
                try:
                    response = await client.post(url, json=body, headers=headers)
                except httpx.TransportError as exc:
                    if attempt >= self.max_retries:
                        raise
                    attempt += 1
                    await self._backoff(attempt, type(exc).__name__)
                    continue
                if response.status_code >= 400:
                    error = await self._status_error(response)
                    if error.retryable and attempt < self.max_retries:
                        attempt += 1
                        await self._backoff(attempt, f"HTTP {error.status}")
                        continue
                    raise error
                return response.json()

    async def _consume(
        self, response: httpx.Response, turn: TurnContext, abort: AbortToken | None
    ) -> None:
        async for event in iter_sse(response, abort):
            data = event.data.strip()
            if not data:
                continue
            if data == "[DONE]":
                turn.done = True
                return
            try:
                payload = json.loads(data)
            except json.JSONDecodeError as exc:
                logger.warning("Failed to parse SSE data: %s", data[:200])
                turn.normalizer.error(
                    StreamProtocolError(f"Malformed stream frame: {exc}"), terminal=False
                )
                continue
            self.handle_event(turn, event, payload)
            if turn.done:
                return


# ---------------------------------------------------------------------------
# Helpers shared by adapters
# ---------------------------------------------------------------------------


def extract_error_message(body: str) -> str | None:
    """Message from the common ``{"error": {"message": ...}}`` envelopes."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        text = body.strip()
        return text[:500] or None
    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, dict):
        return None
    err = data.get("error", data)
    if isinstance(err, dict):
        message = err.get("message") or err.get("detail")
        if message:
            return str(message)
    elif isinstance(err, str) and err:
        return err
    if isinstance(data.get("detail"), str):
        return data["detail"]
    return None


def pop_option(options: dict[str, Any], *names: str) -> Any:
    """Remove every alias in *names*; return the first value found."""
    found = None
    for name in names:
        if name in options:
            value = options.pop(name)
            if found is None:
                found = value
    return found


def merge_headers(headers: dict[str, str], model: Model) -> dict[str, str]:
    if model.headers:
        headers.update(model.headers)
    return headers
