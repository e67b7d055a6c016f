"""
Per-turn streaming state machine shared by every provider adapter.

Adapters parse their own wire events and translate each one into a call on
``StreamNormalizer``.  The normalizer owns the ``AssistantMessage`` being
built and guarantees the lifecycle contract:

  - exactly one ``MessageStartEvent`` and one ``MessageEndEvent`` per turn,
    whatever order content arrives in, and however many terminal frames the
    provider repeats;
  - text and thinking deltas are concatenated in arrival order into blocks
    that never merge across kinds;
  - tool-call argument fragments are accumulated per call id and may arrive
    before the call is announced.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Callable

from agentloop.events import (
    UPDATE_REASONING,
    UPDATE_REFUSAL,
    UPDATE_TEXT,
    UPDATE_TOOL_ARGUMENTS,
    AgentErrorEvent,
    AgentEvent,
    EventChannel,
    MessageEndEvent,
    MessageStartEvent,
    MessageUpdateEvent,
    ToolCallRequestEvent,
)
from agentloop.messages import (
    AgentToolCall,
    AssistantMessage,
    PendingToolCall,
    TextContent,
    ThinkingContent,
    ToolCallContent,
    loads_tool_arguments,
)

logger = logging.getLogger(__name__)


@dataclass
class ToolCallAccumulator:
    """Partial tool call; ``arguments`` grows by concatenation."""

    id: str
    name: str = ""
    arguments: str = ""
    item_id: str | None = None
    # False while ``id`` is a stand-in (item id or synthesized).
    has_call_id: bool = False


class StreamNormalizer:
    """
    Fold provider events into an ``AssistantMessage`` and lifecycle events.

    Parameters
    ----------
    message:
        The (empty) assistant message for this turn.
    channel:
        Where lifecycle events go.  ``None`` discards them.
    requires_approval:
        Maps a tool name to whether that tool is approval-gated; used for
        ``ToolCallRequestEvent.requires_approval``.
    id_prefix:
        Prefix for call ids synthesized when the provider omits them.
    """

    def __init__(
        self,
        message: AssistantMessage,
        channel: EventChannel | None = None,
        requires_approval: Callable[[str], bool] | None = None,
        id_prefix: str = "call",
    ) -> None:
        self.message = message
        self.channel = channel
        self._requires_approval = requires_approval or (lambda name: False)
        self._id_prefix = id_prefix
        self.started = False
        self.ended = False
        self.failed = False
        self.aborted = False
        self.accumulators: dict[str, ToolCallAccumulator] = {}
        self._aliases: dict[str, str] = {}
        self._last_key: str | None = None
        self.pending: list[PendingToolCall] = []
        self.errors: list[Exception] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _emit(self, event: AgentEvent) -> None:
        if self.channel is not None:
            self.channel.emit(event)

    def start(self) -> None:
        """Emit ``MessageStartEvent`` unless already done this turn."""
        if self.started:
            return
        self.started = True
        self._emit(MessageStartEvent("assistant", self.message))

    def end(self) -> None:
        """Emit ``MessageEndEvent`` exactly once.  Safe to call repeatedly."""
        if self.ended:
            return
        self.start()
        self.ended = True
        self._emit(MessageEndEvent("assistant", self.message))

    def error(self, exc: Exception, *, terminal: bool = True) -> None:
        """
        Report an error.

        A terminal error (a provider error event) ends the message; a
        non-terminal one (a malformed frame) is only reported and the stream
        keeps going.
        """
        self.errors.append(exc)
        self._emit(AgentErrorEvent(exc))
        if terminal:
            self.failed = True
            self.message.error_message = str(exc)
            self.end()

    def abort(self) -> None:
        self.aborted = True
        self.end()

    # ------------------------------------------------------------------
    # Text and thinking
    # ------------------------------------------------------------------

    def _last_block(self, kind: type) -> TextContent | ThinkingContent | None:
        if self.message.content and isinstance(self.message.content[-1], kind):
            return self.message.content[-1]
        return None

    def open_text(self, signature: str | None = None) -> TextContent:
        """Force a new text block (providers with explicit block starts)."""
        self.start()
        block = TextContent(text_signature=signature)
        self.message.content.append(block)
        return block

    def open_thinking(self, signature: str | None = None, *, redacted: bool = False) -> ThinkingContent:
        self.start()
        block = ThinkingContent(thinking_signature=signature, redacted=redacted)
        self.message.content.append(block)
        return block

    def _text_block(self, signature: str | None) -> TextContent:
        block = self._last_block(TextContent)
        if block is None or (
            signature is not None
            and block.text_signature is not None
            and block.text_signature != signature
        ):
            block = TextContent()
            self.message.content.append(block)
        if signature is not None and block.text_signature is None:
            block.text_signature = signature
        return block

    def _thinking_block(self, signature: str | None) -> ThinkingContent:
        block = self._last_block(ThinkingContent)
        if block is None or (
            signature is not None
            and block.thinking_signature is not None
            and block.thinking_signature != signature
        ):
            block = ThinkingContent()
            self.message.content.append(block)
        if signature is not None and block.thinking_signature is None:
            block.thinking_signature = signature
        return block

    def text_delta(
        self,
        delta: str,
        *,
        signature: str | None = None,
        item_id: str | None = None,
    ) -> None:
        self.start()
        block = self._text_block(signature)
        block.text += delta
        self._emit(MessageUpdateEvent("assistant", self.message, UPDATE_TEXT, delta, item_id))

    def refusal_delta(self, delta: str, *, item_id: str | None = None) -> None:
        """Refusal text is kept as text but reported with its own kind."""
        self.start()
        block = self._text_block(None)
        block.text += delta
        self._emit(MessageUpdateEvent("assistant", self.message, UPDATE_REFUSAL, delta, item_id))

    def thinking_delta(
        self,
        delta: str,
        *,
        signature: str | None = None,
        item_id: str | None = None,
    ) -> None:
        self.start()
        block = self._thinking_block(signature)
        block.thinking += delta
        self._emit(
            MessageUpdateEvent("assistant", self.message, UPDATE_REASONING, delta, item_id)
        )

    def append_thinking_signature(self, fragment: str) -> None:
        """Signatures that arrive in pieces (Anthropic ``signature_delta``)."""
        block = self._last_block(ThinkingContent)
        if block is None:
            block = self.open_thinking()
        block.thinking_signature = (block.thinking_signature or "") + fragment

    def complete_text(self, text: str, *, signature: str | None = None) -> None:
        """
        Reconcile a provider's final snapshot of a text item.

        If deltas already built the block the snapshot only fills in a
        missing signature; otherwise the full text is emitted as one delta.
        """
        block = self._last_block(TextContent)
        same_item = block is not None and (
            signature is None or block.text_signature in (None, signature)
        )
        if same_item and block.text:
            if block.text_signature is None and signature is not None:
                block.text_signature = signature
            return
        if text:
            self.text_delta(text, signature=signature, item_id=signature)

    def complete_thinking(self, thinking: str, *, signature: str | None = None) -> None:
        """
        Reconcile a provider's final snapshot of a reasoning item.

        Unlike text, a non-empty snapshot replaces what the deltas built: it
        is the form the provider expects back on replay.
        """
        block = self._last_block(ThinkingContent)
        same_item = block is not None and (
            signature is None or block.thinking_signature in (None, signature)
        )
        if same_item and block.thinking:
            if block.thinking_signature is None and signature is not None:
                block.thinking_signature = signature
            if thinking:
                block.thinking = thinking
            return
        if thinking:
            self.thinking_delta(thinking, signature=signature)
        elif signature is not None:
            # Encrypted reasoning with no visible summary still has to be
            # replayed, so keep an empty block that carries the signature.
            self.open_thinking(signature)

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def _resolve_key(self, call_id: str | None, item_id: str | None) -> str | None:
        for alias in (call_id, item_id):
            if alias and alias in self._aliases:
                return self._aliases[alias]
        return None

    def accumulator(
        self, call_id: str | None = None, item_id: str | None = None
    ) -> ToolCallAccumulator:
        """Find or create the accumulator for a call.

        Lookup is by call id, then item id; with neither, the most recently
        touched accumulator is used, and failing that a new id is made up.
        """
        key = self._resolve_key(call_id, item_id)
        if key is None and not call_id and not item_id and self._last_key in self.accumulators:
            key = self._last_key
        if key is None:
            key = call_id or item_id or f"{self._id_prefix}-{uuid.uuid4().hex}"
            self.accumulators[key] = ToolCallAccumulator(
                id=key, item_id=item_id, has_call_id=bool(call_id)
            )
        acc = self.accumulators[key]
        if call_id and not acc.has_call_id:
            acc.id = call_id
            acc.has_call_id = True
        if item_id and acc.item_id is None:
            acc.item_id = item_id
        for alias in (call_id, item_id, key):
            if alias:
                self._aliases[alias] = key
        self._last_key = key
        return acc

    def tool_call_started(
        self,
        *,
        call_id: str | None = None,
        name: str = "",
        item_id: str | None = None,
        arguments: str = "",
    ) -> ToolCallAccumulator:
        self.start()
        acc = self.accumulator(call_id, item_id)
        if name:
            acc.name = name
        if arguments and not acc.arguments:
            acc.arguments = arguments
        return acc

    def tool_arguments_delta(
        self,
        delta: str,
        *,
        call_id: str | None = None,
        item_id: str | None = None,
    ) -> None:
        self.start()
        acc = self.accumulator(call_id, item_id)
        acc.arguments += delta
        self._emit(
            MessageUpdateEvent(
                "assistant", self.message, UPDATE_TOOL_ARGUMENTS, delta, item_id or acc.id
            )
        )

    def tool_call_done(
        self,
        *,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
        item_id: str | None = None,
    ) -> PendingToolCall:
        """
        Finalize a tool call and announce it with ``ToolCallRequestEvent``.

        Accumulated argument fragments win over the ``arguments`` snapshot
        carried by the done event; the snapshot is only used when nothing
        was accumulated.
        """
        self.start()
        key = self._resolve_key(call_id, item_id)
        acc = self.accumulators.pop(key, None) if key is not None else None
        if acc is not None:
            for alias in [a for a, k in self._aliases.items() if k == key]:
                del self._aliases[alias]
            if self._last_key == key:
                self._last_key = None

        if acc is not None and acc.arguments:
            args = acc.arguments
        else:
            args = arguments or ""
        final_id = call_id or (acc.id if acc is not None else None)
        if not final_id:
            final_id = f"{self._id_prefix}-{uuid.uuid4().hex}"
        final_name = name or (acc.name if acc is not None else "")

        return self._add_tool_call(final_id, final_name, args or "{}")

    def _add_tool_call(self, call_id: str, name: str, arguments: str) -> PendingToolCall:
        call = AgentToolCall(call_id=call_id, name=name, arguments=arguments)
        self.message.tool_calls.append(call)
        self.message.content.append(
            ToolCallContent(id=call_id, name=name, arguments=loads_tool_arguments(arguments))
        )
        pending = PendingToolCall.from_call(call)
        self.pending.append(pending)
        self._emit(ToolCallRequestEvent(pending, self._requires_approval(name)))
        return pending

    def flush_tool_calls(self) -> list[PendingToolCall]:
        """Finalize every accumulator still open, in creation order."""
        done: list[PendingToolCall] = []
        for key in list(self.accumulators):
            acc = self.accumulators[key]
            done.append(
                self.tool_call_done(
                    call_id=acc.id if acc.has_call_id else None,
                    item_id=acc.item_id or key,
                )
            )
        return done
