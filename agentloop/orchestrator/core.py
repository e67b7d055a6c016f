"""
Orchestrator core -- the tool-calling loop around a provider adapter.

One ``evaluate`` call:

1. Optionally loads the conversation from a session store and screens the
   user's input through the guardrail.
2. Calls the adapter for one turn, appending input and reply to the state.
3. While the turn ends in tool calls, executes them and feeds the results
   back as the next turn's input.
4. Stops early (returning normally) when an approval-gated call has no
   decision yet, or when the abort token is set.
5. Persists what was added to the session store.

Tool failures of any kind become ``is_error`` tool results; only
infrastructure errors and the iteration cap propagate.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from collections import deque
from typing import Any, AsyncIterator, Callable

from agentloop.abort import AbortToken
from agentloop.agent import Agent
from agentloop.compaction import Compactor
from agentloop.events import (
    AgentEvaluateEndEvent,
    AgentEvaluateStartEvent,
    AgentEvent,
    EventChannel,
    ToolExecutionEndEvent,
    ToolExecutionStartEvent,
    TurnEndEvent,
    TurnStartEvent,
)
from agentloop.guardrail import InputGuardrail, guardrail_text
from agentloop.llm.models import Model
from agentloop.llm.providers import ProviderAdapter, get_adapter
from agentloop.llm.providers.base import AgentResponse
from agentloop.messages import (
    AgentState,
    CompactionSummaryMessage,
    ImageContent,
    PendingToolCall,
    TextContent,
    ToolResultMessage,
    TurnInput,
)
from agentloop.session import SessionEntry, SessionStore
from agentloop.skills import SkillRegistry, with_skills
from agentloop.tools.validation import (
    ToolArgumentError,
    argument_error_message,
    parse_tool_arguments,
    validate_arguments,
)
from agentloop.types import (
    AbortedError,
    ErrorCode,
    InvalidInputError,
    StopReason,
    ToolIterationLimitError,
)

logger = logging.getLogger(__name__)

DEFAULT_REJECTION = "Tool call rejected by user"


def stringify_result(value: Any) -> list[TextContent | ImageContent]:
    """Tool return value -> tool-result content blocks."""
    if isinstance(value, (TextContent, ImageContent)):
        return [value]
    if isinstance(value, list) and value and all(
        isinstance(v, (TextContent, ImageContent)) for v in value
    ):
        return list(value)
    if value is None:
        text = ""
    elif isinstance(value, str):
        text = value
    elif isinstance(value, (dict, list, tuple)):
        try:
            text = json.dumps(value)
        except (TypeError, ValueError):
            text = str(value)
    else:
        text = str(value)
    return [TextContent(text=text)]


def _drain(queue: deque | None) -> list[TurnInput]:
    items: list[TurnInput] = []
    while queue:
        items.append(queue.popleft())
    return items


class _Run:
    """Per-evaluate context threaded through the loop."""

    def __init__(
        self,
        state: AgentState,
        api_key: str,
        abort: AbortToken,
        channel: EventChannel | None,
        options: dict[str, Any],
    ) -> None:
        self.state = state
        self.api_key = api_key
        self.abort = abort
        self.channel = channel
        self.options = options

    def emit(self, event: AgentEvent) -> None:
        if self.channel is not None:
            self.channel.emit(event)


class Orchestrator:
    """
    Drive an agent through tool-calling rounds.

    Parameters
    ----------
    agent : Agent
        Model, prompt and registered tools.
    max_tool_iterations : int
        Rounds that may end in tool calls before ``ToolIterationLimitError``.
    session_store : SessionStore
        When given together with a ``session_id``, state is loaded from and
        appended to it.
    compaction : Compactor
        Summarizes old history before a turn once the context fills up.
    input_guardrail : InputGuardrail | bool | callable
        ``True`` uses the built-in classifier; a callable
        ``(agent_prompt, text) -> bool`` replaces it.
    guardrail_model : Model
        Model for the built-in classifier (defaults to the agent's).
    steer_queue : collections.deque
        Inputs queued while a turn runs; drained before the next turn.
    message_queue : collections.deque
        Inputs evaluated one after another once the loop completes.
    adapter_factory : callable
        ``(api, **kw) -> ProviderAdapter``.
    adapter_options : dict
        Keyword arguments for ``adapter_factory`` (timeout, retries...).
    skills : SkillRegistry
        Skills listed in the system prompt and readable through the
        ``load_skill`` tool.
    """

    def __init__(
        self,
        agent: Agent,
        *,
        max_tool_iterations: int = 20,
        session_store: SessionStore | None = None,
        compaction: Compactor | None = None,
        input_guardrail: InputGuardrail | bool | Callable[..., Any] | None = None,
        guardrail_model: Model | None = None,
        steer_queue: deque | None = None,
        message_queue: deque | None = None,
        adapter_factory: Callable[..., ProviderAdapter] = get_adapter,
        adapter_options: dict[str, Any] | None = None,
        skills: SkillRegistry | None = None,
    ) -> None:
        self.base_agent = agent
        self.skills = skills
        self.agent = with_skills(agent, skills) if skills is not None else agent
        self.max_tool_iterations = max_tool_iterations
        self.session_store = session_store
        self.compaction = compaction
        if input_guardrail is True:
            input_guardrail = InputGuardrail(model=guardrail_model, adapter_factory=adapter_factory)
        elif callable(input_guardrail) and not isinstance(input_guardrail, InputGuardrail):
            input_guardrail = InputGuardrail(input_guardrail)
        self.input_guardrail: InputGuardrail | None = input_guardrail or None
        self.steer_queue = steer_queue
        self.message_queue = message_queue
        self.adapter_factory = adapter_factory
        self.adapter_options = adapter_options or {}

    def reload_skills(self) -> None:
        """Rescan the skill directories and rebuild the prompt listing."""
        if self.skills is None:
            return
        self.skills.reload()
        self.agent = with_skills(self.base_agent, self.skills)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        input: TurnInput,
        *,
        state: AgentState | None = None,
        api_key: str | None = None,
        abort: AbortToken | None = None,
        channel: EventChannel | None = None,
        session_id: str | None = None,
        **options: Any,
    ) -> AgentState:
        """
        Run the loop for one turn input and return the updated state.

        ``input=None`` resumes the pending tool calls on *state* after the
        caller has approved or rejected them.  Raises
        ``ToolIterationLimitError`` (carrying the partial state),
        ``InvalidInputError``, ``ProviderHTTPError`` and transport errors;
        an abort returns the state as it stands.
        """
        if state is None:
            if self.session_store is not None and session_id:
                state = await self.session_store.load(session_id)
            else:
                state = AgentState()
        if session_id:
            state.session_id = session_id
        run = _Run(
            state,
            self.agent.resolve_api_key(api_key),
            abort or AbortToken(),
            channel,
            options,
        )

        evaluate_id = uuid.uuid4().hex
        start_len = len(state.messages)
        compaction_before = state.last_compaction
        run.emit(AgentEvaluateStartEvent(evaluate_id))
        try:
            await self._screen_input(input, run)
            completed = await self._guarded_loop(input, run)
            while completed and self.message_queue:
                next_input = self.message_queue.popleft()
                await self._screen_input(next_input, run)
                completed = await self._guarded_loop(next_input, run)
        finally:
            if self.session_store is not None and state.session_id:
                await self._persist(state, start_len, compaction_before)
            run.emit(AgentEvaluateEndEvent(evaluate_id, state))
        return state

    async def run(self, input: TurnInput, **kw: Any) -> AsyncIterator[AgentEvent]:
        """
        Yield lifecycle events while ``evaluate`` executes.

        The final ``AgentEvaluateEndEvent`` carries the resulting state.
        Exceptions from ``evaluate`` are re-raised once every event emitted
        before them has been yielded.
        """
        channel = EventChannel()

        async def drive() -> AgentState:
            try:
                return await self.evaluate(input, channel=channel, **kw)
            finally:
                channel.close()

        task = asyncio.create_task(drive())
        try:
            async for event in channel:
                yield event
            await task
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _screen_input(self, turn_input: TurnInput, run: _Run) -> None:
        if self.input_guardrail is None:
            return
        text = guardrail_text(turn_input)
        if text is None:
            return
        valid = await self.input_guardrail.is_valid(
            self.base_agent, text, api_key=run.api_key, abort=run.abort
        )
        if not valid:
            logger.info("Guardrail rejected input for %s", self.agent.name)
            raise InvalidInputError(text)

    async def _guarded_loop(self, turn_input: TurnInput, run: _Run) -> bool:
        try:
            return await self._loop(turn_input, run)
        except AbortedError:
            logger.info("Evaluation of %s aborted: %s", self.agent.name, run.abort.reason)
            return False

    async def _loop(self, turn_input: TurnInput, run: _Run) -> bool:
        """``True`` once the model stops calling tools, ``False`` while awaiting approval."""
        state = run.state
        adapter = self.adapter_factory(self.agent.model.api, **self.adapter_options)

        if turn_input is None:
            if not state.pending_tool_calls:
                logger.debug("Nothing pending to resume")
                return True
            results = await self._run_tools(run)
            if results is None:
                return False
            turn_input = results
        elif state.pending_tool_calls:
            # New input supersedes undecided calls; history gets synthetic results.
            state.pending_tool_calls = []

        rounds = 0
        while True:
            run.abort.raise_if_aborted()
            turn_input = self._steer(state, turn_input)
            if self.compaction is not None:
                await self.compaction.maybe_compact(
                    self.agent, state, api_key=run.api_key, abort=run.abort
                )
            rounds += 1
            response = await self._turn(adapter, turn_input, run)
            if response.stop_reason == StopReason.ABORTED:
                run.abort.raise_if_aborted()
            if response.stop_reason != StopReason.TOOL_CALLS:
                return True
            if rounds > self.max_tool_iterations:
                raise ToolIterationLimitError(self.max_tool_iterations, state)
            results = await self._run_tools(run)
            if results is None:
                return False
            turn_input = results

    def _steer(self, state: AgentState, turn_input: TurnInput) -> TurnInput:
        queued = _drain(self.steer_queue)
        if not queued:
            return turn_input
        state.append_turn_input(turn_input)
        for earlier in queued[:-1]:
            state.append_turn_input(earlier)
        return queued[-1]

    async def _turn(self, adapter: ProviderAdapter, turn_input: TurnInput, run: _Run) -> AgentResponse:
        state = run.state
        turn_id = uuid.uuid4().hex
        run.emit(TurnStartEvent(turn_id))
        response: AgentResponse | None = None
        error: Exception | None = None
        try:
            response = await adapter.stream(
                self.agent,
                state,
                turn_input,
                api_key=run.api_key,
                abort=run.abort,
                channel=run.channel,
                **run.options,
            )
        except Exception as exc:
            error = exc
            raise
        finally:
            run.emit(TurnEndEvent(turn_id, response.message if response else None, error))

        state.append_response(turn_input, response.message, response.usage)
        state.most_recent_stop_reason = response.stop_reason
        state.pending_tool_calls = (
            response.pending if response.stop_reason == StopReason.TOOL_CALLS else []
        )
        return response

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _run_tools(self, run: _Run) -> list[ToolResultMessage] | None:
        """
        Execute every pending call, in order.

        Returns ``None`` without running anything while an approval-gated
        call is still undecided.  On abort, results of calls that already ran
        go to history and only the calls not yet run stay pending.
        """
        state = run.state
        for call in state.pending_tool_calls:
            if call.approved is None and self.agent.tools.requires_approval(call.name):
                logger.info("Awaiting approval for %s (%s)", call.name, call.call_id)
                return None

        remaining = list(state.pending_tool_calls)
        results: list[ToolResultMessage] = []
        while remaining and not run.abort.aborted:
            results.append(await self._execute(remaining.pop(0), run))
        if run.abort.aborted:
            state.messages.extend(results)
            state.pending_tool_calls = remaining
            run.abort.raise_if_aborted()
        state.pending_tool_calls = []
        return results

    async def _execute(self, call: PendingToolCall, run: _Run) -> ToolResultMessage:
        run.emit(ToolExecutionStartEvent(call))
        start = time.monotonic()
        code: str | None = None
        content: list[TextContent | ImageContent]

        tool = self.agent.tools.get(call.name)
        if call.approved is False:
            code = ErrorCode.REJECTED
            content = [TextContent(text=call.rejected_reason or DEFAULT_REJECTION)]
        elif tool is None:
            code = ErrorCode.UNKNOWN_TOOL
            content = [TextContent(text=f"Unknown tool: {call.name}")]
        else:
            try:
                arguments = parse_tool_arguments(call.arguments)
            except ToolArgumentError as exc:
                code = ErrorCode.ARGUMENT_PARSE_ERROR
                content = [TextContent(text=argument_error_message(exc, call.arguments))]
            else:
                problem = validate_arguments(tool, arguments)
                if problem is not None:
                    code = ErrorCode.VALIDATION_ERROR
                    content = [TextContent(text=f"Invalid arguments for {call.name}: {problem}")]
                else:
                    try:
                        content = stringify_result(await tool.execute(arguments))
                    except Exception as exc:
                        logger.warning("Tool %s raised: %s", call.name, exc, exc_info=True)
                        code = ErrorCode.TOOL_EXCEPTION
                        content = [TextContent(text=str(exc) or type(exc).__name__)]

        result = ToolResultMessage(
            call_id=call.call_id,
            name=call.name,
            content=content,
            is_error=code is not None,
        )
        duration_ms = int((time.monotonic() - start) * 1000)
        run.emit(ToolExecutionEndEvent(call, result, duration_ms, code))
        return result

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def _persist(
        self,
        state: AgentState,
        start_len: int,
        compaction_before: CompactionSummaryMessage | None,
    ) -> None:
        if self.session_store is None or not state.session_id:
            return
        if state.last_compaction is not None and state.last_compaction is not compaction_before:
            entry = SessionEntry(messages=list(state.messages), is_compaction=True)
        else:
            new = state.messages[start_len:]
            if not new:
                return
            entry = SessionEntry(messages=list(new))
        await self.session_store.append(state.session_id, entry)


async def evaluate(
    agent: Agent,
    input: TurnInput,
    *,
    max_tool_iterations: int = 20,
    session_store: SessionStore | None = None,
    adapter_factory: Callable[..., ProviderAdapter] = get_adapter,
    **kw: Any,
) -> AgentState:
    """One-shot ``Orchestrator(agent).evaluate(input, **kw)``."""
    orchestrator = Orchestrator(
        agent,
        max_tool_iterations=max_tool_iterations,
        session_store=session_store,
        adapter_factory=adapter_factory,
    )
    return await orchestrator.evaluate(input, **kw)
