"""Interactive chat session handler."""

from __future__ import annotations

import asyncio
import logging

import httpx
from rich.console import Console

from agentloop.abort import AbortToken
from agentloop.cli.output import OutputFormatter
from agentloop.events import (
    UPDATE_REASONING,
    UPDATE_REFUSAL,
    UPDATE_TEXT,
    AgentErrorEvent,
    AgentEvaluateEndEvent,
    MessageEndEvent,
    MessageStartEvent,
    MessageUpdateEvent,
    ToolExecutionEndEvent,
    ToolExecutionStartEvent,
)
from agentloop.messages import AgentState, PendingToolCall, TurnInput
from agentloop.orchestrator import Orchestrator
from agentloop.session import SessionStore
from agentloop.types import AgentloopError, InvalidInputError, ToolIterationLimitError

logger = logging.getLogger(__name__)


class ChatHandler:
    """
    Manages the interactive chat loop.

    Streams assistant output as it arrives, asks for approval of gated tool
    calls, and keeps the conversation state between inputs.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        console: Console | None = None,
        *,
        store: SessionStore | None = None,
        session_id: str | None = None,
        options: dict | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self.store = store
        self.session_id = session_id
        self.options = options or {}
        self.state = AgentState(session_id=session_id)
        self.abort: AbortToken | None = None
        self._running = True

    async def load(self) -> None:
        if self.store is not None and self.session_id:
            self.state = await self.store.load(self.session_id)
            if self.state.messages:
                self.console.print(
                    f"[dim]Resumed session {self.session_id} "
                    f"({len(self.state.messages)} messages).[/dim]"
                )

    async def confirm_tool(self, call: PendingToolCall) -> bool:
        """Rich-formatted approval prompt for a gated tool call."""
        self.formatter.format_confirmation(call)
        try:
            response = await asyncio.get_running_loop().run_in_executor(
                None, lambda: input("\n  Approve? [y/N]: ").strip().lower()
            )
            return response in ("y", "yes")
        except (EOFError, KeyboardInterrupt):
            return False

    async def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        parts = command.strip().split(None, 1)
        cmd = parts[0].lower()

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/history":
            self.formatter.format_messages(self.state.messages)
            return True

        if cmd == "/tools":
            self.formatter.format_tool_list(self.orchestrator.agent.tools.list())
            return True

        if cmd == "/usage":
            self.formatter.format_usage(self.state.usage)
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /quit     - Exit the chat\n"
                "  /history  - Show conversation messages\n"
                "  /tools    - List available tools\n"
                "  /usage    - Show token usage for this session\n"
                "  /help     - Show this help\n"
            )
            return True

        return False

    async def _stream(self, turn_input: TurnInput) -> None:
        self.abort = AbortToken()
        async for event in self.orchestrator.run(
            turn_input,
            state=self.state,
            abort=self.abort,
            session_id=self.session_id,
            **self.options,
        ):
            if isinstance(event, MessageStartEvent):
                self.console.print("[dim]assistant>[/dim] ", end="")
            elif isinstance(event, MessageUpdateEvent):
                if event.kind in (UPDATE_TEXT, UPDATE_REFUSAL):
                    self.console.print(event.delta, end="", markup=False)
                elif event.kind == UPDATE_REASONING:
                    self.console.print(event.delta, end="", markup=False, style="dim italic")
            elif isinstance(event, MessageEndEvent):
                self.console.print()
            elif isinstance(event, ToolExecutionStartEvent):
                self.console.print(f"  [dim]running {event.pending_call.name}...[/dim]")
            elif isinstance(event, ToolExecutionEndEvent):
                self.formatter.format_tool_result(event.result, event.duration_ms)
            elif isinstance(event, AgentErrorEvent):
                self.console.print(f"  [yellow]warning:[/yellow] {event.error}")
            elif isinstance(event, AgentEvaluateEndEvent) and event.state is not None:
                self.state = event.state

    async def handle_input(self, user_input: str) -> None:
        """Run one input through the orchestrator, then settle any approvals."""
        turn_input: TurnInput = user_input
        try:
            while True:
                await self._stream(turn_input)
                undecided = [
                    c for c in self.state.pending_tool_calls
                    if not c.decided and self.orchestrator.agent.tools.requires_approval(c.name)
                ]
                if not undecided:
                    break
                for call in undecided:
                    if await self.confirm_tool(call):
                        call.approve()
                    else:
                        call.reject()
                turn_input = None
        except InvalidInputError:
            self.console.print("[red]Input rejected by the guardrail.[/red]")
        except ToolIterationLimitError as e:
            self.state = e.state
            self.console.print(f"[red]Error:[/red] {e}")
        except (AgentloopError, httpx.HTTPError) as e:
            logger.debug("Turn failed", exc_info=True)
            self.console.print(f"\n[red]Error:[/red] {e}")

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            "[bold]agentloop[/bold] - "
            f"{self.orchestrator.agent.model.provider}/{self.orchestrator.agent.model.id}\n"
            "[dim]Type /help for commands, /quit to exit.[/dim]\n"
        )

        while self._running:
            try:
                user_input = await asyncio.get_running_loop().run_in_executor(
                    None, lambda: input("you> ").strip()
                )
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                handled = await self.handle_command(user_input)
                if handled:
                    continue

            await self.handle_input(user_input)
