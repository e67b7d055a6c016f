"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from datetime import datetime

from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from agentloop.llm.models import Model
from agentloop.messages import (
    AssistantMessage,
    CompactionSummaryMessage,
    Message,
    PendingToolCall,
    ToolResultMessage,
    Usage,
    UserMessage,
    message_text,
)
from agentloop.skills import Skill
from agentloop.tools.base import AgentTool

ROLE_COLORS = {
    "user": "blue",
    "assistant": "green",
    "toolResult": "cyan",
    "compactionSummary": "magenta",
}

PREVIEW_LIMIT = 200


def _preview(text: str, limit: int = PREVIEW_LIMIT) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= limit else text[:limit] + "..."


class OutputFormatter:
    """Rich-based output formatting for the agentloop CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_model_list(self, models: list[Model]) -> None:
        if not models:
            self.console.print("[dim]No models registered.[/dim]")
            return

        table = Table(title="Models")
        table.add_column("Provider", style="cyan", no_wrap=True)
        table.add_column("Model", no_wrap=True)
        table.add_column("API", no_wrap=True)
        table.add_column("Context", justify="right")
        table.add_column("Reasoning", justify="center")
        table.add_column("Input")

        for m in models:
            table.add_row(
                m.provider,
                m.id,
                m.api,
                f"{m.context_window:,}",
                "yes" if m.reasoning else "",
                ", ".join(m.input),
            )

        self.console.print(table)

    def format_tool_list(self, tools: list[AgentTool]) -> None:
        table = Table(title="Tools", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Approval", no_wrap=True)
        table.add_column("Description")

        for t in tools:
            approval = Text("required", style="yellow") if t.requires_approval else Text("-")
            table.add_row(t.name, approval, t.description)

        self.console.print(table)

    def format_skill_list(self, skills: list[Skill]) -> None:
        if not skills:
            self.console.print("[dim]No skills found.[/dim]")
            return

        table = Table(title="Skills", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Description")
        table.add_column("Location", style="dim")
        for s in skills:
            table.add_row(s.name, s.description, str(s.skill_file))

        self.console.print(table)

    def format_session_list(self, sessions: list[str]) -> None:
        if not sessions:
            self.console.print("[dim]No sessions found.[/dim]")
            return

        table = Table(title="Sessions")
        table.add_column("ID", style="cyan", no_wrap=True)
        for session_id in sessions:
            table.add_row(session_id)

        self.console.print(table)

    def format_messages(self, messages: list[Message]) -> None:
        if not messages:
            self.console.print("[dim]No messages.[/dim]")
            return

        for msg in messages:
            ts = datetime.fromtimestamp(msg.timestamp).strftime("%H:%M:%S")
            color = ROLE_COLORS.get(msg.role, "white")

            if isinstance(msg, UserMessage):
                content = _preview(message_text(msg))
            elif isinstance(msg, AssistantMessage):
                content = _preview(message_text(msg))
                calls = ", ".join(tc.name for tc in msg.tool_calls)
                if calls:
                    content = f"{content} (calls: {calls})".strip()
            elif isinstance(msg, ToolResultMessage):
                status = "ERROR" if msg.is_error else "OK"
                content = f"{msg.name} -> {status}: {_preview(message_text(msg), 80)}"
            elif isinstance(msg, CompactionSummaryMessage):
                content = f"(~{msg.tokens_before} tokens summarized) {_preview(msg.summary, 80)}"
            else:
                content = ""

            self.console.print(f"  [{color}]{ts} {msg.role:>18s}[/{color}]  {escape(content)}")

    def format_config(self, config: dict) -> None:
        config_json = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(config_json, "json", theme="monokai"))

    def format_confirmation(self, call: PendingToolCall) -> None:
        try:
            args_str = json.dumps(json.loads(call.arguments or "{}"), indent=2)
        except json.JSONDecodeError:
            args_str = call.arguments
        self.console.print(
            "[bold yellow]Tool call requires approval[/bold yellow]\n"
            f"  [bold]Tool:[/bold]  {call.name}\n"
            f"  [bold]Id:[/bold]    {call.call_id}\n"
            "  [bold]Args:[/bold]"
        )
        self.console.print(Syntax(args_str, "json", theme="monokai"))

    def format_tool_result(self, result: ToolResultMessage, duration_ms: int = 0) -> None:
        status = "[red]ERROR[/red]" if result.is_error else "[green]OK[/green]"
        text = _preview(message_text(result))
        self.console.print(f"  [dim]{escape(result.name)}:[/dim] {status} ({duration_ms} ms): ", end="")
        self.console.print(text, markup=False)

    def format_usage(self, usage: Usage) -> None:
        self.console.print(
            f"[dim]tokens: in={usage.input} out={usage.output} "
            f"cache_read={usage.cache_read} cache_write={usage.cache_write} "
            f"cost=${usage.cost:.4f}[/dim]"
        )
