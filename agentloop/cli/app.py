"""
Main CLI application for agentloop.

Usage:
    agentloop chat [--provider NAME] [--model ID] [--profile NAME] [--session ID] [--verbose]
    agentloop models list [--provider NAME]
    agentloop sessions list|show|delete
    agentloop config show|validate
    agentloop skills list
    agentloop version
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from agentloop import __version__
from agentloop.config import AgentloopConfig, find_config_file, load_config, validate_config
from agentloop.types import ConfigError

app = typer.Typer(name="agentloop", help="agentloop - provider-agnostic agent runtime")
models_app = typer.Typer(help="Model registry")
sessions_app = typer.Typer(help="Session management")
config_app = typer.Typer(help="Configuration management")
skills_app = typer.Typer(help="Skill discovery")

app.add_typer(models_app, name="models")
app.add_typer(sessions_app, name="sessions")
app.add_typer(config_app, name="config")
app.add_typer(skills_app, name="skills")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load(profile: str | None = None, overrides: dict | None = None) -> AgentloopConfig:
    try:
        return load_config(profile=profile, cli_overrides=overrides)
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)


def _open_store(cfg: AgentloopConfig):
    from agentloop.session import open_store

    try:
        return open_store(cfg.session.backend, cfg.session.path)
    except ValueError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)


def _skill_registry(cfg: AgentloopConfig):
    from agentloop.skills import SkillRegistry

    if not cfg.skills.enabled:
        return None
    return SkillRegistry(cfg.skills.paths or None)


def _build_orchestrator(cfg: AgentloopConfig, store):
    """Wire agent, tools, compaction, guardrail and skills from config."""
    from agentloop.agent import Agent
    from agentloop.compaction import Compactor
    from agentloop.llm.models import resolve_api_key
    from agentloop.orchestrator import Orchestrator
    from agentloop.tools.builtin import builtin_tools
    from agentloop.tools.registry import ToolRegistry

    model = cfg.resolve_model()

    registry = ToolRegistry(builtin_tools() if cfg.tools.builtin else ())
    registry.load_plugins(
        enabled=cfg.tools.plugins_enabled,
        allow_tools=set(cfg.tools.allow_plugins) if cfg.tools.allow_plugins else None,
    )

    api_key = resolve_api_key(model.provider, env_var=cfg.llm.api_key_env or None)
    agent = Agent(
        model=model,
        prompt=cfg.agent.prompt,
        name=cfg.agent.name,
        tools=registry,
        api_key=api_key,
    )
    return Orchestrator(
        agent,
        max_tool_iterations=cfg.agent.max_tool_iterations,
        session_store=store,
        compaction=Compactor(cfg.compaction),
        input_guardrail=cfg.agent.input_guardrail or None,
        adapter_options=cfg.adapter_options(),
        skills=_skill_registry(cfg),
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    provider: Optional[str] = typer.Option(None, help="Provider id, e.g. openai or anthropic"),
    model: Optional[str] = typer.Option(None, help="Model id"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    session: Optional[str] = typer.Option(None, "--session", help="Resume session ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Start an interactive chat session."""
    from agentloop.cli.chat import ChatHandler

    _setup_logging(verbose)
    cfg = _load(profile, {"llm.provider": provider, "llm.model": model})

    async def _run():
        store = _open_store(cfg)
        await store.init()
        try:
            try:
                orchestrator = _build_orchestrator(cfg, store)
            except ConfigError as e:
                console.print(f"[red]Config error:[/red] {e}")
                raise typer.Exit(1)
            handler = ChatHandler(
                orchestrator,
                console,
                store=store,
                session_id=session or uuid.uuid4().hex,
                options=cfg.request_options(),
            )
            await handler.load()
            console.print(f"[dim]Session: {handler.session_id}[/dim]")
            await handler.run_loop()
        finally:
            await store.close()

    asyncio.run(_run())


@models_app.command("list")
def models_list(
    provider: Optional[str] = typer.Option(None, help="Only this provider"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """List registered models."""
    from agentloop.cli.output import OutputFormatter

    cfg = _load(profile)
    try:
        registry = cfg.model_registry()
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)
    OutputFormatter(console).format_model_list(registry.models(provider))


@skills_app.command("list")
def skills_list(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """List the skills the agent can load."""
    from agentloop.cli.output import OutputFormatter
    from agentloop.skills import SkillRegistry

    cfg = _load(profile)
    registry = SkillRegistry(cfg.skills.paths or None)
    OutputFormatter(console).format_skill_list(sorted(registry.skills.values(), key=lambda s: s.name))


@sessions_app.command("list")
def sessions_list():
    """List all sessions."""

    async def _run():
        from agentloop.cli.output import OutputFormatter

        cfg = _load()
        async with _open_store(cfg) as store:
            sessions = await store.list_sessions()
        OutputFormatter(console).format_session_list(sessions)

    asyncio.run(_run())


@sessions_app.command("show")
def sessions_show(session_id: str = typer.Argument(..., help="Session ID")):
    """Show the messages of a session."""

    async def _run():
        from agentloop.cli.output import OutputFormatter

        cfg = _load()
        async with _open_store(cfg) as store:
            state = await store.load(session_id)
        formatter = OutputFormatter(console)
        formatter.format_messages(state.messages)
        formatter.format_usage(state.usage)

    try:
        asyncio.run(_run())
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@sessions_app.command("delete")
def sessions_delete(session_id: str = typer.Argument(..., help="Session ID")):
    """Delete a session."""

    async def _run():
        cfg = _load()
        async with _open_store(cfg) as store:
            return await store.delete(session_id)

    try:
        deleted = asyncio.run(_run())
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    if deleted:
        console.print(f"Deleted session: {session_id}")
    else:
        console.print(f"[yellow]No such session:[/yellow] {session_id}")
        raise typer.Exit(1)


@config_app.command("show")
def config_show(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Show effective config."""
    from agentloop.cli.output import OutputFormatter

    cfg = _load(profile)
    OutputFormatter(console).format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Validate config and report any problems."""
    config_path = find_config_file()
    cfg = _load(profile)
    problems = validate_config(cfg)
    if problems:
        console.print("[red]Config validation failed:[/red]")
        for problem in problems:
            console.print(f"  - {problem}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Model: {cfg.llm.provider}/{cfg.llm.model}")
    console.print(f"  Session backend: {cfg.session.backend}")
    console.print(f"  Compaction enabled: {cfg.compaction.enabled}")


@app.command()
def version():
    """Show version."""
    console.print(f"agentloop v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
