"""Vesper command line interface."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console

from vesper.cli.interactive import InteractiveCli
from vesper.cli.render import Renderer
from vesper.config import Settings, load_settings
from vesper.core.runtime import Runtime, build_runtime
from vesper.errors import ConfigurationError, TurnError
from vesper.logging_utils import LogProfile, configure_logging

DEFAULT_SESSION = "default"

app = typer.Typer(
    name="vesper",
    help="A terminal agent that remembers.",
    add_completion=False,
    rich_markup_mode="rich",
)


def _parse_tools(raw: list[str] | None) -> set[str] | None:
    if not raw:
        return None
    names = {item.strip() for value in raw for item in value.split(",") if item.strip()}
    return names or None


def _settings(workspace: Path, *, model: str | None, yolo: bool) -> Settings:
    return load_settings(workspace, model=model, yolo=yolo or None)


def _build(
    workspace: Path | None,
    *,
    model: str | None = None,
    yolo: bool = False,
    tools: list[str] | None = None,
    console: Console | None = None,
    profile: LogProfile = "default",
) -> Runtime:
    resolved = (workspace or Path.cwd()).resolve()
    if not resolved.is_dir():
        typer.echo(f"Error: workspace is not a directory: {resolved}", err=True)
        raise typer.Exit(1)
    try:
        settings = _settings(resolved, model=model, yolo=yolo)
        configure_logging(
            profile=profile, level=settings.log_level, console=console, log_file=settings.resolve_log_file()
        )
        return build_runtime(resolved, settings=settings, console=console, allowed_tools=_parse_tools(tools))
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1) from exc


@app.callback(invoke_without_command=True)
def main_callback(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is None:
        chat(workspace=None, session_id=DEFAULT_SESSION, model=None, yolo=False, tools=None)


@app.command()
def chat(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
    session_id: str = typer.Option(DEFAULT_SESSION, "--session", "-s", help="Session id"),
    model: str | None = typer.Option(None, "--model", help="Backend model as provider:model, or 'echo'"),
    yolo: bool = typer.Option(False, "--yolo", help="Run confirmable tools without asking"),
    tools: list[str] | None = typer.Option(None, "--tools", help="Allowed tool names (comma separated)"),  # noqa: B008
) -> None:
    """Start an interactive chat."""
    console = Console()
    runtime = _build(workspace, model=model, yolo=yolo, tools=tools, console=console, profile="chat")
    renderer = Renderer(console, output_lock=runtime.broadcaster.output_lock)
    try:
        asyncio.run(InteractiveCli(runtime, session_id=session_id, renderer=renderer).run())
    except KeyboardInterrupt:
        renderer.info("\n[dim]Interrupted.[/dim]")


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Prompt for a single turn"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
    session_id: str = typer.Option(DEFAULT_SESSION, "--session", "-s", help="Session id"),
    model: str | None = typer.Option(None, "--model", help="Backend model as provider:model, or 'echo'"),
    yolo: bool = typer.Option(False, "--yolo", help="Run confirmable tools without asking"),
    tools: list[str] | None = typer.Option(None, "--tools", help="Allowed tool names (comma separated)"),  # noqa: B008
) -> None:
    """Run one turn and print the response."""
    runtime = _build(workspace, model=model, yolo=yolo, tools=tools, console=Console(stderr=True))

    async def _run_once() -> str:
        runtime.broadcaster.start()
        try:
            turn = await runtime.controller.run(prompt, session_id, timeout=runtime.settings.turn_timeout)
        finally:
            await runtime.broadcaster.stop()
        return turn.response

    try:
        response = asyncio.run(_run_once())
    except TurnError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1) from exc
    typer.echo(response)


@app.command()
def sessions(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
) -> None:
    """List stored sessions, most recent first."""
    runtime = _build(workspace)
    Renderer(Console()).sessions(runtime.memory.list_sessions())


@app.command()
def history(
    session_id: str = typer.Argument(..., help="Session id"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
    limit: int | None = typer.Option(None, "--limit", "-n", min=1, help="Show only the last N entries"),
) -> None:
    """Show a session's memory in chronological order."""
    runtime = _build(workspace)
    if not runtime.memory.session_exists(session_id):
        typer.echo(f"Error: no such session: {session_id}", err=True)
        raise typer.Exit(1)
    Renderer(Console()).history(runtime.memory.history(session_id, limit))
