"""CLI renderer for Vesper."""

from __future__ import annotations

import threading
from collections.abc import Sequence

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from vesper.memory import SessionInfo
from vesper.types import MemoryEntry

HELP_ROWS = (
    ("/help", "Show this help"),
    ("/tools [name]", "List available tools, or describe one"),
    ("/history [n]", "Show the last n memory entries of this session"),
    ("/sessions", "List stored sessions"),
    ("/new", "Start a new session"),
    ("quit, exit", "Leave the chat"),
)


class Renderer:
    """CLI renderer using Rich for terminal output.

    Shares its print lock with the progress line so messages never land in the
    middle of a spinner frame.
    """

    def __init__(self, console: Console | None = None, *, output_lock: threading.RLock | None = None) -> None:
        self.console: Console = console or Console()
        self._prompt_session: PromptSession[str] | None = None
        self._print_lock = output_lock or threading.RLock()

    def info(self, message: str) -> None:
        self._print(message)

    def error(self, message: str) -> None:
        self._print(f"[bold red]Error:[/bold red] {escape(message)}")

    def welcome(self, message: str = "[bold blue]Vesper[/bold blue] - a terminal agent that remembers.") -> None:
        self._print(message)

    def usage_info(self, *, workspace_path: str, model: str, session_id: str, tools: Sequence[str]) -> None:
        self._print(f"[bold]Working directory:[/bold] [cyan]{escape(workspace_path)}[/cyan]")
        self._print(f"[bold]Model:[/bold] [magenta]{escape(model)}[/magenta]")
        self._print(f"[bold]Session:[/bold] [cyan]{escape(session_id)}[/cyan]")
        if tools:
            self._print(f"[bold]Available tools:[/bold] [green]{escape(', '.join(tools))}[/green]")
        self._print("[dim]Type /help for commands.[/dim]")

    def assistant_message(self, message: str) -> None:
        self._print(f"[bold yellow]Vesper:[/bold yellow] {escape(message)}")

    def help(self) -> None:
        table = Table(show_header=False, box=None, pad_edge=False)
        for command, description in HELP_ROWS:
            table.add_row(f"[cyan]{escape(command)}[/cyan]", description)
        self._print(table)

    def tools(self, rows: Sequence[str]) -> None:
        if not rows:
            self._print("[dim](no tools)[/dim]")
            return
        for row in rows:
            self._print(f"  {escape(row)}")

    def history(self, entries: Sequence[MemoryEntry]) -> None:
        if not entries:
            self._print("[dim](no history)[/dim]")
            return
        for entry in entries:
            color = "cyan" if entry.role.value == "user" else "yellow"
            stamp = entry.created_at.astimezone().strftime("%Y-%m-%d %H:%M")
            self._print(f"[dim]{stamp}[/dim] [{color}]{entry.role.value}[/{color}]: {escape(entry.content)}")

    def sessions(self, sessions: Sequence[SessionInfo], *, current: str | None = None) -> None:
        if not sessions:
            self._print("[dim](no sessions)[/dim]")
            return
        table = Table("session", "entries", "first", "last")
        for info in sessions:
            name = f"{info.session_id} *" if info.session_id == current else info.session_id
            table.add_row(
                escape(name),
                str(info.entry_count),
                info.first_entry.astimezone().strftime("%Y-%m-%d %H:%M"),
                info.last_entry.astimezone().strftime("%Y-%m-%d %H:%M"),
            )
        self._print(table)

    async def get_user_input(self, prompt: str = "vesper> ") -> str:
        """Prompt user for input."""
        if self._prompt_session is None:
            self._prompt_session = PromptSession()
        with patch_stdout(raw=True):
            return await self._prompt_session.prompt_async(prompt)

    def _print(self, message: object) -> None:
        with self._print_lock:
            self.console.print(message)
