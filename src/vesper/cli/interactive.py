"""Interactive chat loop."""

from __future__ import annotations

import uuid

from loguru import logger

from vesper.cli.render import Renderer
from vesper.core.runtime import Runtime
from vesper.errors import TurnError
from vesper.types import Turn

EXIT_COMMANDS = frozenset({"quit", "exit"})
DEFAULT_HISTORY_LIMIT = 10


def new_session_id() -> str:
    return f"chat-{uuid.uuid4().hex[:8]}"


class InteractiveCli:
    """Read prompts, run turns, print answers until the user leaves."""

    def __init__(self, runtime: Runtime, *, session_id: str, renderer: Renderer | None = None) -> None:
        self._runtime = runtime
        self._session_id = session_id
        self._renderer = renderer or Renderer(runtime.broadcaster.console, output_lock=runtime.broadcaster.output_lock)

    @property
    def session_id(self) -> str:
        return self._session_id

    async def run(self) -> None:
        self._renderer.welcome()
        self._renderer.usage_info(
            workspace_path=str(self._runtime.workspace),
            model=self._runtime.settings.model,
            session_id=self._session_id,
            tools=self._runtime.registry.names(),
        )
        self._runtime.broadcaster.start()
        try:
            while True:
                try:
                    raw = await self._renderer.get_user_input()
                except (KeyboardInterrupt, EOFError):
                    break
                text = raw.strip()
                if not text:
                    continue
                if text.casefold() in EXIT_COMMANDS:
                    break
                if text.startswith("/"):
                    self.handle_command(text)
                    continue
                await self.run_turn(text)
        finally:
            await self._runtime.broadcaster.stop()
        self._renderer.info("[dim]Goodbye![/dim]")

    async def run_turn(self, text: str) -> Turn | None:
        try:
            turn = await self._runtime.controller.run(
                text, self._session_id, timeout=self._runtime.settings.turn_timeout
            )
        except TurnError as exc:
            logger.warning("chat.turn_failed session={} error={}", self._session_id, exc)
            self._renderer.error(str(exc))
            return None
        self._renderer.assistant_message(turn.response)
        return turn

    def handle_command(self, line: str) -> None:
        name, _, argument = line[1:].partition(" ")
        name = name.casefold()
        argument = argument.strip()
        if name == "help":
            self._renderer.help()
        elif name == "tools":
            self._show_tools(argument)
        elif name == "history":
            self._show_history(argument)
        elif name == "sessions":
            self._renderer.sessions(self._runtime.memory.list_sessions(), current=self._session_id)
        elif name == "new":
            self._session_id = new_session_id()
            self._renderer.info(f"[dim]Started session[/dim] [cyan]{self._session_id}[/cyan]")
        else:
            self._renderer.error(f"unknown command: /{name} (try /help)")

    def _show_tools(self, argument: str) -> None:
        registry = self._runtime.registry
        if not argument:
            self._renderer.tools(registry.compact_rows())
            return
        try:
            self._renderer.tools(registry.detail(argument).splitlines())
        except KeyError:
            self._renderer.error(f"no such tool: {argument}")

    def _show_history(self, argument: str) -> None:
        limit = DEFAULT_HISTORY_LIMIT
        if argument:
            try:
                limit = int(argument)
            except ValueError:
                self._renderer.error(f"not a number: {argument}")
                return
            if limit < 1:
                self._renderer.error("history limit must be positive")
                return
        self._renderer.history(self._runtime.memory.history(self._session_id, limit))
