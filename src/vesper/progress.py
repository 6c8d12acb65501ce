"""Live phase indicator that can step aside for confirmation prompts."""

from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from collections.abc import Callable, Generator

from loguru import logger
from rich.console import Console

from vesper.types import Phase, PhaseEvent

SPINNER_FRAMES = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")
CLEAR_LINE = "\r\x1b[K"
POLL_SECONDS = 0.05
REFRESH_SECONDS = 0.1

PhaseListener = Callable[[PhaseEvent], None]


class PauseToken:
    """Boolean pause flag behind a lock.

    The lock is only ever held inside these synchronous methods, never across
    an ``await``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._paused = False

    def set(self) -> None:
        with self._lock:
            self._paused = True

    def clear(self) -> None:
        with self._lock:
            self._paused = False

    def is_set(self) -> bool:
        with self._lock:
            return self._paused


class ProgressBroadcaster:
    """Report the running turn's phase on one terminal line.

    ``update_phase`` never blocks the pipeline; a separate asyncio task redraws
    the line. ``pause`` clears the line and keeps the task from drawing until
    ``resume``, so a prompt can own the terminal in between.
    """

    def __init__(
        self,
        console: Console | None = None,
        *,
        poll_interval: float = POLL_SECONDS,
        refresh_interval: float = REFRESH_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._console = console or Console(stderr=True)
        self._poll_interval = poll_interval
        self._refresh_interval = refresh_interval
        self._clock = clock
        self._token = PauseToken()
        self._output_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._event: PhaseEvent | None = None
        self._turn_started_at: float | None = None
        self._listeners: list[PhaseListener] = []
        self._frame = 0
        self._line_drawn = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self.confirmation_lock = asyncio.Lock()

    @property
    def console(self) -> Console:
        return self._console

    @property
    def output_lock(self) -> threading.RLock:
        """Lock every writer to the shared console takes, the render task included."""
        return self._output_lock

    @property
    def is_paused(self) -> bool:
        return self._token.is_set()

    @property
    def current(self) -> PhaseEvent | None:
        with self._state_lock:
            return self._event

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, listener: PhaseListener) -> Callable[[], None]:
        """Register a listener called synchronously for every phase update."""
        with self._state_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._state_lock, contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def update_phase(self, event: PhaseEvent) -> None:
        with self._state_lock:
            if event.phase is Phase.PREPARING or self._turn_started_at is None:
                self._turn_started_at = event.started_at
            self._event = event
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("progress.listener.error phase={}", event.phase.name)

    def finish(self) -> None:
        """Forget the current phase and wipe the line once a turn is over."""
        with self._state_lock:
            self._event = None
            self._turn_started_at = None
        self._clear_line()

    def pause(self) -> None:
        """Stop rendering and clear the line before returning."""
        self._token.set()
        self._clear_line(force=True)

    def resume(self) -> None:
        self._token.clear()

    @contextlib.contextmanager
    def paused(self) -> Generator[None, None, None]:
        self.pause()
        try:
            yield
        finally:
            self.resume()

    def start(self) -> None:
        """Start the render task on the running event loop."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._render_loop(self._stop_event), name="progress-render")

    async def stop(self) -> None:
        task, stop_event = self._task, self._stop_event
        self._task = None
        self._stop_event = None
        if task is None or stop_event is None:
            return
        stop_event.set()
        try:
            await task
        finally:
            self._clear_line()

    async def _render_loop(self, stop_event: asyncio.Event) -> None:
        last_draw: float | None = None
        while not stop_event.is_set():
            # Copy the flag out; the token lock is already released here.
            paused = self._token.is_set()
            if not paused:
                now = self._clock()
                if last_draw is None or now - last_draw >= self._refresh_interval:
                    self._draw()
                    last_draw = now
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval)

    def render_line(self) -> str | None:
        """Return the text the next redraw would show, or ``None`` when idle."""
        with self._state_lock:
            event = self._event
            started_at = self._turn_started_at
        if event is None:
            return None
        elapsed = int(self._clock() - started_at) if started_at is not None else 0
        elapsed_str = f" ({elapsed}s)" if elapsed > 0 else ""
        frame = SPINNER_FRAMES[self._frame % len(SPINNER_FRAMES)]
        return f"\x1b[93m{frame}\x1b[0m {event.phase.indicator} {event.label}{elapsed_str}..."

    def _draw(self) -> None:
        if not self._console.is_terminal:
            return
        with self._output_lock:
            # A pause may have landed between the loop's check and this lock.
            if self._token.is_set():
                return
            line = self.render_line()
            if line is None:
                return
            self._write(f"\r{line}\x1b[K")
            self._line_drawn = True
            self._frame = (self._frame + 1) % len(SPINNER_FRAMES)

    def _clear_line(self, *, force: bool = False) -> None:
        if not self._console.is_terminal:
            return
        with self._output_lock:
            if not (force or self._line_drawn):
                return
            self._write(CLEAR_LINE)
            self._line_drawn = False

    def _write(self, text: str) -> None:
        stream = self._console.file
        stream.write(text)
        stream.flush()
