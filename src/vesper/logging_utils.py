"""Runtime logging helpers."""

from __future__ import annotations

import contextlib
import sys
from collections.abc import Generator
from contextvars import ContextVar
from logging import Handler
from pathlib import Path
from typing import Literal

import loguru
from loguru import logger
from rich.console import Console
from rich.logging import RichHandler

LogProfile = Literal["default", "chat"]

_PROFILE_FORMATS: dict[LogProfile, str] = {
    "chat": "{level} | {extra[session]} | {message}",
    "default": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<6} | {name}:{function}:{line} | {extra[session]} | {message}",
}
LOG_FILE_NAME = "vesper.log"
LOG_FILE_ROTATION = "10 MB"
LOG_FILE_RETENTION = 3
_CONFIGURED: tuple[LogProfile, str, Path | None] | None = None
_session_context: ContextVar[str] = ContextVar("session", default="-")


def current_session() -> str:
    """Get the id of the session whose turn is running in this context."""
    return _session_context.get()


@contextlib.contextmanager
def bind_session(session_id: str) -> Generator[None, None, None]:
    token = _session_context.set(session_id)
    try:
        yield
    finally:
        _session_context.reset(token)


def _build_chat_handler(console: Console | None) -> Handler:
    return RichHandler(
        console=console,
        show_level=True,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def configure_logging(
    *,
    profile: LogProfile = "default",
    level: str = "INFO",
    console: Console | None = None,
    log_file: Path | None = None,
) -> None:
    """Configure process-level logging once.

    The ``chat`` profile writes through the interactive console so log lines
    share its output lock with the progress line. With ``log_file`` every
    record is also appended there as a JSON line, which ``logs.read`` parses.
    """

    def inject_context(record: loguru.Record) -> None:
        record["extra"]["session"] = current_session()

    global _CONFIGURED
    resolved_level = level.upper()
    key = (profile, resolved_level, log_file)
    if key == _CONFIGURED:
        return

    logger.remove()
    if profile == "chat":
        logger.add(
            _build_chat_handler(console),
            level=resolved_level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stderr,
            level=resolved_level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=resolved_level,
            serialize=True,
            rotation=LOG_FILE_ROTATION,
            retention=LOG_FILE_RETENTION,
            backtrace=False,
            diagnose=False,
        )
    logger.configure(patcher=inject_context)
    _CONFIGURED = key
