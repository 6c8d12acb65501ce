"""Validate, confirm and execute tool invocations."""

from __future__ import annotations

import asyncio
import json
import threading
import time
from collections.abc import Callable
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError
from rich.console import Console

from vesper.errors import ToolError
from vesper.progress import ProgressBroadcaster
from vesper.tools.registry import ToolRegistry, ToolSpec
from vesper.types import ToolCall, ToolInvocation, ToolResult

DEFAULT_TOOL_TIMEOUT_SECONDS = 30.0
AFFIRMATIVE_ANSWERS = frozenset({"y", "yes"})
UNKNOWN_TOOL = "unknown tool"
INVALID_PARAMETERS = "invalid parameters"
TIMEOUT = "timeout"
PARAM_PREVIEW_WIDTH = 30

Confirm = Callable[[str, str], bool]


def render_confirmation(tool_name: str, description: str) -> str:
    return f"Tool: {tool_name}\nAction: {description}\nDo you want to proceed? (y/N): "


def is_affirmative(answer: str) -> bool:
    return answer.strip().casefold() in AFFIRMATIVE_ANSWERS


class TerminalConfirmer:
    """Blocking yes/no prompt on the controlling terminal.

    Called on a worker thread; the prompt text is written under the shared
    output lock, the read happens outside it.
    """

    def __init__(
        self,
        console: Console | None = None,
        *,
        output_lock: threading.RLock | None = None,
        read_line: Callable[[], str] = input,
    ) -> None:
        self._console = console or Console()
        self._output_lock = output_lock or threading.RLock()
        self._read_line = read_line

    def __call__(self, tool_name: str, description: str) -> bool:
        with self._output_lock:
            stream = self._console.file
            stream.write("\n" + render_confirmation(tool_name, description))
            stream.flush()
        try:
            answer = self._read_line()
        except EOFError:
            return False
        return is_affirmative(answer)


class ToolGateway:
    """Single entry point for tool calls coming from the model.

    Failures never escape ``invoke``: they come back as ``ToolResult`` values
    so the model can react to them.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        broadcaster: ProgressBroadcaster,
        *,
        confirm: Confirm | None = None,
        auto_approve: bool = False,
        timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
    ) -> None:
        self._registry = registry
        self._broadcaster = broadcaster
        self._confirm = confirm or TerminalConfirmer(output_lock=broadcaster.output_lock)
        self._auto_approve = auto_approve
        self._timeout = timeout

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def auto_approve(self) -> bool:
        return self._auto_approve

    def invocation_for(self, call: ToolCall) -> ToolInvocation:
        spec = self._registry.resolve(call.name)
        return ToolInvocation(
            tool_name=spec.name if spec is not None else call.name,
            parameters=dict(call.parameters),
            requires_confirmation=spec.requires_confirmation if spec is not None else False,
            call_id=call.call_id,
        )

    async def invoke(self, invocation: ToolInvocation) -> ToolResult:
        spec = self._registry.resolve(invocation.tool_name)
        if spec is None:
            logger.warning("tool.call.unknown name={}", invocation.tool_name)
            return ToolResult.error(f"no tool named {invocation.tool_name!r}", UNKNOWN_TOOL)

        try:
            params = spec.validate(invocation.parameters)
        except ValidationError as exc:
            logger.warning("tool.call.invalid name={} errors={}", spec.name, exc.error_count())
            return ToolResult.error(_validation_summary(exc), INVALID_PARAMETERS)

        if (invocation.requires_confirmation or spec.requires_confirmation) and not self._auto_approve:
            approved = await self._ask(spec, params)
            if not approved:
                logger.info("tool.call.denied name={}", spec.name)
                return ToolResult.denied()

        return await self._execute(spec, params)

    async def _ask(self, spec: ToolSpec, params: BaseModel) -> bool:
        description = spec.describe_action(params)
        # One prompt at a time per terminal, even with several turns in flight.
        async with self._broadcaster.confirmation_lock:
            with self._broadcaster.paused():
                answer = asyncio.ensure_future(asyncio.to_thread(self._confirm, spec.name, description))
                try:
                    return await asyncio.shield(answer)
                except OSError:
                    logger.exception("tool.confirm.error name={}", spec.name)
                    return False
                except asyncio.CancelledError:
                    # The reader thread owns stdin until the user answers.
                    logger.info("tool.confirm.cancelled name={} waiting_for_answer=true", spec.name)
                    await asyncio.wait([answer])
                    raise

    async def _execute(self, spec: ToolSpec, params: BaseModel) -> ToolResult:
        _log_tool_call(spec.name, params.model_dump())
        start = time.monotonic()
        try:
            async with asyncio.timeout(self._timeout):
                if spec.is_async:
                    output = await spec.handler(params)  # type: ignore[misc]
                else:
                    output = await asyncio.to_thread(spec.handler, params)
        except TimeoutError:
            logger.warning("tool.call.timeout name={} timeout={}s", spec.name, self._timeout)
            return ToolResult.error(f"{spec.name} did not finish within {self._timeout:g}s", TIMEOUT)
        except ToolError as exc:
            logger.info("tool.call.failed name={} kind={} error={}", spec.name, exc.kind, exc)
            return ToolResult.error(str(exc), f"{exc.kind}: {exc!s}")
        except Exception as exc:
            logger.exception("tool.call.error name={}", spec.name)
            return ToolResult.error(str(exc), f"error: {type(exc).__name__}: {exc!s}")
        finally:
            duration = time.monotonic() - start
            logger.info("tool.call.end name={} duration={:.3f}ms", spec.name, duration * 1000)
        return ToolResult.success("" if output is None else str(output))


def format_tool_result(result: ToolResult) -> str:
    """Render a tool result as the content of a ``tool`` message."""
    payload: dict[str, Any] = {"status": result.status.value, "output": result.output}
    if result.error_detail:
        payload["error"] = result.error_detail
    return json.dumps(payload, ensure_ascii=False)


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "(root)"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


def _shorten_text(text: str, width: int = PARAM_PREVIEW_WIDTH, placeholder: str = "...") -> str:
    """Shorten text to width characters, cutting in the middle of words if needed."""
    if len(text) <= width:
        return text
    available = width - len(placeholder)
    if available <= 0:
        return placeholder
    return text[:available] + placeholder


def _log_tool_call(name: str, kwargs: dict[str, Any]) -> None:
    params: list[str] = []
    for key, value in kwargs.items():
        try:
            rendered = json.dumps(value, ensure_ascii=False)
        except TypeError:
            rendered = repr(value)
        params.append(f"{key}={_shorten_text(rendered)}")
    logger.info("tool.call.start name={} {{ {} }}", name, ", ".join(params))
