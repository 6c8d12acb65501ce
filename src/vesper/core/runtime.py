"""Assemble the turn pipeline for one workspace."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger
from rich.console import Console

from vesper.config import Settings, load_settings
from vesper.core.backend import ModelBackend, build_backend
from vesper.core.controller import TurnConfig, TurnController
from vesper.core.pool import TurnPool
from vesper.memory import MemoryStore, build_embedder
from vesper.progress import ProgressBroadcaster
from vesper.tools import TerminalConfirmer, ToolGateway, ToolRegistry, Workspace, register_builtin_tools
from vesper.tools.gateway import Confirm


@dataclass
class Runtime:
    """Everything one process needs to run turns against a workspace."""

    workspace: Path
    settings: Settings
    memory: MemoryStore
    registry: ToolRegistry
    broadcaster: ProgressBroadcaster
    gateway: ToolGateway
    backend: ModelBackend
    controller: TurnController

    def create_pool(self) -> TurnPool:
        return TurnPool(self.controller, workers=self.settings.workers, timeout=self.settings.turn_timeout)


def build_runtime(
    workspace: Path,
    *,
    settings: Settings | None = None,
    console: Console | None = None,
    confirm: Confirm | None = None,
    backend: ModelBackend | None = None,
    allowed_tools: set[str] | None = None,
) -> Runtime:
    """Build the runtime for one workspace.

    The broadcaster is created here once and handed to both the gateway and
    the controller.
    """
    workspace = workspace.resolve()
    settings = settings or load_settings(workspace)
    memory = MemoryStore(settings.resolve_home(), build_embedder(settings))

    registry = register_builtin_tools(
        ToolRegistry(allowed_tools), Workspace(workspace), log_file=settings.resolve_log_file()
    )
    broadcaster = ProgressBroadcaster(console)
    gateway = ToolGateway(
        registry,
        broadcaster,
        confirm=confirm or TerminalConfirmer(console, output_lock=broadcaster.output_lock),
        auto_approve=settings.yolo,
        timeout=settings.tool_timeout,
    )
    backend = backend or build_backend(settings)
    controller = TurnController(
        backend=backend,
        memory=memory,
        gateway=gateway,
        broadcaster=broadcaster,
        config=TurnConfig.from_settings(settings),
    )
    logger.info(
        "runtime.ready workspace={} model={} embedding={} tools={}",
        workspace,
        settings.model,
        settings.embedding_provider,
        len(registry.names()),
    )
    return Runtime(
        workspace=workspace,
        settings=settings,
        memory=memory,
        registry=registry,
        broadcaster=broadcaster,
        gateway=gateway,
        backend=backend,
        controller=controller,
    )
