import asyncio
import json
from collections.abc import Sequence
from dataclasses import dataclass, field

import pytest
from pydantic import BaseModel

from vesper.core.controller import PhaseTracker, TurnConfig, TurnController
from vesper.errors import (
    BackendUnavailableError,
    EmbeddingError,
    InvalidInputError,
    PhaseOrderError,
    ToolIoError,
    ToolLoopExceededError,
    TurnCancelledError,
)
from vesper.memory import MemoryStore
from vesper.progress import ProgressBroadcaster
from vesper.tools import ToolGateway, ToolRegistry, ToolSpec
from vesper.types import ModelResponse, Phase, Role, ToolCall


@dataclass
class ScriptedBackend:
    """Returns queued responses in order; a queued exception is raised instead."""

    script: list[ModelResponse | Exception]
    calls: list[list[dict]] = field(default_factory=list)
    tools_seen: list[list[dict]] = field(default_factory=list)

    async def complete(self, messages: Sequence[dict], tools: Sequence[dict]) -> ModelResponse:
        self.calls.append([dict(message) for message in messages])
        self.tools_seen.append(list(tools))
        if not self.script:
            raise AssertionError("backend called more often than scripted")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class AlwaysToolBackend:
    def __init__(self) -> None:
        self.calls = 0

    async def complete(self, messages: Sequence[dict], tools: Sequence[dict]) -> ModelResponse:
        self.calls += 1
        return ModelResponse(tool_calls=(ToolCall(name="note_add", parameters={"text": f"n{self.calls}"}),))


class HangingBackend:
    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def complete(self, messages: Sequence[dict], tools: Sequence[dict]) -> ModelResponse:
        self.started.set()
        await asyncio.sleep(60)
        return ModelResponse(text="too late")


class NoteInput(BaseModel):
    text: str


def _registry(notes: list[str]) -> ToolRegistry:
    registry = ToolRegistry()

    def _add(params: NoteInput) -> str:
        notes.append(params.text)
        return f"noted {params.text}"

    def _purge(params: NoteInput) -> str:
        notes.clear()
        return "purged"

    def _sync(params: NoteInput) -> str:
        notes.append(f"sync:{params.text}")
        raise ToolIoError("note server unreachable")

    registry.register(ToolSpec("note.add", "Add a note", NoteInput, _add))
    registry.register(ToolSpec("note.sync", "Sync notes to the server", NoteInput, _sync))
    registry.register(ToolSpec("note.purge", "Remove all notes", NoteInput, _purge, requires_confirmation=True))
    return registry


def _controller(
    store: MemoryStore,
    broadcaster: ProgressBroadcaster,
    backend,
    *,
    notes: list[str] | None = None,
    confirm=None,
    **config,
) -> TurnController:
    gateway = ToolGateway(_registry(notes if notes is not None else []), broadcaster, confirm=confirm)
    return TurnController(
        backend=backend,
        memory=store,
        gateway=gateway,
        broadcaster=broadcaster,
        config=TurnConfig(backoff_base=0.0, backoff_max=0.0, **config),
    )


def _phases(broadcaster: ProgressBroadcaster) -> list[Phase]:
    seen: list[Phase] = []
    broadcaster.subscribe(lambda event: seen.append(event.phase))
    return seen


def _tool_message(messages: list[dict]) -> dict:
    return json.loads(next(message for message in messages if message["role"] == "tool")["content"])


@pytest.mark.asyncio
async def test_plain_turn_emits_phases_in_order_and_persists(
    store: MemoryStore, broadcaster: ProgressBroadcaster
) -> None:
    phases = _phases(broadcaster)
    backend = ScriptedBackend([ModelResponse(text="Cats sleep a lot.")])
    controller = _controller(store, broadcaster, backend)

    turn = await controller.run("Tell me about cats", "s1")

    assert phases == [Phase.PREPARING, Phase.EMBEDDING, Phase.CONTEXT_RETRIEVAL, Phase.THINKING, Phase.FINALIZING]
    assert turn.response == "Cats sleep a lot."
    history = store.history("s1")
    assert [(entry.role, entry.content) for entry in history] == [
        (Role.USER, "Tell me about cats"),
        (Role.AGENT, "Cats sleep a lot."),
    ]
    assert store.turns("s1") == [turn]
    assert broadcaster.current is None


@pytest.mark.asyncio
async def test_tool_round_feeds_result_back_to_backend(store: MemoryStore, broadcaster: ProgressBroadcaster) -> None:
    phases = _phases(broadcaster)
    labels: list[str] = []
    broadcaster.subscribe(lambda event: labels.append(event.label))
    notes: list[str] = []
    backend = ScriptedBackend([
        ModelResponse(tool_calls=(ToolCall(name="note_add", parameters={"text": "milk"}, call_id="c1"),)),
        ModelResponse(text="Added milk."),
    ])
    controller = _controller(store, broadcaster, backend, notes=notes)

    turn = await controller.run("remember milk", "s1")

    assert turn.response == "Added milk."
    assert notes == ["milk"]
    assert phases == [
        Phase.PREPARING,
        Phase.EMBEDDING,
        Phase.CONTEXT_RETRIEVAL,
        Phase.THINKING,
        Phase.TOOL_EXECUTION,
        Phase.FINALIZING,
    ]
    assert "Using note.add" in labels
    second_call = backend.calls[1]
    assert second_call[-2]["tool_calls"][0]["id"] == "c1"
    assert second_call[-1]["tool_call_id"] == "c1"
    assert _tool_message(second_call) == {"status": "success", "output": "noted milk"}
    assert [schema["name"] for schema in backend.tools_seen[0]] == ["note_add", "note_purge", "note_sync"]


@pytest.mark.asyncio
async def test_denied_tool_is_reported_to_backend(store: MemoryStore, broadcaster: ProgressBroadcaster) -> None:
    notes = ["keep me"]
    backend = ScriptedBackend([
        ModelResponse(tool_calls=(ToolCall(name="note_purge", parameters={"text": "all"}),)),
        ModelResponse(text="Okay, I left your notes alone."),
    ])
    controller = _controller(store, broadcaster, backend, notes=notes, confirm=lambda _name, _desc: False)

    turn = await controller.run("clear my notes", "s1")

    assert notes == ["keep me"]
    assert _tool_message(backend.calls[1]) == {
        "status": "denied",
        "output": "",
        "error": "User denied tool execution",
    }
    assert turn.response == "Okay, I left your notes alone."


@pytest.mark.asyncio
async def test_failing_tool_is_reported_to_backend_and_run_once(
    store: MemoryStore, broadcaster: ProgressBroadcaster
) -> None:
    notes: list[str] = []
    backend = ScriptedBackend([
        ModelResponse(tool_calls=(ToolCall(name="note_sync", parameters={"text": "milk"}, call_id="c9"),)),
        ModelResponse(text="Sync failed, try again later."),
    ])
    controller = _controller(store, broadcaster, backend, notes=notes)

    turn = await controller.run("sync my notes", "s1")

    assert notes == ["sync:milk"]
    assert _tool_message(backend.calls[1]) == {
        "status": "error",
        "output": "note server unreachable",
        "error": "io: note server unreachable",
    }
    assert backend.calls[1][-1]["tool_call_id"] == "c9"
    assert turn.response == "Sync failed, try again later."


@pytest.mark.asyncio
async def test_always_tool_calling_backend_hits_round_limit(
    store: MemoryStore, broadcaster: ProgressBroadcaster
) -> None:
    backend = AlwaysToolBackend()
    controller = _controller(store, broadcaster, backend, max_tool_rounds=3)

    with pytest.raises(ToolLoopExceededError, match="3 rounds"):
        await controller.run("loop forever", "s1")

    assert backend.calls == 4
    assert store.history("s1") == []


@pytest.mark.asyncio
async def test_backend_failures_are_retried(store: MemoryStore, broadcaster: ProgressBroadcaster) -> None:
    backend = ScriptedBackend([ConnectionError("reset"), ModelResponse(text="recovered")])
    controller = _controller(store, broadcaster, backend)

    turn = await controller.run("hello", "s1")

    assert turn.response == "recovered"
    assert len(backend.calls) == 2


@pytest.mark.asyncio
async def test_backend_exhaustion_raises_unavailable(store: MemoryStore, broadcaster: ProgressBroadcaster) -> None:
    backend = ScriptedBackend([ConnectionError("down")] * 3)
    controller = _controller(store, broadcaster, backend, backend_max_attempts=3)

    with pytest.raises(BackendUnavailableError) as excinfo:
        await controller.run("hello", "s1")

    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert store.history("s1") == []
    assert broadcaster.current is None


@pytest.mark.asyncio
async def test_retrieval_uses_only_the_turns_session(store: MemoryStore, broadcaster: ProgressBroadcaster) -> None:
    await store.record("s1", Role.USER, "my cat is called Miso")
    await store.record("s2", Role.USER, "my cat is called Pixel")
    backend = ScriptedBackend([ModelResponse(text="Miso")])
    controller = _controller(store, broadcaster, backend)

    await controller.run("what is my cat called?", "s1")

    request = backend.calls[0][-1]["content"]
    assert request.startswith("Context from previous conversations:")
    assert "Miso" in request
    assert "Pixel" not in request
    assert request.endswith("Current request: what is my cat called?")


@pytest.mark.asyncio
@pytest.mark.parametrize("prompt", ["", "   \n"])
async def test_empty_prompt_is_rejected(store: MemoryStore, broadcaster: ProgressBroadcaster, prompt: str) -> None:
    backend = ScriptedBackend([])
    controller = _controller(store, broadcaster, backend)

    with pytest.raises(InvalidInputError):
        await controller.run(prompt, "s1")

    assert backend.calls == []


@pytest.mark.asyncio
async def test_timeout_cancels_turn_without_persisting(store: MemoryStore, broadcaster: ProgressBroadcaster) -> None:
    controller = _controller(store, broadcaster, HangingBackend())

    with pytest.raises(TurnCancelledError):
        await controller.run("slow question", "s1", timeout=0.05)

    assert store.history("s1") == []
    assert store.turns("s1") == []
    assert broadcaster.current is None


@pytest.mark.asyncio
async def test_task_cancellation_persists_nothing(store: MemoryStore, broadcaster: ProgressBroadcaster) -> None:
    backend = HangingBackend()
    controller = _controller(store, broadcaster, backend)

    task = asyncio.create_task(controller.run("slow question", "s1"))
    await backend.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert store.history("s1") == []


@pytest.mark.asyncio
async def test_embedding_failure_is_fatal(store: MemoryStore, broadcaster: ProgressBroadcaster, embedder) -> None:
    async def _broken(_text: str) -> list[float]:
        raise RuntimeError("model not loaded")

    embedder.embed = _broken
    controller = _controller(store, broadcaster, ScriptedBackend([]))

    with pytest.raises(EmbeddingError, match="model not loaded"):
        await controller.run("hello", "s1")


def test_phase_tracker_refuses_regression(broadcaster: ProgressBroadcaster) -> None:
    tracker = PhaseTracker(broadcaster)
    tracker.enter(Phase.THINKING)
    tracker.enter(Phase.TOOL_EXECUTION, "bash")
    tracker.enter(Phase.TOOL_EXECUTION, "fs.read")

    with pytest.raises(PhaseOrderError):
        tracker.enter(Phase.THINKING)
    assert tracker.current is Phase.TOOL_EXECUTION
