"""Value types shared across the turn pipeline."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any


class Phase(IntEnum):
    """Stages of one turn, in the order they are entered."""

    PREPARING = 1
    EMBEDDING = 2
    CONTEXT_RETRIEVAL = 3
    THINKING = 4
    TOOL_EXECUTION = 5
    FINALIZING = 6

    @property
    def indicator(self) -> str:
        return _PHASE_INDICATORS[self]

    def default_label(self, detail: str | None = None) -> str:
        if self is Phase.TOOL_EXECUTION and detail:
            return f"Using {detail}"
        return _PHASE_LABELS[self]


_PHASE_INDICATORS: dict[Phase, str] = {
    Phase.PREPARING: "⚙",
    Phase.EMBEDDING: "🔍",
    Phase.CONTEXT_RETRIEVAL: "📚",
    Phase.THINKING: "🧠",
    Phase.TOOL_EXECUTION: "🔧",
    Phase.FINALIZING: "✨",
}

_PHASE_LABELS: dict[Phase, str] = {
    Phase.PREPARING: "Preparing",
    Phase.EMBEDDING: "Generating embeddings",
    Phase.CONTEXT_RETRIEVAL: "Retrieving context",
    Phase.THINKING: "Thinking",
    Phase.TOOL_EXECUTION: "Running tools",
    Phase.FINALIZING: "Finalizing response",
}


@dataclass(frozen=True)
class PhaseEvent:
    """Ephemeral progress notice emitted by the turn controller."""

    phase: Phase
    label: str
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def of(cls, phase: Phase, detail: str | None = None) -> PhaseEvent:
        return cls(phase=phase, label=phase.default_label(detail))


class Role(StrEnum):
    USER = "user"
    AGENT = "agent"


@dataclass(frozen=True)
class MemoryEntry:
    """One persisted, embedded piece of conversation history."""

    session_id: str
    role: Role
    content: str
    embedding: tuple[float, ...]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role.value,
            "content": self.content,
            "embedding": list(self.embedding),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: object) -> MemoryEntry | None:
        if not isinstance(payload, dict):
            return None
        entry_id = payload.get("id")
        session_id = payload.get("session_id")
        content = payload.get("content")
        embedding = payload.get("embedding")
        if not isinstance(entry_id, str) or not isinstance(session_id, str):
            return None
        if not isinstance(content, str) or not isinstance(embedding, list):
            return None
        try:
            role = Role(payload.get("role"))
            created_at = datetime.fromisoformat(str(payload.get("created_at")))
            vector = tuple(float(value) for value in embedding)
        except (TypeError, ValueError):
            return None
        return cls(
            session_id=session_id,
            role=role,
            content=content,
            embedding=vector,
            id=entry_id,
            created_at=created_at,
        )


@dataclass(frozen=True)
class Turn:
    """One complete prompt-to-response cycle."""

    session_id: str
    prompt: str
    response: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "prompt": self.prompt,
            "response": self.response,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: object) -> Turn | None:
        if not isinstance(payload, dict):
            return None
        fields = [payload.get(key) for key in ("id", "session_id", "prompt", "response", "created_at")]
        if not all(isinstance(value, str) for value in fields):
            return None
        turn_id, session_id, prompt, response, created_at = fields
        try:
            created = datetime.fromisoformat(created_at)  # type: ignore[arg-type]
        except ValueError:
            return None
        return cls(session_id=session_id, prompt=prompt, response=response, id=turn_id, created_at=created)  # type: ignore[arg-type]


@dataclass(frozen=True)
class ToolCall:
    """A tool request as returned by the model backend."""

    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None


@dataclass(frozen=True)
class ModelResponse:
    """One backend completion: final text or a batch of tool calls."""

    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()


@dataclass(frozen=True)
class ToolInvocation:
    tool_name: str
    parameters: dict[str, Any]
    requires_confirmation: bool = False
    call_id: str | None = None


class ToolStatus(StrEnum):
    SUCCESS = "success"
    DENIED = "denied"
    ERROR = "error"


@dataclass(frozen=True)
class ToolResult:
    status: ToolStatus
    output: str = ""
    error_detail: str | None = None

    @classmethod
    def success(cls, output: str) -> ToolResult:
        return cls(ToolStatus.SUCCESS, output)

    @classmethod
    def denied(cls, detail: str = "User denied tool execution") -> ToolResult:
        return cls(ToolStatus.DENIED, "", detail)

    @classmethod
    def error(cls, output: str, detail: str | None = None) -> ToolResult:
        return cls(ToolStatus.ERROR, output, detail)

    @property
    def ok(self) -> bool:
        return self.status is ToolStatus.SUCCESS
