"""Turn controller: one prompt in, one persisted turn out."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Any

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vesper.config import Settings
from vesper.core.backend import ModelBackend
from vesper.core.prompt import Conversation, build_request
from vesper.errors import (
    BackendUnavailableError,
    EmbeddingError,
    InvalidInputError,
    PhaseOrderError,
    ToolLoopExceededError,
    TurnCancelledError,
    VesperError,
)
from vesper.logging_utils import bind_session
from vesper.memory.store import MemoryStore
from vesper.progress import ProgressBroadcaster
from vesper.tools.gateway import ToolGateway
from vesper.types import MemoryEntry, ModelResponse, Phase, PhaseEvent, Role, ToolCall, Turn


@dataclass(frozen=True)
class TurnConfig:
    retrieval_limit: int = 5
    max_tool_rounds: int = 8
    backend_max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 4.0
    system_prompt: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> TurnConfig:
        return cls(
            retrieval_limit=settings.retrieval_limit,
            max_tool_rounds=settings.max_tool_rounds,
            backend_max_attempts=settings.backend_max_attempts,
            backoff_base=settings.backoff_base,
            backoff_max=settings.backoff_max,
            system_prompt=settings.system_prompt,
        )


class PhaseTracker:
    """Emit phase events for one turn, refusing to move backwards."""

    def __init__(self, broadcaster: ProgressBroadcaster) -> None:
        self._broadcaster = broadcaster
        self._current: Phase | None = None

    @property
    def current(self) -> Phase | None:
        return self._current

    def enter(self, phase: Phase, detail: str | None = None) -> None:
        if self._current is not None and phase < self._current:
            raise PhaseOrderError(f"cannot move from {self._current.name} back to {phase.name}")
        self._current = phase
        self._broadcaster.update_phase(PhaseEvent.of(phase, detail))


class TurnController:
    """Drive one turn: embed, retrieve, think, run tools, persist.

    Tool calls run one at a time so confirmation prompts stay unambiguous.
    Backend failures are retried with bounded exponential backoff; tool
    failures go back to the model as results.
    """

    def __init__(
        self,
        *,
        backend: ModelBackend,
        memory: MemoryStore,
        gateway: ToolGateway,
        broadcaster: ProgressBroadcaster,
        config: TurnConfig | None = None,
    ) -> None:
        self._backend = backend
        self._memory = memory
        self._gateway = gateway
        self._broadcaster = broadcaster
        self._config = config or TurnConfig()

    @property
    def broadcaster(self) -> ProgressBroadcaster:
        return self._broadcaster

    @property
    def memory(self) -> MemoryStore:
        return self._memory

    @property
    def config(self) -> TurnConfig:
        return self._config

    async def run(self, prompt: str, session_id: str, *, timeout: float | None = None) -> Turn:
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidInputError("prompt must not be empty")
        if not session_id or not session_id.strip():
            raise InvalidInputError("session id must not be empty")

        with bind_session(session_id):
            deadline = asyncio.timeout(timeout)
            try:
                async with deadline:
                    return await self._run(prompt.strip(), session_id)
            except TimeoutError as exc:
                if deadline.expired():
                    logger.warning("turn.timeout session={} timeout={}s", session_id, timeout)
                    raise TurnCancelledError(f"turn aborted after {timeout}s") from exc
                raise
            except asyncio.CancelledError:
                logger.info("turn.cancelled session={}", session_id)
                raise
            finally:
                self._broadcaster.finish()

    async def _run(self, prompt: str, session_id: str) -> Turn:
        tracker = PhaseTracker(self._broadcaster)
        tracker.enter(Phase.PREPARING)
        turn = Turn(session_id=session_id, prompt=prompt)
        conversation = Conversation(self._config.system_prompt)
        schemas = self._gateway.registry.schemas()
        logger.info("turn.start session={} turn={}", session_id, turn.id)

        tracker.enter(Phase.EMBEDDING)
        query = await self._embed(prompt)

        tracker.enter(Phase.CONTEXT_RETRIEVAL)
        context = await self._memory.retrieve(session_id, query, self._config.retrieval_limit)
        conversation.add_user(build_request(prompt, context))

        tracker.enter(Phase.THINKING)
        response = await self._complete(conversation, schemas)
        rounds = 0
        while response.tool_calls:
            rounds += 1
            if rounds > self._config.max_tool_rounds:
                logger.warning("turn.tool_loop_exceeded session={} rounds={}", session_id, rounds - 1)
                raise ToolLoopExceededError(self._config.max_tool_rounds)
            calls = _with_call_ids(response.tool_calls, rounds)
            conversation.add_tool_calls(response.text, calls)
            for call in calls:
                invocation = self._gateway.invocation_for(call)
                tracker.enter(Phase.TOOL_EXECUTION, invocation.tool_name)
                result = await self._gateway.invoke(invocation)
                logger.info("turn.tool_result tool={} status={}", invocation.tool_name, result.status.value)
                conversation.add_tool_result(call, result)
            response = await self._complete(conversation, schemas)

        tracker.enter(Phase.FINALIZING)
        completed = replace(turn, response=response.text.strip())
        await self._persist(completed, query)
        logger.info("turn.end session={} turn={} tool_rounds={}", session_id, turn.id, rounds)
        return completed

    async def _embed(self, text: str) -> list[float]:
        try:
            return await self._memory.embed(text)
        except VesperError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"embedding backend failed: {exc!s}") from exc

    async def _complete(self, conversation: Conversation, schemas: Sequence[dict[str, Any]]) -> ModelResponse:
        attempts = self._config.backend_max_attempts
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self._config.backoff_base, max=self._config.backoff_max),
            retry=retry_if_exception_type(Exception),
            before_sleep=_log_retry,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._backend.complete(conversation.messages, schemas)
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            logger.error("backend.unavailable attempts={} error={}", attempts, cause)
            raise BackendUnavailableError(
                f"model backend failed after {attempts} attempt(s): {cause!s}", attempts=attempts
            ) from cause
        return response

    async def _persist(self, turn: Turn, query: list[float]) -> list[MemoryEntry]:
        answer_embedding = await self._embed(turn.response)
        # No suspension point below: a cancelled turn writes all of this or nothing.
        entries = [
            await self._memory.record(turn.session_id, Role.USER, turn.prompt, embedding=query),
            await self._memory.record(turn.session_id, Role.AGENT, turn.response, embedding=answer_embedding),
        ]
        self._memory.record_turn(turn)
        return entries


def _with_call_ids(calls: Sequence[ToolCall], round_number: int) -> list[ToolCall]:
    return [
        call if call.call_id else replace(call, call_id=f"call_{round_number}_{idx}") for idx, call in enumerate(calls)
    ]


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    logger.warning("backend.retry attempt={} error={}", retry_state.attempt_number, error)
