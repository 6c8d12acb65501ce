"""Worker pool for running turns concurrently across sessions."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field

from loguru import logger

from vesper.core.controller import TurnController
from vesper.errors import TurnCancelledError
from vesper.types import Turn


@dataclass
class _Job:
    prompt: str
    session_id: str
    future: asyncio.Future[Turn] = field(repr=False)


class TurnPool:
    """Fixed set of workers pulling turns from a queue.

    Turns for different sessions run in parallel. Turns for the same session
    run one at a time, in submission order.
    """

    def __init__(self, controller: TurnController, *, workers: int = 1, timeout: float | None = None) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._controller = controller
        self._worker_count = workers
        self._timeout = timeout
        self._queue: asyncio.Queue[_Job] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._session_locks: dict[str, asyncio.Lock] = {}

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def __aenter__(self) -> TurnPool:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(), name=f"vesper-turn-worker-{idx}")
            for idx in range(self._worker_count)
        ]
        logger.info("pool.start workers={}", self._worker_count)

    def submit(self, prompt: str, session_id: str) -> asyncio.Future[Turn]:
        if not self._workers:
            raise RuntimeError("turn pool is not running")
        future: asyncio.Future[Turn] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Job(prompt=prompt, session_id=session_id, future=future))
        return future

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        for task in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        while not self._queue.empty():
            job = self._queue.get_nowait()
            _fail(job, TurnCancelledError("turn pool stopped before the turn started"))
            self._queue.task_done()
        logger.info("pool.stop")

    async def _worker(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._process(job)
            finally:
                self._queue.task_done()

    async def _process(self, job: _Job) -> None:
        if job.future.cancelled():
            return
        lock = self._session_locks.setdefault(job.session_id, asyncio.Lock())
        try:
            async with lock:
                turn = await self._controller.run(job.prompt, job.session_id, timeout=self._timeout)
        except asyncio.CancelledError:
            _fail(job, TurnCancelledError("turn cancelled"))
            raise
        except Exception as exc:
            logger.warning("pool.turn_failed session={} error={}", job.session_id, exc)
            _fail(job, exc)
            return
        if not job.future.done():
            job.future.set_result(turn)


def _fail(job: _Job, exc: BaseException) -> None:
    if not job.future.done():
        job.future.set_exception(exc)
