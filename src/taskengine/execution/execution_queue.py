"""Run queue with a global concurrency limit using asyncio."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Callable, Awaitable

from taskengine.infrastructure.config import MAX_CONCURRENT_EXECUTIONS
from taskengine.infrastructure.logger import logger


@dataclass
class QueuedRun:
    task_id: str
    fn: Callable[[], Awaitable[object]]


class ExecutionQueue:
    """FIFO run queue: at most one run per task, at most `max_concurrent` overall."""

    def __init__(self, max_concurrent: int = MAX_CONCURRENT_EXECUTIONS) -> None:
        self._max_concurrent = max(1, max_concurrent)
        self._active: set[str] = set()
        self._pending: deque[QueuedRun] = deque()
        self._running: set[asyncio.Task[None]] = set()
        self._shutting_down = False

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_queued(self, task_id: str) -> bool:
        return task_id in self._active or any(run.task_id == task_id for run in self._pending)

    def enqueue(self, task_id: str, fn: Callable[[], Awaitable[object]]) -> bool:
        """Queue a run. Returns False if it was dropped (duplicate or shutting down)."""
        if self._shutting_down:
            return False

        if self.is_queued(task_id):
            logger.debug("Task already queued, skipping", task_id=task_id)
            return False

        run = QueuedRun(task_id=task_id, fn=fn)
        if len(self._active) >= self._max_concurrent:
            self._pending.append(run)
            logger.debug("At concurrency limit, run queued", task_id=task_id, active=len(self._active))
            return True

        self._start(run)
        return True

    def _start(self, run: QueuedRun) -> None:
        self._active.add(run.task_id)
        task = asyncio.create_task(self._run(run))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, run: QueuedRun) -> None:
        logger.debug("Running queued task", task_id=run.task_id, active=len(self._active))
        try:
            await run.fn()
        except Exception:
            logger.exception("Error running task", task_id=run.task_id)
        finally:
            self._active.discard(run.task_id)
            self._drain()

    def _drain(self) -> None:
        if self._shutting_down:
            return
        while self._pending and len(self._active) < self._max_concurrent:
            self._start(self._pending.popleft())

    async def join(self) -> None:
        """Wait until every started and queued run has finished."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def shutdown(self, grace_period_s: float = 5.0) -> None:
        self._shutting_down = True
        dropped = len(self._pending)
        self._pending.clear()

        unfinished: set[asyncio.Task[None]] = set()
        if self._running:
            _done, unfinished = await asyncio.wait(set(self._running), timeout=grace_period_s)
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        logger.info("ExecutionQueue shut down", dropped_pending=dropped, cancelled_runs=len(unfinished))
