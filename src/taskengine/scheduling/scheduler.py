"""Task scheduler: polls for due tasks and enqueues them."""

from __future__ import annotations

from datetime import datetime

from taskengine.errors import SchedulingError
from taskengine.execution.execution_queue import ExecutionQueue
from taskengine.execution.runner import ExecutionRunner
from taskengine.execution.types import TriggerContext
from taskengine.infrastructure.clock import Clock, ensure_utc, utc_now
from taskengine.infrastructure.config import SCHEDULER_POLL_INTERVAL
from taskengine.infrastructure.logger import logger
from taskengine.infrastructure.poll_loop import PollLoop, start_poll_loop
from taskengine.scheduling.next_run import NextRunCalculator
from taskengine.tasks.service import TaskManager
from taskengine.tasks.types import Task


class TaskScheduler:
    def __init__(
        self,
        task_manager: TaskManager,
        runner: ExecutionRunner,
        queue: ExecutionQueue,
        clock: Clock = utc_now,
        poll_interval_s: float = SCHEDULER_POLL_INTERVAL,
        calculator: NextRunCalculator | None = None,
    ) -> None:
        self._task_manager = task_manager
        self._runner = runner
        self._queue = queue
        self._clock = clock
        self._poll_interval_s = poll_interval_s
        self._calculator = calculator or NextRunCalculator()

    async def poll_once(self) -> int:
        """Claim and enqueue every due task. Returns how many were dispatched."""
        now = ensure_utc(self._clock())
        due_tasks = self._task_manager.get_due_tasks()

        dispatched = 0
        for task in due_tasks:
            if task.start_date is not None and ensure_utc(task.start_date) > now:
                continue
            if task.is_capped:
                self._task_manager.complete(task.id, reason="max_executions reached")
                continue
            if task.end_date is not None and now >= ensure_utc(task.end_date):
                self._task_manager.complete(task.id, reason="end date passed")
                continue
            retry_at = self._retry_at(task)
            if retry_at is not None and now < retry_at:
                logger.debug("Failed slot waits for next occurrence", task_id=task.id, retry_at=retry_at.isoformat())
                continue

            token = self._task_manager.claim(task.id)
            if token is None:
                continue
            if not self._queue.enqueue(task.id, lambda t=task, tok=token: self._run(t, tok)):
                self._task_manager.release(task.id, token)
                continue
            dispatched += 1

        if dispatched:
            logger.info("Dispatched due tasks", count=dispatched, due=len(due_tasks))
        return dispatched

    def _retry_at(self, task: Task) -> datetime | None:
        """When a slot whose run already failed may be tried again.

        next_run_at stays on the failed slot; the retry waits for the next
        occurrence after the failed attempt.
        """
        if task.consecutive_failures == 0 or task.last_run_at is None or task.next_run_at is None:
            return None
        if ensure_utc(task.last_run_at) < ensure_utc(task.next_run_at):
            return None
        assert task.cron_expression is not None
        try:
            return self._calculator.next_run(
                task.cron_expression, task.timezone, task.last_run_at, last_fired=task.next_run_at
            )
        except SchedulingError as err:
            logger.error("Cannot compute retry slot", task_id=task.id, error=err.message, details=err.details)
            return None

    async def _run(self, task: Task, claim_token: str) -> None:
        data = {"scheduled_for": task.next_run_at.isoformat()} if task.next_run_at else {}
        await self._runner.run(task, TriggerContext(source="scheduled", data=data), claim_token)

    def start(self) -> PollLoop:
        """Start the scheduler polling loop."""
        return start_poll_loop("Scheduler", self._poll_interval_s, self.poll_once)
