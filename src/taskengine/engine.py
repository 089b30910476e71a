"""TaskEngine: the public facade over tasks, triggers and executions.

Wires the task manager, runner, queue, scheduler and trigger engine around
one database and one agent invoker. Everything time-dependent reads the
injected clock.
"""

from __future__ import annotations

from typing import Any

from taskengine.errors import TaskBusyError, TaskStateError
from taskengine.execution.execution_queue import ExecutionQueue
from taskengine.execution.runner import ExecutionRunner
from taskengine.execution.types import AgentInvoker, Execution, TriggerContext
from taskengine.infrastructure.clock import Clock, utc_now
from taskengine.infrastructure.config import (
    MAX_CONCURRENT_EXECUTIONS,
    MAX_CONSECUTIVE_FAILURES,
    SCHEDULER_POLL_INTERVAL,
    TimeoutConfig,
)
from taskengine.infrastructure.database import AppDatabase
from taskengine.infrastructure.logger import logger
from taskengine.infrastructure.poll_loop import PollLoop
from taskengine.scheduling.compiler import describe_schedule
from taskengine.scheduling.next_run import NextRunCalculator
from taskengine.scheduling.scheduler import TaskScheduler
from taskengine.tasks.service import TaskManager
from taskengine.tasks.types import Task, TaskCreate, TaskKind, TaskStatus, TaskUpdate
from taskengine.triggers.engine import Matcher, TriggerEngine, match_conditions
from taskengine.triggers.types import EventTrigger, TriggerCreate, TriggerType


class TaskEngine:
    def __init__(
        self,
        database: AppDatabase,
        invoker: AgentInvoker,
        clock: Clock = utc_now,
        timeouts: TimeoutConfig | None = None,
        failure_threshold: int = MAX_CONSECUTIVE_FAILURES,
        max_concurrent: int = MAX_CONCURRENT_EXECUTIONS,
        poll_interval_s: float = SCHEDULER_POLL_INTERVAL,
        matcher: Matcher = match_conditions,
    ) -> None:
        self._database = database
        self._clock = clock
        timeouts = timeouts or TimeoutConfig()
        calculator = NextRunCalculator()

        self.tasks = TaskManager(database.task_repo, database.trigger_repo, calculator, timeouts, clock)
        self.runner = ExecutionRunner(
            invoker, database.task_repo, database.ledger, calculator, timeouts, failure_threshold, clock
        )
        self.queue = ExecutionQueue(max_concurrent)
        self.scheduler = TaskScheduler(self.tasks, self.runner, self.queue, clock, poll_interval_s, calculator)
        self.triggers = TriggerEngine(database.trigger_repo, self.tasks, self.runner, matcher, clock)
        self._poll_loop: PollLoop | None = None

    # --- Lifecycle of the engine itself ---

    def recover(self) -> int:
        """Fail executions a crashed process left pending or running."""
        count = self._database.ledger.fail_abandoned(self._clock())
        if count:
            logger.warning("Recovered interrupted executions", count=count)
        return count

    @property
    def is_running(self) -> bool:
        return self._poll_loop is not None and self._poll_loop.running

    def start(self) -> PollLoop:
        self.recover()
        self._poll_loop = self.scheduler.start()
        return self._poll_loop

    async def stop(self, grace_period_s: float = 5.0) -> None:
        if self._poll_loop:
            self._poll_loop.stop()
            self._poll_loop = None
        await self.queue.shutdown(grace_period_s)

    async def poll_once(self) -> int:
        return await self.scheduler.poll_once()

    # --- Tasks ---

    def create_task(self, request: TaskCreate | dict[str, Any]) -> Task:
        return self._wake_if_scheduled(self.tasks.create(TaskCreate.model_validate(request)))

    def update_task(self, task_id: str, request: TaskUpdate | dict[str, Any]) -> Task:
        return self._wake_if_scheduled(self.tasks.update(task_id, TaskUpdate.model_validate(request)))

    def delete_task(self, task_id: str) -> None:
        self.runner.abort(task_id)
        self.tasks.delete(task_id)

    def delete_agent_tasks(self, agent_id: str) -> int:
        for task in self.tasks.list_tasks(agent_id=agent_id, limit=None):
            self.runner.abort(task.id)
        return self.tasks.delete_for_agent(agent_id)

    def get_task(self, task_id: str) -> Task:
        return self.tasks.require(task_id)

    def list_tasks(
        self,
        agent_id: str | None = None,
        principal_id: str | None = None,
        status: TaskStatus | None = None,
        kind: TaskKind | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[Task]:
        return self.tasks.list_tasks(agent_id, principal_id, status, kind, limit, offset)

    def describe_schedule(self, task_id: str) -> str:
        task = self.tasks.require(task_id)
        if task.kind != "scheduled":
            return f"On {task.trigger_type}"
        return describe_schedule(
            task.cron_expression,
            task.timezone,
            task.max_executions,
            task.start_date,
            task.end_date,
            task.next_run_at,
        )

    # --- Triggers ---

    def add_trigger(self, task_id: str, request: TriggerCreate | dict[str, Any]) -> EventTrigger:
        return self.tasks.add_trigger(task_id, TriggerCreate.model_validate(request))

    def set_trigger_active(self, trigger_id: str, is_active: bool) -> EventTrigger:
        return self.tasks.set_trigger_active(trigger_id, is_active)

    def list_triggers(self, task_id: str) -> list[EventTrigger]:
        self.tasks.require(task_id)
        return self.tasks.list_triggers(task_id)

    async def ingest_event(self, trigger_type: TriggerType, payload: dict[str, Any]) -> list[Execution]:
        return await self.triggers.handle_event(trigger_type, payload)

    # --- Execution control ---

    async def run_now(self, task_id: str) -> Execution:
        """Run the task immediately, outside its schedule. next_run_at is left alone."""
        task = self.tasks.require(task_id)
        if task.status != "active":
            raise TaskStateError(
                f"Cannot run a {task.status} task",
                {"task_id": task_id, "status": task.status},
            )
        token = self.tasks.claim(task_id)
        if token is None:
            raise TaskBusyError("Task is already running", {"task_id": task_id})
        task = self.tasks.get_by_id(task_id) or task
        execution = await self.runner.run(task, TriggerContext(source="manual"), token)
        if execution is None:
            raise TaskStateError("Task stopped before it could run", {"task_id": task_id})
        return execution

    def pause(self, task_id: str) -> Task:
        return self.tasks.pause(task_id)

    def resume(self, task_id: str) -> Task:
        return self._wake_if_scheduled(self.tasks.resume(task_id))

    def cancel(self, task_id: str) -> Task:
        task = self.tasks.cancel(task_id)
        self.runner.abort(task_id)
        return task

    def history(self, task_id: str, limit: int = 50, offset: int = 0) -> list[Execution]:
        self.tasks.require(task_id)
        return self._database.ledger.list_for_task(task_id, max(0, limit), max(0, offset))

    def _wake_if_scheduled(self, task: Task) -> Task:
        # A task due before the next cycle gets picked up right away
        if self._poll_loop and task.kind == "scheduled" and task.next_run_at is not None:
            if task.next_run_at <= self._clock():
                self._poll_loop.wake()
        return task
