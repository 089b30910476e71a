"""Execution runner: drives one execution from ledger row to task counters.

Both the scheduled path and the event path end here. The runner owns the
ledger row, the collaborator call and the counter update; the caller owns
the claim until `run` returns, at which point the runner has released it.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta

import pydantic

from taskengine.errors import ExecutionError, SchedulingError
from taskengine.execution.ledger import ExecutionLedger
from taskengine.execution.types import AgentInvoker, Execution, InvocationResult, TriggerContext
from taskengine.infrastructure.clock import Clock, ensure_utc, utc_now
from taskengine.infrastructure.config import MAX_CONSECUTIVE_FAILURES, TimeoutConfig
from taskengine.infrastructure.logger import logger
from taskengine.scheduling.next_run import NextRunCalculator
from taskengine.tasks.repository import TaskRepository
from taskengine.tasks.types import Task


class ExecutionRunner:
    def __init__(
        self,
        invoker: AgentInvoker,
        task_repo: TaskRepository,
        ledger: ExecutionLedger,
        calculator: NextRunCalculator | None = None,
        timeouts: TimeoutConfig | None = None,
        failure_threshold: int = MAX_CONSECUTIVE_FAILURES,
        clock: Clock = utc_now,
    ) -> None:
        self._invoker = invoker
        self._task_repo = task_repo
        self._ledger = ledger
        self._calculator = calculator or NextRunCalculator()
        self._timeouts = timeouts or TimeoutConfig()
        self._failure_threshold = failure_threshold
        self._clock = clock
        # task_id -> in-flight collaborator call
        self._inflight: dict[str, asyncio.Task[object]] = {}
        self._aborted: set[str] = set()

    @property
    def timeouts(self) -> TimeoutConfig:
        return self._timeouts

    def is_running(self, task_id: str) -> bool:
        return task_id in self._inflight

    def abort(self, task_id: str) -> bool:
        """Cancel the task's in-flight collaborator call, if any."""
        call = self._inflight.get(task_id)
        if call is None or call.done():
            return False
        self._aborted.add(task_id)
        call.cancel()
        logger.info("Aborting in-flight execution", task_id=task_id)
        return True

    async def run(self, task: Task, trigger: TriggerContext, claim_token: str) -> Execution | None:
        """Execute `task` once. Collaborator failures are recorded, never raised.

        Returns None without touching the ledger when the claim is no longer
        ours or the task stopped being active while the run was queued.
        """
        now = self._clock()
        lease_until = ensure_utc(now) + timedelta(milliseconds=self._timeouts.get_lease_duration())
        if not self._task_repo.confirm_claim(task.id, claim_token, lease_until):
            self._task_repo.release_claim(task.id, claim_token)
            logger.info("Claim lost before start, run skipped", task_id=task.id, trigger_source=trigger.source)
            return None
        task = self._task_repo.get_task_by_id(task.id) or task

        execution = self._ledger.create_pending(task, trigger, now)
        log = logger.bind(task_id=task.id, execution_id=execution.id, trigger_source=trigger.source)
        started = time.monotonic()

        try:
            self._ledger.mark_running(execution.id, self._clock())
            log.info("Execution started", agent_id=task.agent_id)

            call = asyncio.ensure_future(
                self._invoker.invoke(task.agent_id, execution.instructions_used, list(execution.tools_used), trigger)
            )
            self._inflight[task.id] = call

            try:
                raw = await asyncio.wait_for(call, timeout=self._timeouts.execution_timeout_s)
                result = InvocationResult.model_validate(raw)
            except asyncio.CancelledError:
                self._ledger.mark_cancelled(execution.id, self._clock(), self._elapsed_ms(started))
                log.info("Execution cancelled")
                if task.id in self._aborted:
                    return self._reload(execution)
                raise
            except asyncio.TimeoutError:
                self._fail(
                    task,
                    execution,
                    ExecutionError(
                        f"Agent invocation timed out after {self._timeouts.execution_timeout_s:g}s",
                        {"timeout_ms": self._timeouts.execution_timeout},
                    ),
                    started,
                )
                return self._reload(execution)
            except pydantic.ValidationError as err:
                self._fail(
                    task,
                    execution,
                    ExecutionError("Malformed agent result", {"errors": err.errors(include_url=False)}),
                    started,
                )
                return self._reload(execution)
            except ExecutionError as err:
                self._fail(task, execution, err, started)
                return self._reload(execution)
            except Exception as err:
                self._fail(task, execution, ExecutionError(str(err) or type(err).__name__), started)
                return self._reload(execution)

            self._succeed(task, trigger, execution, result, started)
            return self._reload(execution)
        finally:
            self._inflight.pop(task.id, None)
            self._aborted.discard(task.id)
            self._task_repo.release_claim(task.id, claim_token)

    def _succeed(
        self,
        task: Task,
        trigger: TriggerContext,
        execution: Execution,
        result: InvocationResult,
        started: float,
    ) -> None:
        finished = self._clock()
        metadata = {"agent_duration_ms": result.duration_ms} if result.duration_ms is not None else {}
        duration_ms = self._elapsed_ms(started)
        self._ledger.mark_completed(execution.id, finished, duration_ms, result.output, result.tool_outputs, metadata)

        advance = task.kind == "scheduled" and trigger.source != "manual"
        next_run_at, exhausted = None, False
        if advance and not self._reaches_cap(task):
            next_run_at, exhausted = self._next_run_after(task, finished)

        self._task_repo.record_success(
            task.id,
            finished,
            advance_next_run=advance,
            next_run_at=next_run_at,
            window_exhausted=exhausted,
        )
        logger.info(
            "Execution completed",
            task_id=task.id,
            execution_id=execution.id,
            duration_ms=duration_ms,
            next_run_at=next_run_at.isoformat() if next_run_at else None,
        )

    def _fail(self, task: Task, execution: Execution, error: ExecutionError, started: float) -> None:
        now = self._clock()
        self._ledger.mark_failed(execution.id, now, error.message, self._elapsed_ms(started), error.details or None)
        self._task_repo.record_failure(task.id, now, self._failure_threshold)
        logger.warning(
            "Execution failed",
            task_id=task.id,
            execution_id=execution.id,
            error=error.message,
            details=error.details,
        )

    def _next_run_after(self, task: Task, finished: datetime) -> tuple[datetime | None, bool]:
        """New next_run_at after a scheduled success, and whether the window is used up."""
        assert task.cron_expression is not None
        try:
            next_run_at = self._calculator.next_run(
                task.cron_expression, task.timezone, finished, last_fired=task.next_run_at
            )
        except SchedulingError as err:
            logger.error("No further occurrence, completing task", task_id=task.id, error=err.message, details=err.details)
            return None, True
        if task.end_date is not None and next_run_at >= ensure_utc(task.end_date):
            return None, True
        return next_run_at, False

    @staticmethod
    def _reaches_cap(task: Task) -> bool:
        return task.max_executions is not None and task.total_executions + 1 >= task.max_executions

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return max(0, int((time.monotonic() - started) * 1000))

    def _reload(self, execution: Execution) -> Execution:
        return self._ledger.get(execution.id) or execution
