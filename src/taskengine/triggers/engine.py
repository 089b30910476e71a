"""Trigger engine: matches incoming events to triggers and starts executions."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Callable

from taskengine.execution.runner import ExecutionRunner
from taskengine.execution.types import Execution, TriggerContext
from taskengine.infrastructure.clock import Clock, ensure_utc, utc_now
from taskengine.infrastructure.logger import logger
from taskengine.tasks.service import TaskManager
from taskengine.triggers.repository import TriggerRepository
from taskengine.triggers.types import EventTrigger, TriggerType

Matcher = Callable[[EventTrigger, dict[str, Any]], bool]


def match_conditions(trigger: EventTrigger, payload: dict[str, Any]) -> bool:
    return trigger.conditions.matches(payload)


class TriggerEngine:
    def __init__(
        self,
        trigger_repo: TriggerRepository,
        task_manager: TaskManager,
        runner: ExecutionRunner,
        matcher: Matcher = match_conditions,
        clock: Clock = utc_now,
    ) -> None:
        self._trigger_repo = trigger_repo
        self._task_manager = task_manager
        self._runner = runner
        self._matcher = matcher
        self._clock = clock

    async def handle_event(self, trigger_type: TriggerType, payload: dict[str, Any]) -> list[Execution]:
        """Fire every active trigger of `trigger_type` that matches `payload`.

        Returns the executions started. A failing trigger is logged and the
        rest still fire.
        """
        triggers = self._trigger_repo.get_active_triggers(trigger_type)
        logger.debug("Event received", trigger_type=trigger_type, candidates=len(triggers))

        results = await asyncio.gather(
            *(self._fire(trigger, payload) for trigger in triggers),
            return_exceptions=True,
        )

        executions: list[Execution] = []
        for trigger, result in zip(triggers, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    "Trigger handling failed",
                    trigger_id=trigger.id,
                    task_id=trigger.task_id,
                    error=str(result),
                    exc_info=result,
                )
            elif result is not None:
                executions.append(result)
        return executions

    async def _fire(self, trigger: EventTrigger, payload: dict[str, Any]) -> Execution | None:
        log = logger.bind(trigger_id=trigger.id, task_id=trigger.task_id, trigger_type=trigger.trigger_type)

        if not self._matcher(trigger, payload):
            return None

        now = self._clock()
        if trigger.last_triggered_at is not None and trigger.cooldown_minutes > 0:
            elapsed = ensure_utc(now) - ensure_utc(trigger.last_triggered_at)
            if elapsed < timedelta(minutes=trigger.cooldown_minutes):
                log.info(
                    "Trigger suppressed by cooldown",
                    cooldown_minutes=trigger.cooldown_minutes,
                    elapsed_s=int(elapsed.total_seconds()),
                )
                return None

        task = self._task_manager.get_by_id(trigger.task_id)
        if task is None or task.status != "active":
            return None
        if task.is_capped:
            self._task_manager.complete(task.id, reason="max_executions reached")
            return None

        token = self._task_manager.claim(task.id)
        if token is None:
            log.info("Task busy, trigger skipped")
            return None

        if not self._trigger_repo.record_fire(trigger.id, now, trigger.last_triggered_at):
            self._task_manager.release(task.id, token)
            log.info("Trigger fired concurrently, skipped")
            return None

        log.info("Trigger fired", trigger_count=trigger.trigger_count + 1)
        context = TriggerContext(
            source="event",
            data={"trigger_id": trigger.id, "trigger_type": trigger.trigger_type, "event": payload},
        )
        # Re-read so the runner sees counters as of the claim
        task = self._task_manager.get_by_id(task.id) or task
        return await self._runner.run(task, context, token)
