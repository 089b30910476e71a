"""Task manager: centralized task lifecycle."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

from taskengine.errors import (
    InvalidTransitionError,
    PermissionDeniedError,
    SchedulingError,
    TaskNotFoundError,
    ValidationError,
)
from taskengine.infrastructure.clock import Clock, ensure_utc, utc_now
from taskengine.infrastructure.config import DEFAULT_TIMEZONE, TimeoutConfig
from taskengine.infrastructure.logger import logger
from taskengine.scheduling.compiler import compile_schedule
from taskengine.scheduling.next_run import NextRunCalculator
from taskengine.scheduling.types import CompiledSchedule, OneTimeSchedule, RecurringSchedule
from taskengine.tasks.authorization import AuthorizationPolicy
from taskengine.tasks.lifecycle import TERMINAL_STATUSES, allowed_sources, check_transition
from taskengine.tasks.repository import TaskRepository
from taskengine.tasks.types import Task, TaskCreate, TaskKind, TaskStatus, TaskUpdate
from taskengine.tasks.validation import normalize_window, validate_task, validate_trigger
from taskengine.triggers.repository import TriggerRepository
from taskengine.triggers.types import EventTrigger, TriggerCreate, parse_conditions

# Fields a None in an update cannot clear.
_REQUIRED_FIELDS = {"name", "instructions", "tool_allow_list", "timezone"}
_SCHEDULE_FIELDS = {"schedule", "cron_expression", "timezone", "start_date"}


class TaskManager:
    def __init__(
        self,
        task_repo: TaskRepository,
        trigger_repo: TriggerRepository,
        calculator: NextRunCalculator | None = None,
        timeouts: TimeoutConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._task_repo = task_repo
        self._trigger_repo = trigger_repo
        self._calculator = calculator or NextRunCalculator()
        self._timeouts = timeouts or TimeoutConfig()
        self._clock = clock

    # --- CRUD ---

    def create(self, request: TaskCreate) -> Task:
        """Validate, schedule and persist a new task with its triggers.

        Nothing is written if any part of the request is invalid.
        """
        now = self._clock()
        fields: dict[str, Any] = {
            "cron_expression": request.cron_expression,
            "timezone": request.timezone or DEFAULT_TIMEZONE,
            "max_executions": request.max_executions,
        }
        start_date, end_date = normalize_window(request.start_date, request.end_date)
        anchor: datetime | None = None

        if request.kind == "scheduled" and request.schedule is not None:
            compiled = self._compile(request.schedule, now)
            anchor = compiled.anchor_utc
            fields.update(cron_expression=compiled.cron_expression, timezone=compiled.timezone)
            if isinstance(request.schedule, OneTimeSchedule):
                fields["max_executions"] = compiled.max_executions
            else:
                start_date = anchor
                end_date = compiled.end_at

        task = Task(
            id=f"task-{uuid.uuid4().hex}",
            agent_id=request.agent_id,
            principal_id=request.principal_id,
            name=request.name,
            description=request.description,
            kind=request.kind,
            status="active",
            instructions=request.instructions,
            tool_allow_list=list(request.tool_allow_list),
            trigger_type=request.trigger_type if request.kind == "event_based" else None,
            start_date=start_date,
            end_date=end_date,
            created_at=now,
            updated_at=now,
            **fields,
        )
        validate_task(task)

        triggers: list[TriggerCreate] = []
        if task.kind == "scheduled":
            task = task.model_copy(update={"next_run_at": self._first_run(task, now, anchor)})
        else:
            assert task.trigger_type is not None
            triggers = list(request.triggers) or [
                TriggerCreate(trigger_type=task.trigger_type, name=f"{task.name} trigger")
            ]
            for trigger in triggers:
                self._check_trigger(task, trigger)

        self._task_repo.create_task(task)
        for trigger in triggers:
            self._insert_trigger(task, trigger, now)

        logger.info(
            "Task created",
            task_id=task.id,
            agent_id=task.agent_id,
            kind=task.kind,
            next_run_at=task.next_run_at.isoformat() if task.next_run_at else None,
            triggers=len(triggers),
        )
        return task

    def update(self, task_id: str, request: TaskUpdate) -> Task:
        task = self.require(task_id)
        if task.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Cannot update a {task.status} task",
                {"task_id": task_id, "status": task.status},
            )

        fields_set = set(request.model_fields_set)
        if "kind" in fields_set and request.kind is not None and request.kind != task.kind:
            raise ValidationError("Task kind cannot be changed", {"task_id": task_id, "kind": task.kind})

        changes: dict[str, Any] = {}
        for key in fields_set - {"kind", "schedule"}:
            value = getattr(request, key)
            if value is None and key in _REQUIRED_FIELDS:
                continue
            changes[key] = value

        anchor: datetime | None = None
        if request.schedule is not None:
            if task.kind != "scheduled":
                raise ValidationError("Only scheduled tasks take a schedule", {"task_id": task_id})
            compiled = self._compile(request.schedule, self._clock())
            anchor = compiled.anchor_utc
            changes.update(cron_expression=compiled.cron_expression, timezone=compiled.timezone)
            if isinstance(request.schedule, OneTimeSchedule):
                changes["max_executions"] = compiled.max_executions
            else:
                changes.update(start_date=anchor, end_date=compiled.end_at)

        if "start_date" in changes or "end_date" in changes:
            start, end = normalize_window(
                changes.get("start_date", task.start_date), changes.get("end_date", task.end_date)
            )
            changes.update(start_date=start, end_date=end)

        candidate = task.model_copy(update=changes)
        validate_task(candidate)

        now = self._clock()
        if task.kind == "scheduled" and fields_set & _SCHEDULE_FIELDS:
            changes["next_run_at"] = self._first_run(candidate, now, anchor)

        self._task_repo.update_task(task_id, now, **changes)
        logger.info("Task updated", task_id=task_id, fields=sorted(changes))
        return self.require(task_id)

    def get_by_id(self, id: str) -> Task | None:
        return self._task_repo.get_task_by_id(id)

    def require(self, id: str) -> Task:
        task = self._task_repo.get_task_by_id(id)
        if not task:
            raise TaskNotFoundError(f"Task not found: {id}", {"task_id": id})
        return task

    def list_tasks(
        self,
        agent_id: str | None = None,
        principal_id: str | None = None,
        status: TaskStatus | None = None,
        kind: TaskKind | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[Task]:
        if limit is not None:
            limit = max(0, limit)
        return self._task_repo.get_tasks(agent_id, principal_id, status, kind, limit, max(0, offset))

    def delete(self, id: str) -> None:
        if not self._task_repo.delete_task(id):
            raise TaskNotFoundError(f"Task not found: {id}", {"task_id": id})
        logger.info("Task deleted", task_id=id)

    def delete_for_agent(self, agent_id: str) -> int:
        count = self._task_repo.delete_tasks_for_agent(agent_id)
        logger.info("Agent tasks deleted", agent_id=agent_id, count=count)
        return count

    # --- Triggers ---

    def add_trigger(self, task_id: str, request: TriggerCreate) -> EventTrigger:
        task = self.require(task_id)
        self._check_trigger(task, request)
        trigger = self._insert_trigger(task, request, self._clock())
        logger.info("Trigger added", task_id=task_id, trigger_id=trigger.id, trigger_type=trigger.trigger_type)
        return trigger

    def set_trigger_active(self, trigger_id: str, is_active: bool) -> EventTrigger:
        if not self._trigger_repo.set_active(trigger_id, is_active, self._clock()):
            raise TaskNotFoundError(f"Trigger not found: {trigger_id}", {"trigger_id": trigger_id})
        trigger = self._trigger_repo.get_trigger(trigger_id)
        assert trigger is not None
        logger.info("Trigger toggled", trigger_id=trigger_id, is_active=is_active)
        return trigger

    def get_trigger(self, trigger_id: str) -> EventTrigger:
        trigger = self._trigger_repo.get_trigger(trigger_id)
        if not trigger:
            raise TaskNotFoundError(f"Trigger not found: {trigger_id}", {"trigger_id": trigger_id})
        return trigger

    def list_triggers(self, task_id: str) -> list[EventTrigger]:
        return self._trigger_repo.get_triggers_for_task(task_id)

    # --- Lifecycle ---

    def pause(self, id: str) -> Task:
        return self._transition(id, "paused")

    def resume(self, id: str) -> Task:
        return self._transition(id, "active")

    def cancel(self, id: str) -> Task:
        return self._transition(id, "cancelled")

    def complete(self, id: str, reason: str) -> bool:
        """Mark an active task completed. False if it was no longer active."""
        done = self._task_repo.transition_status(id, "completed", allowed_sources("completed"), self._clock())
        if done:
            logger.info("Task completed", task_id=id, reason=reason)
        return done

    # --- Scheduling ---

    def get_due_tasks(self) -> list[Task]:
        return self._task_repo.get_due_tasks(self._clock())

    def claim(self, id: str) -> str | None:
        """Lease the task for one execution. Returns the claim token, or None if busy or inactive."""
        now = self._clock()
        token = uuid.uuid4().hex
        lease_until = ensure_utc(now) + timedelta(milliseconds=self._timeouts.get_lease_duration())
        if not self._task_repo.claim_task(id, token, now, lease_until):
            return None
        return token

    def release(self, id: str, token: str) -> None:
        self._task_repo.release_claim(id, token)

    # --- Authorization ---

    def get_authorized(self, task_id: str, auth: AuthorizationPolicy) -> Task:
        task = self.require(task_id)
        if not auth.can_manage_task(task.principal_id):
            raise PermissionDeniedError(
                f"Unauthorized task management: {task_id}",
                {"task_id": task_id, "principal_id": auth.principal_id},
            )
        return task

    # --- Internal ---

    def _transition(self, id: str, target: TaskStatus) -> Task:
        task = self.require(id)
        check_transition(id, task.status, target)
        if not self._task_repo.transition_status(id, target, allowed_sources(target), self._clock()):
            # Lost a race with the runner or another request
            current = self.require(id)
            check_transition(id, current.status, target)
            raise InvalidTransitionError(f"Cannot move task to {target}", {"task_id": id, "to": target})
        logger.info("Task status changed", task_id=id, status=target, previous=task.status)
        return self.require(id)

    def _compile(self, schedule: OneTimeSchedule | RecurringSchedule, now: datetime) -> CompiledSchedule:
        compiled = compile_schedule(schedule)
        if isinstance(schedule, OneTimeSchedule) and compiled.anchor_utc <= ensure_utc(now):
            raise SchedulingError(
                "One-time schedule is in the past",
                {"scheduled_for": compiled.anchor_utc.isoformat(), "now": ensure_utc(now).isoformat()},
            )
        return compiled

    def _first_run(self, task: Task, now: datetime, anchor: datetime | None) -> datetime:
        assert task.cron_expression is not None
        if anchor is None and task.start_date is not None and ensure_utc(task.start_date) > ensure_utc(now):
            # Let an occurrence exactly at the start date count.
            now = ensure_utc(task.start_date) - timedelta(seconds=1)
        next_run_at = self._calculator.initial_next_run(task.cron_expression, task.timezone, now, anchor)
        if task.end_date is not None and next_run_at >= ensure_utc(task.end_date):
            raise SchedulingError(
                "No occurrence before the task's end date",
                {"task_id": task.id, "next_run_at": next_run_at.isoformat(), "end_date": task.end_date.isoformat()},
            )
        return next_run_at

    def _check_trigger(self, task: Task, trigger: TriggerCreate) -> None:
        if task.kind != "event_based":
            raise ValidationError("Only event-based tasks take triggers", {"task_id": task.id})
        if trigger.trigger_type != task.trigger_type:
            raise ValidationError(
                "Trigger type does not match the task's trigger type",
                {"task_id": task.id, "task_trigger_type": task.trigger_type, "trigger_type": trigger.trigger_type},
            )
        validate_trigger(trigger)

    def _insert_trigger(self, task: Task, request: TriggerCreate, now: datetime) -> EventTrigger:
        trigger = EventTrigger(
            id=f"trigger-{uuid.uuid4().hex}",
            task_id=task.id,
            trigger_type=request.trigger_type,
            name=request.name,
            conditions=parse_conditions(request.trigger_type, request.conditions),
            is_active=request.is_active,
            cooldown_minutes=request.cooldown_minutes,
            created_at=now,
            updated_at=now,
        )
        self._trigger_repo.create_trigger(trigger)
        return trigger
