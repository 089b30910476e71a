"""Task and trigger invariants, checked before anything is written."""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from taskengine.errors import ValidationError
from taskengine.scheduling.next_run import validate_expression
from taskengine.tasks.types import Task
from taskengine.triggers.types import TriggerCreate, parse_conditions


def normalize_window(start: datetime | None, end: datetime | None) -> tuple[datetime | None, datetime | None]:
    """Identical start and end dates mean a single-day task with no end."""
    if start is not None and end is not None and start == end:
        return start, None
    return start, end


def validate_task(task: Task) -> None:
    details = {"task_id": task.id, "kind": task.kind}

    if not task.name.strip():
        raise ValidationError("Task name is required", details)
    if not task.instructions.strip():
        raise ValidationError("Task instructions are required", details)

    if task.kind == "scheduled":
        if not task.cron_expression:
            raise ValidationError("Cron expression is required for scheduled tasks", details)
        # Raises SchedulingError; a malformed expression is never persisted either.
        validate_expression(task.cron_expression)
    elif not task.trigger_type:
        raise ValidationError("Event trigger type is required for event-based tasks", details)

    if task.max_executions is not None and task.max_executions <= 0:
        raise ValidationError("max_executions must be positive", {**details, "max_executions": task.max_executions})

    if task.start_date is not None and task.end_date is not None and task.start_date >= task.end_date:
        raise ValidationError(
            "start_date must be before end_date",
            {**details, "start_date": task.start_date.isoformat(), "end_date": task.end_date.isoformat()},
        )

    try:
        ZoneInfo(task.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {task.timezone}", {**details, "timezone": task.timezone})


def validate_trigger(trigger: TriggerCreate) -> None:
    details = {"trigger_type": trigger.trigger_type, "name": trigger.name}
    if not trigger.name.strip():
        raise ValidationError("Trigger name is required", details)
    if trigger.cooldown_minutes < 0:
        raise ValidationError("cooldown_minutes must not be negative", {**details, "cooldown_minutes": trigger.cooldown_minutes})
    parse_conditions(trigger.trigger_type, trigger.conditions)
