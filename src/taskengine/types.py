"""Barrel re-export of all domain types."""

from taskengine.execution.types import (
    AgentInvoker,
    Execution,
    ExecutionStatus,
    InvocationResult,
    TriggerContext,
    TriggerSource,
)
from taskengine.scheduling.types import OneTimeSchedule, RecurrenceUnit, RecurringSchedule, ScheduleSpec
from taskengine.tasks.types import Task, TaskCreate, TaskKind, TaskStatus, TaskUpdate
from taskengine.triggers.types import EventTrigger, TriggerConditions, TriggerCreate, TriggerType

__all__ = [
    "AgentInvoker",
    "EventTrigger",
    "Execution",
    "ExecutionStatus",
    "InvocationResult",
    "OneTimeSchedule",
    "RecurrenceUnit",
    "RecurringSchedule",
    "ScheduleSpec",
    "Task",
    "TaskCreate",
    "TaskKind",
    "TaskStatus",
    "TaskUpdate",
    "TriggerConditions",
    "TriggerContext",
    "TriggerCreate",
    "TriggerSource",
    "TriggerType",
]
