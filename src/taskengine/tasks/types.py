"""Task domain types."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from taskengine.scheduling.types import ScheduleSpec
from taskengine.triggers.types import TriggerCreate, TriggerType

TaskKind = Literal["scheduled", "event_based"]
TaskStatus = Literal["active", "paused", "completed", "failed", "cancelled"]


class Task(BaseModel):
    id: str
    agent_id: str
    principal_id: str
    name: str
    description: str | None = None
    kind: TaskKind
    status: TaskStatus = "active"
    instructions: str
    tool_allow_list: list[str] = Field(default_factory=list)

    # scheduled
    cron_expression: str | None = None
    timezone: str = "UTC"
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None

    # event_based
    trigger_type: TriggerType | None = None

    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    consecutive_failures: int = 0
    max_executions: int | None = None

    start_date: datetime | None = None
    end_date: datetime | None = None

    claim_token: str | None = None
    claimed_until: datetime | None = None

    created_at: datetime
    updated_at: datetime

    @property
    def is_capped(self) -> bool:
        return self.max_executions is not None and self.total_executions >= self.max_executions


class TaskCreate(BaseModel):
    """Input for creating a task.

    Scheduled tasks give either a `schedule` (compiled to an expression) or
    a raw `cron_expression`. Event-based tasks give a `trigger_type` and
    optionally the triggers to register alongside it.
    """

    agent_id: str
    principal_id: str
    name: str
    description: str | None = None
    kind: TaskKind
    instructions: str
    tool_allow_list: list[str] = Field(default_factory=list)
    schedule: ScheduleSpec | None = None
    cron_expression: str | None = None
    timezone: str | None = None
    trigger_type: TriggerType | None = None
    triggers: list[TriggerCreate] = Field(default_factory=list)
    max_executions: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


class TaskUpdate(BaseModel):
    """Partial update. Only fields the caller set are applied (see model_fields_set)."""

    name: str | None = None
    description: str | None = None
    kind: TaskKind | None = None
    instructions: str | None = None
    tool_allow_list: list[str] | None = None
    schedule: ScheduleSpec | None = None
    cron_expression: str | None = None
    timezone: str | None = None
    trigger_type: TriggerType | None = None
    max_executions: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

