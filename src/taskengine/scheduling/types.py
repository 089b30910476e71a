"""Scheduling domain types."""

from __future__ import annotations

import datetime as dt
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, PositiveInt

RecurrenceUnit = Literal["minute", "hour", "day", "week", "month", "year"]


class OneTimeSchedule(BaseModel):
    mode: Literal["one_time"] = "one_time"
    date: dt.date
    time: dt.time
    timezone: str = "UTC"


class RecurringSchedule(BaseModel):
    mode: Literal["recurring"] = "recurring"
    interval: PositiveInt = 1
    unit: RecurrenceUnit
    start_date: dt.date
    time: dt.time
    timezone: str = "UTC"
    end_date: dt.date | None = None


ScheduleSpec = Annotated[Union[OneTimeSchedule, RecurringSchedule], Field(discriminator="mode")]


class CompiledSchedule(BaseModel):
    cron_expression: str
    timezone: str
    anchor_utc: dt.datetime
    max_executions: int | None = None
    end_at: dt.datetime | None = None  # exclusive


class DecompiledSchedule(BaseModel):
    interval: int
    unit: RecurrenceUnit
    time: str  # HH:MM, local to the task timezone
