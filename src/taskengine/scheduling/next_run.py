"""Next-run calculation over five-field recurrence expressions."""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter, CroniterBadDateError
from dateutil.relativedelta import relativedelta

from taskengine.errors import SchedulingError
from taskengine.infrastructure.clock import ensure_utc
from taskengine.scheduling.compiler import decompile_expression
from taskengine.scheduling.types import DecompiledSchedule

# Shapes whose interval the literal cron fields cannot encode. Week and
# year always step by one unit, matching how the compiler approximates them.
_CALENDAR_STEPS = {
    "week": lambda interval: relativedelta(weeks=1),
    "month": lambda interval: relativedelta(months=interval),
    "year": lambda interval: relativedelta(years=1),
}


def load_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise SchedulingError(f"Unknown timezone: {name}", {"timezone": name})


def validate_expression(expression: str) -> None:
    if not expression or len(expression.split()) != 5 or not croniter.is_valid(expression):
        raise SchedulingError(f"Invalid cron expression: {expression}", {"expression": expression})


class NextRunCalculator:
    """Produces the next occurrence strictly after max(now, last_fired)."""

    def __init__(self, max_iterations: int = 10_000) -> None:
        self._max_iterations = max_iterations

    def next_run(
        self,
        expression: str,
        timezone: str,
        now: datetime,
        last_fired: datetime | None = None,
    ) -> datetime:
        validate_expression(expression)
        tz = load_timezone(timezone)

        reference = ensure_utc(now)
        if last_fired is not None and ensure_utc(last_fired) > reference:
            reference = ensure_utc(last_fired)

        shape = decompile_expression(expression)
        if last_fired is not None and isinstance(shape, DecompiledSchedule) and shape.unit in _CALENDAR_STEPS:
            step = _CALENDAR_STEPS[shape.unit](shape.interval)
            return self._step_calendar(ensure_utc(last_fired), tz, reference, step)

        return self._evaluate(expression, tz, reference)

    def initial_next_run(
        self,
        expression: str,
        timezone: str,
        now: datetime,
        anchor: datetime | None = None,
    ) -> datetime:
        """First run for a new task: the anchor if still ahead, else the next occurrence after now."""
        if anchor is not None:
            anchor = ensure_utc(anchor)
            if anchor > ensure_utc(now):
                return anchor
            return self.next_run(expression, timezone, now, last_fired=anchor)
        return self.next_run(expression, timezone, now)

    def upcoming(self, expression: str, timezone: str, now: datetime, count: int = 5) -> list[datetime]:
        """Preview the next `count` occurrences."""
        runs: list[datetime] = []
        previous: datetime | None = None
        for _ in range(max(0, count)):
            previous = self.next_run(expression, timezone, previous or now, last_fired=previous)
            runs.append(previous)
        return runs

    def _evaluate(self, expression: str, tz: ZoneInfo, reference: datetime) -> datetime:
        try:
            itr = croniter(expression, reference.astimezone(tz))
            for _ in range(self._max_iterations):
                candidate = ensure_utc(itr.get_next(datetime))
                if candidate > reference:
                    return candidate
        except (CroniterBadDateError, ValueError, KeyError) as err:
            raise SchedulingError(f"No occurrence for cron expression: {expression}", {"expression": expression, "error": str(err)})
        raise SchedulingError(f"No occurrence for cron expression: {expression}", {"expression": expression})

    def _step_calendar(self, last_fired: datetime, tz: ZoneInfo, reference: datetime, step: relativedelta) -> datetime:
        # Step from the last slot in wall-clock time; multiplying keeps month-end clamping from drifting.
        base = last_fired.astimezone(tz).replace(tzinfo=None)
        for k in range(1, self._max_iterations + 1):
            candidate = ensure_utc((base + step * k).replace(tzinfo=tz))
            if candidate > reference:
                return candidate
        raise SchedulingError("Calendar stepping did not reach the reference instant", {"last_fired": last_fired.isoformat()})
