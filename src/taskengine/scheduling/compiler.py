"""Schedule compiler: recurrence specs to five-field expressions and back.

Each unit compiles to one fixed expression shape, and decompiling only
recognizes those shapes; anything else is handed back as the raw string.

Known approximations, kept stable because display labels depend on them:
``week`` always compiles to "weekly on the anchor weekday" and ``year`` to
"the same date every year", whatever the interval. Neither field has a
native step for those units.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from taskengine.errors import ValidationError
from taskengine.infrastructure.clock import ensure_utc
from taskengine.scheduling.types import (
    CompiledSchedule,
    DecompiledSchedule,
    OneTimeSchedule,
    RecurrenceUnit,
    RecurringSchedule,
)

EVERY_MINUTE = "* * * * *"


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}", {"timezone": name})


def _cron_weekday(day: date) -> int:
    # cron counts Sunday as 0
    return day.isoweekday() % 7


def _recurring_expression(unit: RecurrenceUnit, interval: int, local: datetime) -> str:
    minute, hour = local.minute, local.hour
    if unit == "minute":
        return EVERY_MINUTE if interval == 1 else f"*/{interval} * * * *"
    if unit == "hour":
        return f"{minute} * * * *" if interval == 1 else f"{minute} */{interval} * * *"
    if unit == "day":
        return f"{minute} {hour} * * *" if interval == 1 else f"{minute} {hour} */{interval} * *"
    if unit == "week":
        return f"{minute} {hour} * * {_cron_weekday(local.date())}"
    if unit == "month":
        return f"{minute} {hour} {local.day} * *" if interval == 1 else f"{minute} {hour} {local.day} */{interval} *"
    return f"{minute} {hour} {local.day} {local.month} *"


def compile_schedule(spec: OneTimeSchedule | RecurringSchedule) -> CompiledSchedule:
    """Compile a schedule spec into an expression plus its UTC anchor."""
    tz = _zone(spec.timezone)

    if isinstance(spec, OneTimeSchedule):
        local = datetime.combine(spec.date, spec.time.replace(second=0, microsecond=0), tzinfo=tz)
        # The wildcard is never consulted once next_run_at is set; the cap makes it fire once.
        return CompiledSchedule(
            cron_expression=EVERY_MINUTE,
            timezone=spec.timezone,
            anchor_utc=ensure_utc(local),
            max_executions=1,
        )

    local = datetime.combine(spec.start_date, spec.time.replace(second=0, microsecond=0), tzinfo=tz)
    anchor_utc = ensure_utc(local)

    end_at = None
    if spec.end_date is not None:
        end_at = ensure_utc(datetime.combine(spec.end_date + timedelta(days=1), time(0), tzinfo=tz))
        if end_at <= anchor_utc:
            raise ValidationError(
                "Schedule end date must not be before its start",
                {"start_date": spec.start_date.isoformat(), "end_date": spec.end_date.isoformat()},
            )

    return CompiledSchedule(
        cron_expression=_recurring_expression(spec.unit, spec.interval, local),
        timezone=spec.timezone,
        anchor_utc=anchor_utc,
        end_at=end_at,
    )


def _number(field: str, low: int, high: int) -> int | None:
    if not field.isdigit():
        return None
    value = int(field)
    return value if low <= value <= high else None


def _step(field: str) -> int | None:
    if not field.startswith("*/"):
        return None
    value = field[2:]
    return int(value) if value.isdigit() and int(value) > 0 else None


def _label(hour: int, minute: int) -> str:
    return f"{hour:02d}:{minute:02d}"


def decompile_expression(
    expression: str,
    timezone: str = "UTC",
    reference: datetime | None = None,
) -> DecompiledSchedule | str:
    """Recover {interval, unit, time} from an expression the compiler emits.

    Minute shapes carry no time of day, so the label comes from
    `reference` (usually next_run_at) when given.
    """
    parts = expression.split()
    if len(parts) != 5:
        return expression
    minute_f, hour_f, day_f, month_f, weekday_f = parts

    if hour_f == "*" and day_f == "*" and month_f == "*" and weekday_f == "*":
        interval = 1 if minute_f == "*" else _step(minute_f)
        if interval is not None:
            time_label = "00:00"
            if reference is not None:
                try:
                    local_ref = ensure_utc(reference).astimezone(ZoneInfo(timezone))
                    time_label = _label(local_ref.hour, local_ref.minute)
                except (ZoneInfoNotFoundError, ValueError):
                    pass
            return DecompiledSchedule(interval=interval, unit="minute", time=time_label)

    minute = _number(minute_f, 0, 59)
    if minute is None:
        return expression

    if day_f == "*" and month_f == "*" and weekday_f == "*":
        interval = 1 if hour_f == "*" else _step(hour_f)
        if interval is not None:
            return DecompiledSchedule(interval=interval, unit="hour", time=_label(0, minute))

    hour = _number(hour_f, 0, 23)
    if hour is None:
        return expression
    time_label = _label(hour, minute)

    if month_f == "*" and weekday_f == "*":
        interval = 1 if day_f == "*" else _step(day_f)
        if interval is not None:
            return DecompiledSchedule(interval=interval, unit="day", time=time_label)

    if day_f == "*" and month_f == "*" and _number(weekday_f, 0, 6) is not None:
        return DecompiledSchedule(interval=1, unit="week", time=time_label)

    if _number(day_f, 1, 31) is None or weekday_f != "*":
        return expression

    if month_f == "*":
        return DecompiledSchedule(interval=1, unit="month", time=time_label)
    interval = _step(month_f)
    if interval is not None:
        return DecompiledSchedule(interval=interval, unit="month", time=time_label)
    if _number(month_f, 1, 12) is not None:
        return DecompiledSchedule(interval=1, unit="year", time=time_label)

    return expression


_SINGLE_INTERVAL_LABELS = {
    "minute": "Every minute",
    "hour": "Hourly",
    "day": "Daily",
    "week": "Weekly",
    "month": "Monthly",
    "year": "Yearly",
}


def _twelve_hour(time_label: str) -> str:
    hours, minutes = (int(p) for p in time_label.split(":"))
    period = "PM" if hours >= 12 else "AM"
    display_hour = 12 if hours == 0 else hours - 12 if hours > 12 else hours
    return f"{display_hour}:{minutes:02d} {period}"


def _short_date(value: datetime, tz: ZoneInfo) -> str:
    return ensure_utc(value).astimezone(tz).strftime("%m/%d/%y")


def describe_schedule(
    expression: str | None,
    timezone: str = "UTC",
    max_executions: int | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    next_run_at: datetime | None = None,
) -> str:
    """Human-readable label for a task's schedule."""
    if not expression:
        return "No schedule"
    try:
        tz = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo("UTC")

    if max_executions == 1:
        when = next_run_at or start_date
        if when is None:
            return "One-time"
        local = ensure_utc(when).astimezone(tz)
        return f"One-time on {local.strftime('%m/%d/%y')} at {_twelve_hour(_label(local.hour, local.minute))}"

    parsed = decompile_expression(expression, timezone, next_run_at)
    if isinstance(parsed, str):
        return f"Custom schedule ({parsed})"

    if parsed.interval == 1:
        interval_text = _SINGLE_INTERVAL_LABELS[parsed.unit]
    else:
        interval_text = f"Every {parsed.interval} {parsed.unit}s"

    display = f"{interval_text} at {_twelve_hour(parsed.time)}"
    if start_date:
        display += f", starts {_short_date(start_date, tz)}"
    if end_date:
        local_end = ensure_utc(end_date).astimezone(tz)
        if local_end.time() == time(0):
            # Compiled end dates are exclusive midnights; show the last included day.
            local_end -= timedelta(days=1)
        display += f", ends {local_end.strftime('%m/%d/%y')}"
    return display
