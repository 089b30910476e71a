"""Task lifecycle state machine."""

from __future__ import annotations

from taskengine.errors import InvalidTransitionError
from taskengine.tasks.types import TaskStatus

TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset({"completed", "failed", "cancelled"})

# target -> statuses it may be entered from
TRANSITIONS: dict[TaskStatus, tuple[TaskStatus, ...]] = {
    "active": ("paused",),
    "paused": ("active",),
    "completed": ("active",),
    "failed": ("active",),
    "cancelled": ("active", "paused"),
}


def allowed_sources(target: TaskStatus) -> tuple[TaskStatus, ...]:
    return TRANSITIONS.get(target, ())


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return current in allowed_sources(target)


def check_transition(task_id: str, current: TaskStatus, target: TaskStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move task from {current} to {target}",
            {"task_id": task_id, "from": current, "to": target},
        )
