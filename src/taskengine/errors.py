"""Engine error hierarchy.

Every error carries a ``details`` dict that is passed straight to the
structured logger as event fields.
"""

from __future__ import annotations

from typing import Any


class TaskEngineError(Exception):
    """Base class for expected engine failures."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}

    @property
    def message(self) -> str:
        return self.args[0]


class ValidationError(TaskEngineError):
    """A task or trigger violates a data-model invariant. Never persisted."""


class SchedulingError(TaskEngineError):
    """No valid recurrence or occurrence can be produced."""


class ExecutionError(TaskEngineError):
    """The agent collaborator failed, timed out, or returned a malformed result.

    Recorded on the execution row; never raised out of the runner.
    """


class TaskNotFoundError(TaskEngineError):
    pass


class TaskStateError(TaskEngineError):
    """The task's current state does not allow the operation."""


class InvalidTransitionError(TaskStateError):
    pass


class TaskBusyError(TaskStateError):
    """Another dispatch holds the task's claim."""


class PermissionDeniedError(TaskEngineError):
    pass
