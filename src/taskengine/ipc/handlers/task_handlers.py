"""Task inbox handlers: create, update, delete, pause, resume, cancel, run, triggers, history."""

from __future__ import annotations

from typing import Any

import pydantic
from pydantic import BaseModel, Field

from taskengine.errors import TaskEngineError
from taskengine.infrastructure.logger import logger
from taskengine.ipc.dispatcher import HandlerContext, IpcCommandHandler, IpcHandlerError
from taskengine.tasks.types import TaskCreate, TaskUpdate
from taskengine.triggers.types import TriggerCreate


def _parse(model: type[BaseModel], data: dict[str, Any], command: str) -> Any:
    try:
        return model.model_validate({k: v for k, v in data.items() if k != "type"})
    except pydantic.ValidationError as err:
        raise IpcHandlerError(f"Invalid {command} payload", {"errors": err.errors(include_url=False)})


def _require_task_id(data: dict[str, Any], command: str) -> str:
    task_id = data.get("task_id")
    if not task_id or not isinstance(task_id, str):
        raise IpcHandlerError("Missing task_id", {"command": command})
    return task_id


def _authorize(task_id: str, context: HandlerContext) -> None:
    try:
        context.deps.engine.tasks.get_authorized(task_id, context.auth)
    except TaskEngineError as err:
        raise IpcHandlerError(err.message, {**err.details, "principal_id": context.principal_id})


def _refresh_snapshot(context: HandlerContext) -> None:
    engine = context.deps.engine
    principal = None if context.is_admin else context.principal_id
    context.deps.snapshot_writer.write_tasks(
        context.principal_id,
        context.is_admin,
        engine.list_tasks(principal_id=principal, limit=None),
    )


# --- CreateTaskHandler ---


class CreateTaskCommand(TaskCreate):
    principal_id: str | None = None  # defaults to the requesting principal


class CreateTaskHandler(IpcCommandHandler):
    command = "create_task"

    async def validate(self, data: dict[str, Any]) -> CreateTaskCommand:
        return _parse(CreateTaskCommand, data, self.command)

    async def execute(self, payload: CreateTaskCommand, context: HandlerContext) -> None:
        owner = payload.principal_id or context.principal_id
        if not context.auth.can_create_task(owner):
            raise IpcHandlerError(
                "Unauthorized create_task attempt",
                {"principal_id": context.principal_id, "owner": owner},
            )
        try:
            task = context.deps.engine.create_task({**payload.model_dump(), "principal_id": owner})
        except TaskEngineError as err:
            raise IpcHandlerError(err.message, err.details)
        logger.info("Task created via inbox", task_id=task.id, principal_id=context.principal_id, owner=owner)
        _refresh_snapshot(context)


# --- UpdateTaskHandler ---


class UpdateTaskCommand(BaseModel):
    task_id: str
    changes: TaskUpdate


class UpdateTaskHandler(IpcCommandHandler):
    command = "update_task"

    async def validate(self, data: dict[str, Any]) -> UpdateTaskCommand:
        return _parse(UpdateTaskCommand, data, self.command)

    async def execute(self, payload: UpdateTaskCommand, context: HandlerContext) -> None:
        _authorize(payload.task_id, context)
        try:
            context.deps.engine.update_task(payload.task_id, payload.changes)
        except TaskEngineError as err:
            raise IpcHandlerError(err.message, err.details)
        logger.info("Task updated via inbox", task_id=payload.task_id, principal_id=context.principal_id)
        _refresh_snapshot(context)


# --- Single-task lifecycle commands ---


class _TaskCommandHandler(IpcCommandHandler):
    verb = ""

    async def validate(self, data: dict[str, Any]) -> str:
        return _require_task_id(data, self.command)

    async def execute(self, task_id: str, context: HandlerContext) -> None:
        _authorize(task_id, context)
        try:
            self.apply(task_id, context)
        except TaskEngineError as err:
            raise IpcHandlerError(err.message, err.details)
        logger.info(f"Task {self.verb} via inbox", task_id=task_id, principal_id=context.principal_id)
        _refresh_snapshot(context)

    def apply(self, task_id: str, context: HandlerContext) -> None:
        raise NotImplementedError


class DeleteTaskHandler(_TaskCommandHandler):
    command = "delete_task"
    verb = "deleted"

    def apply(self, task_id: str, context: HandlerContext) -> None:
        context.deps.engine.delete_task(task_id)


class PauseTaskHandler(_TaskCommandHandler):
    command = "pause_task"
    verb = "paused"

    def apply(self, task_id: str, context: HandlerContext) -> None:
        context.deps.engine.pause(task_id)


class ResumeTaskHandler(_TaskCommandHandler):
    command = "resume_task"
    verb = "resumed"

    def apply(self, task_id: str, context: HandlerContext) -> None:
        context.deps.engine.resume(task_id)


class CancelTaskHandler(_TaskCommandHandler):
    command = "cancel_task"
    verb = "cancelled"

    def apply(self, task_id: str, context: HandlerContext) -> None:
        context.deps.engine.cancel(task_id)


# --- RunTaskHandler ---


class RunTaskHandler(IpcCommandHandler):
    command = "run_task"

    async def validate(self, data: dict[str, Any]) -> str:
        return _require_task_id(data, self.command)

    async def execute(self, task_id: str, context: HandlerContext) -> None:
        _authorize(task_id, context)
        task = context.deps.engine.get_task(task_id)
        if task.status != "active":
            raise IpcHandlerError(f"Cannot run a {task.status} task", {"task_id": task_id, "status": task.status})
        # The run can outlast the inbox pass; it finishes in the background.
        context.deps.spawn(context.deps.engine.run_now(task_id), task_id=task_id, command=self.command)
        logger.info("Task run requested via inbox", task_id=task_id, principal_id=context.principal_id)


# --- AddTriggerHandler ---


class AddTriggerCommand(BaseModel):
    task_id: str
    trigger: TriggerCreate


class AddTriggerHandler(IpcCommandHandler):
    command = "add_trigger"

    async def validate(self, data: dict[str, Any]) -> AddTriggerCommand:
        return _parse(AddTriggerCommand, data, self.command)

    async def execute(self, payload: AddTriggerCommand, context: HandlerContext) -> None:
        _authorize(payload.task_id, context)
        try:
            trigger = context.deps.engine.add_trigger(payload.task_id, payload.trigger)
        except TaskEngineError as err:
            raise IpcHandlerError(err.message, err.details)
        logger.info("Trigger added via inbox", task_id=payload.task_id, trigger_id=trigger.id)


# --- TaskHistoryHandler ---


class TaskHistoryCommand(BaseModel):
    task_id: str
    limit: int = Field(default=50, ge=0)
    offset: int = Field(default=0, ge=0)


class TaskHistoryHandler(IpcCommandHandler):
    command = "task_history"

    async def validate(self, data: dict[str, Any]) -> TaskHistoryCommand:
        return _parse(TaskHistoryCommand, data, self.command)

    async def execute(self, payload: TaskHistoryCommand, context: HandlerContext) -> None:
        _authorize(payload.task_id, context)
        executions = context.deps.engine.history(payload.task_id, payload.limit, payload.offset)
        path = context.deps.snapshot_writer.write_history(context.principal_id, payload.task_id, executions)
        logger.info("Task history written", task_id=payload.task_id, count=len(executions), path=str(path))
