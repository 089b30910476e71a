"""Event inbox handler: hands incoming events to the trigger engine."""

from __future__ import annotations

from typing import Any

import pydantic
from pydantic import BaseModel, Field

from taskengine.infrastructure.logger import logger
from taskengine.ipc.dispatcher import HandlerContext, IpcCommandHandler, IpcHandlerError
from taskengine.triggers.types import TriggerType

INGEST_EVENT = "ingest_event"


class EventEnvelope(BaseModel):
    trigger_type: TriggerType
    payload: dict[str, Any] = Field(default_factory=dict)


class IngestEventHandler(IpcCommandHandler):
    command = INGEST_EVENT

    async def validate(self, data: dict[str, Any]) -> EventEnvelope:
        try:
            return EventEnvelope.model_validate({k: v for k, v in data.items() if k != "type"})
        except pydantic.ValidationError as err:
            raise IpcHandlerError("Invalid event", {"errors": err.errors(include_url=False)})

    async def execute(self, payload: EventEnvelope, context: HandlerContext) -> None:
        # Executions can run for minutes; the inbox pass does not wait for them.
        context.deps.spawn(
            context.deps.engine.ingest_event(payload.trigger_type, payload.payload),
            trigger_type=payload.trigger_type,
            source=context.principal_id,
        )
        logger.info("Event accepted", trigger_type=payload.trigger_type, source=context.principal_id)
