"""Execution ledger and agent invocation types."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field, NonNegativeInt

ExecutionStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
TriggerSource = Literal["scheduled", "event", "manual"]

TERMINAL_EXECUTION_STATUSES: tuple[ExecutionStatus, ...] = ("completed", "failed", "cancelled")


class TriggerContext(BaseModel):
    """Why an execution happened."""

    source: TriggerSource
    data: dict[str, Any] = Field(default_factory=dict)


class Execution(BaseModel):
    id: str
    task_id: str
    agent_id: str
    status: ExecutionStatus = "pending"
    trigger_source: TriggerSource
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    instructions_used: str
    tools_used: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    output: str | None = None
    tool_outputs: list[dict[str, Any]] = Field(default_factory=list)
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class InvocationResult(BaseModel):
    output: str
    tool_outputs: list[dict[str, Any]] = Field(default_factory=list)
    duration_ms: NonNegativeInt | None = None


class AgentInvoker(Protocol):
    async def invoke(
        self,
        agent_id: str,
        instructions: str,
        tools: list[str],
        trigger_context: TriggerContext,
    ) -> InvocationResult | dict[str, Any]: ...
