"""Event trigger types.

Trigger conditions are a tagged union keyed by ``trigger_type``: each
trigger type has its own condition schema. Every schema also accepts a
``filters`` dict whose entries must equal the matching event payload keys.
"""

from __future__ import annotations

import fnmatch
from datetime import datetime
from typing import Annotated, Any, Literal, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from taskengine.errors import ValidationError

TriggerType = Literal[
    "inbound_message_received",
    "webhook_received",
    "time_window_elapsed",
    "manual",
    "agent_mentioned",
    "file_uploaded",
    "workspace_message_posted",
]


def _contains(haystack: Any, needle: str) -> bool:
    return isinstance(haystack, str) and needle.lower() in haystack.lower()


class _Conditions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    filters: dict[str, Any] = Field(default_factory=dict)

    def matches(self, payload: dict[str, Any]) -> bool:
        for key, expected in self.filters.items():
            if payload.get(key) != expected:
                return False
        return self._matches(payload)

    def _matches(self, payload: dict[str, Any]) -> bool:
        return True


class InboundMessageConditions(_Conditions):
    trigger_type: Literal["inbound_message_received"] = "inbound_message_received"
    from_contains: str | None = None
    subject_contains: str | None = None
    body_contains: str | None = None

    def _matches(self, payload: dict[str, Any]) -> bool:
        if self.from_contains and not _contains(payload.get("from"), self.from_contains):
            return False
        if self.subject_contains and not _contains(payload.get("subject"), self.subject_contains):
            return False
        if self.body_contains and not _contains(payload.get("body"), self.body_contains):
            return False
        return True


class WebhookConditions(_Conditions):
    trigger_type: Literal["webhook_received"] = "webhook_received"
    source: str | None = None
    event: str | None = None

    def _matches(self, payload: dict[str, Any]) -> bool:
        if self.source and payload.get("source") != self.source:
            return False
        if self.event and payload.get("event") != self.event:
            return False
        return True


class TimeWindowConditions(_Conditions):
    trigger_type: Literal["time_window_elapsed"] = "time_window_elapsed"
    window: str | None = None
    min_elapsed_minutes: int | None = Field(default=None, ge=0)

    def _matches(self, payload: dict[str, Any]) -> bool:
        if self.window and payload.get("window") != self.window:
            return False
        if self.min_elapsed_minutes is not None:
            elapsed = payload.get("elapsed_minutes")
            if not isinstance(elapsed, (int, float)) or elapsed < self.min_elapsed_minutes:
                return False
        return True


class ManualConditions(_Conditions):
    trigger_type: Literal["manual"] = "manual"


class AgentMentionConditions(_Conditions):
    trigger_type: Literal["agent_mentioned"] = "agent_mentioned"
    agent_handle: str | None = None
    channel: str | None = None
    keywords: list[str] = Field(default_factory=list)

    def _matches(self, payload: dict[str, Any]) -> bool:
        if self.agent_handle and self.agent_handle not in (payload.get("mentions") or []):
            return False
        if self.channel and payload.get("channel") != self.channel:
            return False
        if self.keywords and not any(_contains(payload.get("text"), k) for k in self.keywords):
            return False
        return True


class FileUploadConditions(_Conditions):
    trigger_type: Literal["file_uploaded"] = "file_uploaded"
    filename_pattern: str | None = None
    mime_types: list[str] = Field(default_factory=list)
    max_size_bytes: int | None = Field(default=None, gt=0)

    def _matches(self, payload: dict[str, Any]) -> bool:
        filename = payload.get("filename")
        if self.filename_pattern and not (isinstance(filename, str) and fnmatch.fnmatch(filename, self.filename_pattern)):
            return False
        if self.mime_types and payload.get("mime_type") not in self.mime_types:
            return False
        if self.max_size_bytes is not None:
            size = payload.get("size_bytes")
            if not isinstance(size, int) or size > self.max_size_bytes:
                return False
        return True


class WorkspaceMessageConditions(_Conditions):
    trigger_type: Literal["workspace_message_posted"] = "workspace_message_posted"
    workspace_id: str | None = None
    channel: str | None = None
    keywords: list[str] = Field(default_factory=list)

    def _matches(self, payload: dict[str, Any]) -> bool:
        if self.workspace_id and payload.get("workspace_id") != self.workspace_id:
            return False
        if self.channel and payload.get("channel") != self.channel:
            return False
        if self.keywords and not any(_contains(payload.get("text"), k) for k in self.keywords):
            return False
        return True


TriggerConditions = Annotated[
    Union[
        InboundMessageConditions,
        WebhookConditions,
        TimeWindowConditions,
        ManualConditions,
        AgentMentionConditions,
        FileUploadConditions,
        WorkspaceMessageConditions,
    ],
    Field(discriminator="trigger_type"),
]

_conditions_adapter: TypeAdapter[Any] = TypeAdapter(TriggerConditions)


def parse_conditions(trigger_type: str, raw: dict[str, Any] | BaseModel | None) -> _Conditions:
    """Validate a raw condition payload against the schema for `trigger_type`."""
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    data = dict(raw or {})
    declared = data.setdefault("trigger_type", trigger_type)
    if declared != trigger_type:
        raise ValidationError(
            "Trigger conditions do not match trigger type",
            {"trigger_type": trigger_type, "conditions_type": declared},
        )
    try:
        return _conditions_adapter.validate_python(data)
    except pydantic.ValidationError as err:
        raise ValidationError(
            "Invalid trigger conditions",
            {"trigger_type": trigger_type, "errors": err.errors(include_url=False)},
        )


class TriggerCreate(BaseModel):
    trigger_type: TriggerType
    name: str
    conditions: dict[str, Any] = Field(default_factory=dict)
    cooldown_minutes: int = 0
    is_active: bool = True


class EventTrigger(BaseModel):
    id: str
    task_id: str
    trigger_type: TriggerType
    name: str
    conditions: TriggerConditions
    is_active: bool = True
    cooldown_minutes: int = 0
    last_triggered_at: datetime | None = None
    trigger_count: int = 0
    created_at: datetime
    updated_at: datetime
