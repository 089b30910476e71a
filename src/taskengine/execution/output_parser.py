"""Stateful parser for the agent command's OUTPUT_START/END marker protocol."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

OUTPUT_START_MARKER = "---TASKENGINE_OUTPUT_START---"
OUTPUT_END_MARKER = "---TASKENGINE_OUTPUT_END---"


@dataclass
class AgentOutput:
    status: str = "success"
    output: str | None = None
    tool_outputs: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: int | None = None
    error: str | None = None


class AgentOutputParser:
    """Accumulates stdout lines between the markers and decodes each block as JSON.

    Anything printed outside a block is ignored.
    """

    def __init__(self) -> None:
        self._collecting = False
        self._buffer: list[str] = []

    def feed(self, line: str) -> AgentOutput | None:
        """Feed one stdout line. Returns an AgentOutput when a block closes."""
        stripped = line.rstrip("\n").rstrip("\r")

        if stripped == OUTPUT_START_MARKER:
            self._collecting = True
            self._buffer = []
            return None

        if stripped == OUTPUT_END_MARKER and self._collecting:
            self._collecting = False
            raw = "\n".join(self._buffer)
            self._buffer = []
            return self._parse_output(raw)

        if self._collecting:
            self._buffer.append(stripped)

        return None

    def _parse_output(self, raw: str) -> AgentOutput:
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise TypeError("output block is not an object")
            tool_outputs = data.get("tool_outputs") or []
            if not isinstance(tool_outputs, list):
                raise TypeError("tool_outputs is not a list")
            return AgentOutput(
                status=data.get("status", "success"),
                output=data.get("output"),
                tool_outputs=tool_outputs,
                duration_ms=data.get("duration_ms"),
                error=data.get("error"),
            )
        except (json.JSONDecodeError, TypeError):
            return AgentOutput(status="error", error=f"Failed to parse output: {raw[:200]}")
