"""Execution ledger: one row per execution attempt.

Transitions are conditional updates that never touch a terminal row, so a
late timeout or cancel cannot overwrite a recorded outcome.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from taskengine.infrastructure.clock import parse_iso, to_iso
from taskengine.execution.types import Execution, TriggerContext
from taskengine.tasks.types import Task

_NOT_TERMINAL = "status IN ('pending', 'running')"


class ExecutionLedger:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def create_pending(self, task: Task, trigger: TriggerContext, now: datetime) -> Execution:
        """Open a pending row with the task's instructions and tools frozen as they are now."""
        execution = Execution(
            id=f"exec-{uuid.uuid4().hex}",
            task_id=task.id,
            agent_id=task.agent_id,
            trigger_source=trigger.source,
            trigger_data=trigger.data,
            instructions_used=task.instructions,
            tools_used=list(task.tool_allow_list),
            created_at=now,
            updated_at=now,
        )
        self._db.execute(
            """INSERT INTO executions
               (id, task_id, agent_id, status, trigger_source, trigger_data, instructions_used,
                tools_used, tool_outputs, metadata, created_at, updated_at)
               VALUES (?, ?, ?, 'pending', ?, ?, ?, ?, '[]', '{}', ?, ?)""",
            (
                execution.id, execution.task_id, execution.agent_id, execution.trigger_source,
                json.dumps(execution.trigger_data, default=str), execution.instructions_used,
                json.dumps(execution.tools_used), to_iso(now), to_iso(now),
            ),
        )
        self._db.commit()
        return execution

    def mark_running(self, id: str, now: datetime) -> bool:
        result = self._db.execute(
            "UPDATE executions SET status = 'running', started_at = ?, updated_at = ? WHERE id = ? AND status = 'pending'",
            (to_iso(now), to_iso(now), id),
        )
        self._db.commit()
        return result.rowcount > 0

    def mark_completed(
        self,
        id: str,
        now: datetime,
        duration_ms: int,
        output: str,
        tool_outputs: list[dict[str, Any]],
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        result = self._db.execute(
            f"""UPDATE executions
                SET status = 'completed', completed_at = ?, duration_ms = ?, output = ?,
                    tool_outputs = ?, metadata = ?, updated_at = ?,
                    started_at = COALESCE(started_at, ?)
                WHERE id = ? AND {_NOT_TERMINAL}""",
            (
                to_iso(now), duration_ms, output, json.dumps(tool_outputs, default=str),
                json.dumps(metadata or {}, default=str), to_iso(now), to_iso(now), id,
            ),
        )
        self._db.commit()
        return result.rowcount > 0

    def mark_failed(
        self,
        id: str,
        now: datetime,
        error_message: str,
        duration_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        result = self._db.execute(
            f"""UPDATE executions
                SET status = 'failed', completed_at = ?, duration_ms = ?, error_message = ?,
                    metadata = ?, updated_at = ?
                WHERE id = ? AND {_NOT_TERMINAL}""",
            (to_iso(now), duration_ms, error_message, json.dumps(metadata or {}, default=str), to_iso(now), id),
        )
        self._db.commit()
        return result.rowcount > 0

    def mark_cancelled(self, id: str, now: datetime, duration_ms: int | None = None) -> bool:
        result = self._db.execute(
            f"""UPDATE executions
                SET status = 'cancelled', completed_at = ?, duration_ms = ?, updated_at = ?
                WHERE id = ? AND {_NOT_TERMINAL}""",
            (to_iso(now), duration_ms, to_iso(now), id),
        )
        self._db.commit()
        return result.rowcount > 0

    def fail_abandoned(self, now: datetime) -> int:
        """Fail executions a previous process left pending or running."""
        result = self._db.execute(
            f"""UPDATE executions
                SET status = 'failed', completed_at = ?, error_message = 'Interrupted before completion',
                    updated_at = ?
                WHERE {_NOT_TERMINAL}""",
            (to_iso(now), to_iso(now)),
        )
        self._db.commit()
        return result.rowcount

    def get(self, id: str) -> Execution | None:
        row = self._db.execute("SELECT * FROM executions WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return self._row_to_execution(row)

    def list_for_task(self, task_id: str, limit: int = 50, offset: int = 0) -> list[Execution]:
        rows = self._db.execute(
            "SELECT * FROM executions WHERE task_id = ? ORDER BY created_at, rowid LIMIT ? OFFSET ?",
            (task_id, limit, offset),
        ).fetchall()
        return [self._row_to_execution(row) for row in rows]

    def count_running(self, task_id: str | None = None) -> int:
        if task_id is None:
            row = self._db.execute("SELECT COUNT(*) FROM executions WHERE status = 'running'").fetchone()
        else:
            row = self._db.execute(
                "SELECT COUNT(*) FROM executions WHERE status = 'running' AND task_id = ?", (task_id,)
            ).fetchone()
        return row[0]

    def _row_to_execution(self, row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            task_id=row["task_id"],
            agent_id=row["agent_id"],
            status=row["status"],
            trigger_source=row["trigger_source"],
            trigger_data=json.loads(row["trigger_data"] or "{}"),
            instructions_used=row["instructions_used"],
            tools_used=json.loads(row["tools_used"] or "[]"),
            started_at=parse_iso(row["started_at"]),
            completed_at=parse_iso(row["completed_at"]),
            duration_ms=row["duration_ms"],
            output=row["output"],
            tool_outputs=json.loads(row["tool_outputs"] or "[]"),
            error_message=row["error_message"],
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
