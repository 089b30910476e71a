"""Task CRUD, claiming, and run accounting.

Every counter update and status change is a single conditional UPDATE, so
the poll loop, trigger handlers and manual runs can race without losing
writes.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any

from taskengine.infrastructure.clock import parse_iso, to_iso
from taskengine.tasks.types import Task, TaskKind, TaskStatus

_DATETIME_FIELDS = {"next_run_at", "last_run_at", "start_date", "end_date", "claimed_until", "created_at", "updated_at"}
_JSON_FIELDS = {"tool_allow_list"}
_UPDATABLE_FIELDS = {
    "name",
    "description",
    "instructions",
    "tool_allow_list",
    "cron_expression",
    "timezone",
    "next_run_at",
    "trigger_type",
    "max_executions",
    "start_date",
    "end_date",
}


def _to_column(key: str, value: Any) -> Any:
    if key in _DATETIME_FIELDS:
        return to_iso(value)
    if key in _JSON_FIELDS:
        return json.dumps(value)
    return value


class TaskRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def create_task(self, task: Task) -> None:
        data = task.model_dump()
        columns = list(data.keys())
        self._db.execute(
            f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            [_to_column(key, data[key]) for key in columns],
        )
        self._db.commit()

    def get_task_by_id(self, id: str) -> Task | None:
        row = self._db.execute("SELECT * FROM tasks WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return self._row_to_task(row)

    def get_tasks(
        self,
        agent_id: str | None = None,
        principal_id: str | None = None,
        status: TaskStatus | None = None,
        kind: TaskKind | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[Task]:
        """Newest first. A limit of None returns every match."""
        clauses: list[str] = []
        values: list[Any] = []
        for column, value in (("agent_id", agent_id), ("principal_id", principal_id), ("status", status), ("kind", kind)):
            if value is not None:
                clauses.append(f"{column} = ?")
                values.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._db.execute(
            f"SELECT * FROM tasks {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            [*values, -1 if limit is None else limit, offset],
        ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(self, id: str, now: datetime, **updates: Any) -> None:
        """Write the given fields as-is, None included."""
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated directly: {sorted(unknown)}")
        if not updates:
            return
        fields = [f"{key} = ?" for key in updates]
        values = [_to_column(key, value) for key, value in updates.items()]
        values.extend([to_iso(now), id])
        self._db.execute(f"UPDATE tasks SET {', '.join(fields)}, updated_at = ? WHERE id = ?", values)
        self._db.commit()

    def delete_task(self, id: str) -> bool:
        # Executions and triggers go with it (ON DELETE CASCADE).
        result = self._db.execute("DELETE FROM tasks WHERE id = ?", (id,))
        self._db.commit()
        return result.rowcount > 0

    def delete_tasks_for_agent(self, agent_id: str) -> int:
        result = self._db.execute("DELETE FROM tasks WHERE agent_id = ?", (agent_id,))
        self._db.commit()
        return result.rowcount

    def get_due_tasks(self, now: datetime) -> list[Task]:
        now_iso = to_iso(now)
        rows = self._db.execute(
            """SELECT * FROM tasks
               WHERE status = 'active' AND kind = 'scheduled'
                 AND next_run_at IS NOT NULL AND next_run_at <= ?
                 AND (claimed_until IS NULL OR claimed_until <= ?)
               ORDER BY next_run_at""",
            (now_iso, now_iso),
        ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def claim_task(self, id: str, token: str, now: datetime, lease_until: datetime) -> bool:
        """Take the task's lease. Fails if it is not active or another claim is still live."""
        result = self._db.execute(
            """UPDATE tasks
               SET claim_token = ?, claimed_until = ?
               WHERE id = ? AND status = 'active'
                 AND (claimed_until IS NULL OR claimed_until <= ?)""",
            (token, to_iso(lease_until), id, to_iso(now)),
        )
        self._db.commit()
        return result.rowcount > 0

    def confirm_claim(self, id: str, token: str, lease_until: datetime) -> bool:
        """Renew our lease at run start. Fails if the task left active or someone else holds it."""
        result = self._db.execute(
            """UPDATE tasks SET claimed_until = ?
               WHERE id = ? AND status = 'active' AND claim_token = ?""",
            (to_iso(lease_until), id, token),
        )
        self._db.commit()
        return result.rowcount > 0

    def release_claim(self, id: str, token: str) -> bool:
        result = self._db.execute(
            "UPDATE tasks SET claim_token = NULL, claimed_until = NULL WHERE id = ? AND claim_token = ?",
            (id, token),
        )
        self._db.commit()
        return result.rowcount > 0

    def transition_status(
        self,
        id: str,
        target: TaskStatus,
        allowed_from: tuple[TaskStatus, ...],
        now: datetime,
    ) -> bool:
        if not allowed_from:
            return False
        terminal = target in ("completed", "failed", "cancelled")
        result = self._db.execute(
            f"""UPDATE tasks
                SET status = ?, updated_at = ?,
                    next_run_at = CASE WHEN ? THEN NULL ELSE next_run_at END
                WHERE id = ? AND status IN ({', '.join('?' for _ in allowed_from)})""",
            (target, to_iso(now), terminal, id, *allowed_from),
        )
        self._db.commit()
        return result.rowcount > 0

    def record_success(
        self,
        id: str,
        now: datetime,
        advance_next_run: bool = False,
        next_run_at: datetime | None = None,
        window_exhausted: bool = False,
    ) -> None:
        """Count a successful run; completes the task at its cap or past its window."""
        self._db.execute(
            """UPDATE tasks SET
                 total_executions = total_executions + 1,
                 successful_executions = successful_executions + 1,
                 consecutive_failures = 0,
                 last_run_at = :now,
                 next_run_at = CASE
                     WHEN max_executions IS NOT NULL AND total_executions + 1 >= max_executions THEN NULL
                     WHEN :exhausted THEN NULL
                     WHEN :advance THEN :next_run_at
                     ELSE next_run_at END,
                 status = CASE
                     WHEN status = 'active' AND max_executions IS NOT NULL
                          AND total_executions + 1 >= max_executions THEN 'completed'
                     WHEN status = 'active' AND :exhausted THEN 'completed'
                     ELSE status END,
                 updated_at = :now
               WHERE id = :id""",
            {
                "id": id,
                "now": to_iso(now),
                "advance": advance_next_run,
                "next_run_at": to_iso(next_run_at),
                "exhausted": window_exhausted,
            },
        )
        self._db.commit()

    def record_failure(self, id: str, now: datetime, failure_threshold: int = 0) -> None:
        """Count a failed run. next_run_at stays on the failed slot; the scheduler retries at the next occurrence.

        At the cap the task ends: completed if any run succeeded, failed otherwise.
        A positive threshold fails the task after that many failures in a row.
        """
        self._db.execute(
            """UPDATE tasks SET
                 total_executions = total_executions + 1,
                 failed_executions = failed_executions + 1,
                 consecutive_failures = consecutive_failures + 1,
                 last_run_at = :now,
                 next_run_at = CASE
                     WHEN max_executions IS NOT NULL AND total_executions + 1 >= max_executions THEN NULL
                     WHEN status = 'active' AND :threshold > 0
                          AND consecutive_failures + 1 >= :threshold THEN NULL
                     ELSE next_run_at END,
                 status = CASE
                     WHEN status = 'active' AND max_executions IS NOT NULL
                          AND total_executions + 1 >= max_executions
                          THEN CASE WHEN successful_executions > 0 THEN 'completed' ELSE 'failed' END
                     WHEN status = 'active' AND :threshold > 0
                          AND consecutive_failures + 1 >= :threshold THEN 'failed'
                     ELSE status END,
                 updated_at = :now
               WHERE id = :id""",
            {"id": id, "now": to_iso(now), "threshold": failure_threshold},
        )
        self._db.commit()

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        data = dict(row)
        for key in _DATETIME_FIELDS:
            data[key] = parse_iso(data.get(key))
        data["tool_allow_list"] = json.loads(data.get("tool_allow_list") or "[]")
        return Task.model_validate(data)
