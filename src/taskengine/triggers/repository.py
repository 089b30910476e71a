"""Event trigger CRUD and fire recording."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime

from taskengine.infrastructure.clock import parse_iso, to_iso
from taskengine.triggers.types import EventTrigger, TriggerType


class TriggerRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def create_trigger(self, trigger: EventTrigger) -> None:
        self._db.execute(
            """INSERT INTO event_triggers
               (id, task_id, trigger_type, name, conditions, is_active, cooldown_minutes,
                last_triggered_at, trigger_count, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                trigger.id, trigger.task_id, trigger.trigger_type, trigger.name,
                trigger.conditions.model_dump_json(), int(trigger.is_active), trigger.cooldown_minutes,
                to_iso(trigger.last_triggered_at), trigger.trigger_count,
                to_iso(trigger.created_at), to_iso(trigger.updated_at),
            ),
        )
        self._db.commit()

    def get_trigger(self, id: str) -> EventTrigger | None:
        row = self._db.execute("SELECT * FROM event_triggers WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return self._row_to_trigger(row)

    def get_triggers_for_task(self, task_id: str) -> list[EventTrigger]:
        rows = self._db.execute(
            "SELECT * FROM event_triggers WHERE task_id = ? ORDER BY created_at, rowid", (task_id,)
        ).fetchall()
        return [self._row_to_trigger(row) for row in rows]

    def get_active_triggers(self, trigger_type: TriggerType) -> list[EventTrigger]:
        """Active triggers of one type whose task is active and event-based."""
        rows = self._db.execute(
            """SELECT t.* FROM event_triggers t
               JOIN tasks k ON k.id = t.task_id
               WHERE t.trigger_type = ? AND t.is_active = 1
                 AND k.status = 'active' AND k.kind = 'event_based'
               ORDER BY t.created_at, t.rowid""",
            (trigger_type,),
        ).fetchall()
        return [self._row_to_trigger(row) for row in rows]

    def set_active(self, id: str, is_active: bool, now: datetime) -> bool:
        result = self._db.execute(
            "UPDATE event_triggers SET is_active = ?, updated_at = ? WHERE id = ?",
            (int(is_active), to_iso(now), id),
        )
        self._db.commit()
        return result.rowcount > 0

    def record_fire(self, id: str, now: datetime, expected_last_triggered_at: datetime | None) -> bool:
        """Record a fire only if nobody fired the trigger since it was read."""
        result = self._db.execute(
            """UPDATE event_triggers
               SET last_triggered_at = ?, trigger_count = trigger_count + 1, updated_at = ?
               WHERE id = ? AND last_triggered_at IS ?""",
            (to_iso(now), to_iso(now), id, to_iso(expected_last_triggered_at)),
        )
        self._db.commit()
        return result.rowcount > 0

    def _row_to_trigger(self, row: sqlite3.Row) -> EventTrigger:
        return EventTrigger(
            id=row["id"],
            task_id=row["task_id"],
            trigger_type=row["trigger_type"],
            name=row["name"],
            conditions=json.loads(row["conditions"] or "{}") | {"trigger_type": row["trigger_type"]},
            is_active=bool(row["is_active"]),
            cooldown_minutes=row["cooldown_minutes"],
            last_triggered_at=parse_iso(row["last_triggered_at"]),
            trigger_count=row["trigger_count"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
