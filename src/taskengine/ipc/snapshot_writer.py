"""Writes task and history snapshots into a principal's inbox directory."""

from __future__ import annotations

import json
from pathlib import Path

from taskengine.execution.types import Execution
from taskengine.tasks.types import Task


class SnapshotWriter:
    """Writes JSON snapshot files for inbox readers."""

    def __init__(self, ipc_base_dir: Path) -> None:
        self._ipc_base_dir = ipc_base_dir

    def principal_dir(self, principal_id: str) -> Path:
        path = self._ipc_base_dir / principal_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def write_tasks(self, principal_id: str, is_admin: bool, tasks: list[Task]) -> Path:
        """Write the tasks snapshot. Only the admin sees other principals' tasks."""
        visible = tasks if is_admin else [t for t in tasks if t.principal_id == principal_id]
        target = self.principal_dir(principal_id) / "current_tasks.json"
        target.write_text(json.dumps([t.model_dump(mode="json", exclude={"claim_token"}) for t in visible], indent=2))
        return target

    def write_history(self, principal_id: str, task_id: str, executions: list[Execution]) -> Path:
        target = self.principal_dir(principal_id) / f"history-{task_id}.json"
        target.write_text(
            json.dumps({"task_id": task_id, "executions": [e.model_dump(mode="json") for e in executions]}, indent=2)
        )
        return target
