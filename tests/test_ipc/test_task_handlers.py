"""Tests for task inbox handlers."""

import json

import pytest

from taskengine.ipc.dispatcher import IpcHandlerError
from taskengine.ipc.snapshot_writer import SnapshotWriter
from taskengine.ipc.watcher import IpcDeps, IpcWatcher

CREATE = {
    "type": "create_task",
    "agent_id": "agent-1",
    "name": "Digest",
    "kind": "scheduled",
    "instructions": "Write the digest",
    "cron_expression": "0 9 * * *",
    "timezone": "UTC",
}


@pytest.fixture
def deps(engine, tmp_path):
    return IpcDeps(engine, SnapshotWriter(tmp_path))


@pytest.fixture
def watcher(tmp_path):
    return IpcWatcher(tmp_path)


class TestCreateTask:
    @pytest.mark.asyncio
    async def test_owner_defaults_to_requester(self, watcher, deps, engine, tmp_path):
        await watcher.dispatch_command(CREATE, "alice", deps)

        [task] = engine.list_tasks()
        assert task.principal_id == "alice"
        assert task.cron_expression == "0 9 * * *"
        snapshot = json.loads((tmp_path / "alice" / "current_tasks.json").read_text())
        assert [t["id"] for t in snapshot] == [task.id]
        assert "claim_token" not in snapshot[0]

    @pytest.mark.asyncio
    async def test_cannot_create_for_someone_else(self, watcher, deps, engine):
        with pytest.raises(IpcHandlerError):
            await watcher.dispatch_command({**CREATE, "principal_id": "bob"}, "alice", deps)
        assert engine.list_tasks() == []

    @pytest.mark.asyncio
    async def test_admin_creates_for_others(self, watcher, deps, engine):
        await watcher.dispatch_command({**CREATE, "principal_id": "bob"}, "admin", deps)
        [task] = engine.list_tasks()
        assert task.principal_id == "bob"

    @pytest.mark.asyncio
    async def test_invalid_payload(self, watcher, deps):
        with pytest.raises(IpcHandlerError) as exc:
            await watcher.dispatch_command({"type": "create_task", "name": "x"}, "alice", deps)
        assert "errors" in exc.value.details

    @pytest.mark.asyncio
    async def test_engine_rejection_becomes_handler_error(self, watcher, deps):
        with pytest.raises(IpcHandlerError):
            await watcher.dispatch_command({**CREATE, "cron_expression": "not a cron"}, "alice", deps)


class TestTaskCommands:
    @pytest.fixture
    def task(self, engine):
        return engine.create_task({**{k: v for k, v in CREATE.items() if k != "type"}, "principal_id": "alice"})

    @pytest.mark.asyncio
    async def test_update(self, watcher, deps, engine, task):
        await watcher.dispatch_command(
            {"type": "update_task", "task_id": task.id, "changes": {"instructions": "Shorter digest"}},
            "alice",
            deps,
        )
        assert engine.get_task(task.id).instructions == "Shorter digest"

    @pytest.mark.asyncio
    async def test_other_principal_denied(self, watcher, deps, engine, task):
        with pytest.raises(IpcHandlerError) as exc:
            await watcher.dispatch_command({"type": "pause_task", "task_id": task.id}, "bob", deps)
        assert exc.value.details["principal_id"] == "bob"
        assert engine.get_task(task.id).status == "active"

    @pytest.mark.asyncio
    async def test_pause_resume_cancel(self, watcher, deps, engine, task):
        await watcher.dispatch_command({"type": "pause_task", "task_id": task.id}, "alice", deps)
        assert engine.get_task(task.id).status == "paused"
        await watcher.dispatch_command({"type": "resume_task", "task_id": task.id}, "alice", deps)
        assert engine.get_task(task.id).status == "active"
        await watcher.dispatch_command({"type": "cancel_task", "task_id": task.id}, "admin", deps)
        assert engine.get_task(task.id).status == "cancelled"

    @pytest.mark.asyncio
    async def test_invalid_transition_rejected(self, watcher, deps, task):
        await watcher.dispatch_command({"type": "cancel_task", "task_id": task.id}, "alice", deps)
        with pytest.raises(IpcHandlerError):
            await watcher.dispatch_command({"type": "resume_task", "task_id": task.id}, "alice", deps)

    @pytest.mark.asyncio
    async def test_missing_task_id(self, watcher, deps):
        with pytest.raises(IpcHandlerError, match="Missing task_id"):
            await watcher.dispatch_command({"type": "delete_task"}, "alice", deps)

    @pytest.mark.asyncio
    async def test_delete(self, watcher, deps, engine, task):
        await watcher.dispatch_command({"type": "delete_task", "task_id": task.id}, "alice", deps)
        assert engine.list_tasks() == []

    @pytest.mark.asyncio
    async def test_run_then_history(self, watcher, deps, engine, invoker, task, tmp_path):
        await watcher.dispatch_command({"type": "run_task", "task_id": task.id}, "alice", deps)
        await deps.drain()
        assert len(invoker.calls) == 1

        await watcher.dispatch_command({"type": "task_history", "task_id": task.id}, "alice", deps)
        history = json.loads((tmp_path / "alice" / f"history-{task.id}.json").read_text())
        assert history["task_id"] == task.id
        [execution] = history["executions"]
        assert execution["status"] == "completed"
        assert execution["trigger_source"] == "manual"

    @pytest.mark.asyncio
    async def test_run_paused_task_rejected(self, watcher, deps, engine, task):
        engine.pause(task.id)
        with pytest.raises(IpcHandlerError):
            await watcher.dispatch_command({"type": "run_task", "task_id": task.id}, "alice", deps)


class TestTriggerCommands:
    @pytest.mark.asyncio
    async def test_add_trigger(self, watcher, deps, engine):
        task = engine.create_task({
            "agent_id": "agent-1",
            "principal_id": "alice",
            "name": "Deploy notes",
            "kind": "event_based",
            "instructions": "Summarize the deploy",
            "trigger_type": "webhook_received",
            "triggers": [{"trigger_type": "webhook_received", "name": "CI"}],
        })

        await watcher.dispatch_command(
            {
                "type": "add_trigger",
                "task_id": task.id,
                "trigger": {"trigger_type": "webhook_received", "name": "Staging", "conditions": {"source": "staging"}},
            },
            "alice",
            deps,
        )

        assert sorted(t.name for t in engine.list_triggers(task.id)) == ["CI", "Staging"]
