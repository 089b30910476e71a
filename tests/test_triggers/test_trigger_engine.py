"""Tests for the trigger engine."""

import pytest

from taskengine.engine import TaskEngine
from taskengine.errors import ExecutionError
from taskengine.triggers.engine import match_conditions


def _webhook_task(engine, cooldown_minutes=0, conditions=None, **overrides):
    request = {
        "agent_id": "agent-1",
        "principal_id": "alice",
        "name": "Deploy notes",
        "kind": "event_based",
        "instructions": "Summarize the deploy",
        "trigger_type": "webhook_received",
        "triggers": [{
            "trigger_type": "webhook_received",
            "name": "CI webhook",
            "conditions": conditions or {},
            "cooldown_minutes": cooldown_minutes,
        }],
    }
    request.update(overrides)
    return engine.create_task(request)


class TestEventFiring:
    @pytest.mark.asyncio
    async def test_every_event_fires_without_cooldown(self, engine, clock, invoker):
        task = _webhook_task(engine)

        for _ in range(3):
            executions = await engine.ingest_event("webhook_received", {"source": "ci"})
            assert len(executions) == 1
            clock.advance(seconds=1)

        assert len(invoker.calls) == 3
        [trigger] = engine.list_triggers(task.id)
        assert trigger.trigger_count == 3
        task = engine.get_task(task.id)
        assert task.successful_executions == 3
        assert task.next_run_at is None

    @pytest.mark.asyncio
    async def test_execution_records_event_provenance(self, engine, invoker):
        task = _webhook_task(engine)
        [trigger] = engine.list_triggers(task.id)

        [execution] = await engine.ingest_event("webhook_received", {"source": "ci", "sha": "abc123"})

        assert execution.status == "completed"
        assert execution.trigger_source == "event"
        assert execution.trigger_data == {
            "trigger_id": trigger.id,
            "trigger_type": "webhook_received",
            "event": {"source": "ci", "sha": "abc123"},
        }
        assert invoker.calls[0]["trigger"].source == "event"

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_event_five_minutes_later(self, engine, clock, invoker):
        task = _webhook_task(engine, cooldown_minutes=10)

        assert len(await engine.ingest_event("webhook_received", {})) == 1
        clock.advance(minutes=5)
        assert await engine.ingest_event("webhook_received", {}) == []

        [trigger] = engine.list_triggers(task.id)
        assert trigger.trigger_count == 1
        assert len(invoker.calls) == 1

    @pytest.mark.asyncio
    async def test_cooldown_allows_event_eleven_minutes_later(self, engine, clock, invoker):
        task = _webhook_task(engine, cooldown_minutes=10)

        await engine.ingest_event("webhook_received", {})
        clock.advance(minutes=11)
        await engine.ingest_event("webhook_received", {})

        [trigger] = engine.list_triggers(task.id)
        assert trigger.trigger_count == 2
        assert trigger.last_triggered_at == clock.now
        assert len(invoker.calls) == 2

    @pytest.mark.asyncio
    async def test_conditions_must_match(self, engine, invoker):
        _webhook_task(engine, conditions={"source": "github", "event": "release"})

        assert await engine.ingest_event("webhook_received", {"source": "github", "event": "push"}) == []
        assert len(await engine.ingest_event("webhook_received", {"source": "github", "event": "release"})) == 1

    @pytest.mark.asyncio
    async def test_other_trigger_types_ignored(self, engine, invoker):
        _webhook_task(engine)
        assert await engine.ingest_event("manual", {}) == []
        assert invoker.calls == []

    @pytest.mark.asyncio
    async def test_inactive_trigger_ignored(self, engine, invoker):
        task = _webhook_task(engine)
        [trigger] = engine.list_triggers(task.id)
        engine.set_trigger_active(trigger.id, False)

        assert await engine.ingest_event("webhook_received", {}) == []

    @pytest.mark.asyncio
    async def test_paused_task_ignored(self, engine, invoker):
        task = _webhook_task(engine)
        engine.pause(task.id)

        assert await engine.ingest_event("webhook_received", {}) == []
        assert invoker.calls == []

    @pytest.mark.asyncio
    async def test_busy_task_skipped_without_counting(self, engine, invoker):
        task = _webhook_task(engine)
        token = engine.tasks.claim(task.id)
        assert token is not None

        assert await engine.ingest_event("webhook_received", {}) == []
        [trigger] = engine.list_triggers(task.id)
        assert trigger.trigger_count == 0
        assert trigger.last_triggered_at is None

    @pytest.mark.asyncio
    async def test_cap_completes_event_task(self, engine, invoker):
        task = _webhook_task(engine, max_executions=2)

        await engine.ingest_event("webhook_received", {})
        await engine.ingest_event("webhook_received", {})
        assert await engine.ingest_event("webhook_received", {}) == []

        task = engine.get_task(task.id)
        assert task.status == "completed"
        assert task.total_executions == 2

    @pytest.mark.asyncio
    async def test_failed_execution_keeps_trigger_armed(self, engine, invoker):
        invoker.error = ExecutionError("agent unavailable")
        task = _webhook_task(engine)

        [execution] = await engine.ingest_event("webhook_received", {})
        assert execution.status == "failed"

        invoker.error = None
        [execution] = await engine.ingest_event("webhook_received", {})
        assert execution.status == "completed"
        assert engine.get_task(task.id).failed_executions == 1

    @pytest.mark.asyncio
    async def test_one_failing_trigger_does_not_stop_others(self, db, invoker, clock):
        def matcher(trigger, payload):
            if trigger.name == "Broken":
                raise RuntimeError("condition evaluator crashed")
            return match_conditions(trigger, payload)

        engine = TaskEngine(db, invoker, clock=clock, matcher=matcher)
        _webhook_task(engine, name="First")
        _webhook_task(engine, name="Second", triggers=[{"trigger_type": "webhook_received", "name": "Broken"}])

        executions = await engine.ingest_event("webhook_received", {})

        assert len(executions) == 1
        assert len(invoker.calls) == 1
