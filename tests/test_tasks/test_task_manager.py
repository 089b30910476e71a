"""Tests for the task manager."""

from datetime import datetime, timezone

import pytest

from taskengine.errors import (
    InvalidTransitionError,
    PermissionDeniedError,
    SchedulingError,
    TaskNotFoundError,
    ValidationError,
)
from taskengine.scheduling.next_run import NextRunCalculator
from taskengine.tasks.authorization import AuthContext, AuthorizationPolicy
from taskengine.tasks.service import TaskManager
from taskengine.tasks.types import TaskCreate, TaskUpdate
from taskengine.triggers.types import TriggerCreate


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def task_manager(db, clock):
    return TaskManager(db.task_repo, db.trigger_repo, NextRunCalculator(), clock=clock)


def _scheduled(**overrides) -> TaskCreate:
    data = {
        "agent_id": "agent-1",
        "principal_id": "alice",
        "name": "Digest",
        "kind": "scheduled",
        "instructions": "Write the digest",
        "cron_expression": "0 9 * * *",
        "timezone": "UTC",
    }
    data.update(overrides)
    return TaskCreate.model_validate(data)


def _event_based(**overrides) -> TaskCreate:
    data = {
        "agent_id": "agent-1",
        "principal_id": "alice",
        "name": "Deploy notes",
        "kind": "event_based",
        "instructions": "Summarize the deploy",
        "trigger_type": "webhook_received",
    }
    data.update(overrides)
    return TaskCreate.model_validate(data)


class TestTaskCreate:
    def test_creates_cron_task(self, task_manager):
        task = task_manager.create(_scheduled())
        assert task.id.startswith("task-")
        assert task.status == "active"
        assert task.next_run_at == utc(2025, 1, 1, 9, 0)
        assert task_manager.get_by_id(task.id) == task

    def test_creates_from_recurrence_spec(self, task_manager):
        task = task_manager.create(_scheduled(
            cron_expression=None,
            timezone=None,
            schedule={
                "mode": "recurring",
                "interval": 1,
                "unit": "day",
                "start_date": "2025-01-01",
                "time": "09:00",
                "timezone": "America/New_York",
            },
        ))
        assert task.cron_expression == "0 9 * * *"
        assert task.timezone == "America/New_York"
        assert task.start_date == utc(2025, 1, 1, 14, 0)
        assert task.next_run_at == utc(2025, 1, 1, 14, 0)

    def test_one_time_spec_sets_single_execution(self, task_manager):
        task = task_manager.create(_scheduled(
            cron_expression=None,
            schedule={"mode": "one_time", "date": "2025-01-02", "time": "07:30"},
        ))
        assert task.max_executions == 1
        assert task.next_run_at == utc(2025, 1, 2, 7, 30)

    def test_one_time_in_the_past_rejected(self, task_manager):
        with pytest.raises(SchedulingError, match="in the past"):
            task_manager.create(_scheduled(
                cron_expression=None,
                schedule={"mode": "one_time", "date": "2024-12-31", "time": "07:30"},
            ))

    def test_invalid_cron(self, task_manager):
        with pytest.raises(SchedulingError, match="Invalid cron"):
            task_manager.create(_scheduled(cron_expression="invalid cron"))
        assert task_manager.list_tasks() == []

    def test_zero_max_executions_rejected(self, task_manager):
        with pytest.raises(ValidationError, match="max_executions"):
            task_manager.create(_scheduled(max_executions=0))

    def test_future_start_date_counts_its_own_occurrence(self, task_manager):
        task = task_manager.create(_scheduled(start_date=utc(2025, 1, 10, 9, 0)))
        assert task.next_run_at == utc(2025, 1, 10, 9, 0)

    def test_equal_start_and_end_means_no_end(self, task_manager):
        task = task_manager.create(_scheduled(start_date=utc(2025, 1, 10, 9, 0), end_date=utc(2025, 1, 10, 9, 0)))
        assert task.end_date is None

    def test_no_occurrence_before_end_date(self, task_manager):
        with pytest.raises(SchedulingError, match="end date"):
            task_manager.create(_scheduled(end_date=utc(2025, 1, 1, 8, 30)))

    def test_event_based_gets_default_trigger(self, task_manager):
        task = task_manager.create(_event_based())
        assert task.next_run_at is None
        assert task.cron_expression is None
        [trigger] = task_manager.list_triggers(task.id)
        assert trigger.trigger_type == "webhook_received"
        assert trigger.name == "Deploy notes trigger"

    def test_event_based_with_triggers(self, task_manager):
        task = task_manager.create(_event_based(triggers=[
            {"trigger_type": "webhook_received", "name": "CI", "conditions": {"source": "ci"}, "cooldown_minutes": 5},
        ]))
        [trigger] = task_manager.list_triggers(task.id)
        assert trigger.conditions.source == "ci"
        assert trigger.cooldown_minutes == 5

    def test_mismatched_trigger_type_writes_nothing(self, task_manager):
        with pytest.raises(ValidationError, match="does not match"):
            task_manager.create(_event_based(triggers=[{"trigger_type": "manual", "name": "Go"}]))
        assert task_manager.list_tasks() == []


class TestTaskUpdate:
    def test_partial_update(self, task_manager):
        task = task_manager.create(_scheduled(description="old"))
        updated = task_manager.update(task.id, TaskUpdate(name="Renamed"))
        assert updated.name == "Renamed"
        assert updated.description == "old"
        assert updated.next_run_at == task.next_run_at

    def test_explicit_none_clears_optional_field(self, task_manager):
        task = task_manager.create(_scheduled(description="old"))
        updated = task_manager.update(task.id, TaskUpdate(description=None))
        assert updated.description is None

    def test_none_for_required_field_is_ignored(self, task_manager):
        task = task_manager.create(_scheduled())
        updated = task_manager.update(task.id, TaskUpdate(name=None))
        assert updated.name == "Digest"

    def test_expression_change_recomputes_next_run(self, task_manager):
        task = task_manager.create(_scheduled())
        updated = task_manager.update(task.id, TaskUpdate(cron_expression="30 12 * * *"))
        assert updated.next_run_at == utc(2025, 1, 1, 12, 30)

    def test_kind_cannot_change(self, task_manager):
        task = task_manager.create(_scheduled())
        with pytest.raises(ValidationError, match="kind"):
            task_manager.update(task.id, TaskUpdate(kind="event_based"))

    def test_event_task_rejects_schedule(self, task_manager):
        task = task_manager.create(_event_based())
        with pytest.raises(ValidationError, match="schedule"):
            task_manager.update(
                task.id,
                TaskUpdate(schedule={"mode": "one_time", "date": "2025-02-01", "time": "09:00"}),
            )

    def test_invalid_update_not_persisted(self, task_manager):
        task = task_manager.create(_scheduled())
        with pytest.raises(ValidationError):
            task_manager.update(task.id, TaskUpdate(max_executions=-1))
        assert task_manager.require(task.id).max_executions is None

    def test_terminal_task_cannot_be_updated(self, task_manager):
        task = task_manager.create(_scheduled())
        task_manager.cancel(task.id)
        with pytest.raises(InvalidTransitionError):
            task_manager.update(task.id, TaskUpdate(name="Too late"))

    def test_missing_task(self, task_manager):
        with pytest.raises(TaskNotFoundError):
            task_manager.update("task-missing", TaskUpdate(name="x"))


class TestTaskLifecycle:
    def test_pause_and_resume(self, task_manager):
        task = task_manager.create(_scheduled())
        assert task_manager.pause(task.id).status == "paused"
        resumed = task_manager.resume(task.id)
        assert resumed.status == "active"
        assert resumed.next_run_at == task.next_run_at

    def test_cancel_is_terminal(self, task_manager):
        task = task_manager.create(_scheduled())
        cancelled = task_manager.cancel(task.id)
        assert cancelled.status == "cancelled"
        assert cancelled.next_run_at is None
        with pytest.raises(InvalidTransitionError):
            task_manager.resume(task.id)

    def test_cancel_paused_task(self, task_manager):
        task = task_manager.create(_scheduled())
        task_manager.pause(task.id)
        assert task_manager.cancel(task.id).status == "cancelled"

    def test_pause_paused_task_rejected(self, task_manager):
        task = task_manager.create(_scheduled())
        task_manager.pause(task.id)
        with pytest.raises(InvalidTransitionError):
            task_manager.pause(task.id)

    def test_complete_only_once(self, task_manager):
        task = task_manager.create(_scheduled())
        assert task_manager.complete(task.id, reason="test") is True
        assert task_manager.complete(task.id, reason="test") is False

    def test_delete(self, task_manager):
        task = task_manager.create(_event_based())
        task_manager.delete(task.id)
        assert task_manager.get_by_id(task.id) is None
        assert task_manager.list_triggers(task.id) == []
        with pytest.raises(TaskNotFoundError):
            task_manager.delete(task.id)


class TestClaims:
    def test_claim_returns_token_once(self, task_manager):
        task = task_manager.create(_scheduled())
        token = task_manager.claim(task.id)
        assert token is not None
        assert task_manager.claim(task.id) is None

        task_manager.release(task.id, token)
        assert task_manager.claim(task.id) is not None

    def test_lease_expires(self, task_manager, clock):
        task = task_manager.create(_scheduled())
        assert task_manager.claim(task.id) is not None
        clock.advance(hours=1)
        assert task_manager.claim(task.id) is not None


class TestTriggers:
    def test_add_trigger(self, task_manager):
        task = task_manager.create(_event_based())
        trigger = task_manager.add_trigger(
            task.id, TriggerCreate(trigger_type="webhook_received", name="Releases", conditions={"event": "release"})
        )
        assert trigger.id.startswith("trigger-")
        assert len(task_manager.list_triggers(task.id)) == 2

    def test_scheduled_task_rejects_trigger(self, task_manager):
        task = task_manager.create(_scheduled())
        with pytest.raises(ValidationError, match="event-based"):
            task_manager.add_trigger(task.id, TriggerCreate(trigger_type="manual", name="Go"))

    def test_toggle_trigger(self, task_manager):
        task = task_manager.create(_event_based())
        [trigger] = task_manager.list_triggers(task.id)
        assert task_manager.set_trigger_active(trigger.id, False).is_active is False
        assert task_manager.get_trigger(trigger.id).is_active is False

    def test_toggle_missing_trigger(self, task_manager):
        with pytest.raises(TaskNotFoundError):
            task_manager.set_trigger_active("trigger-missing", True)


class TestTaskAuthorization:
    def test_admin_can_manage_any_task(self, task_manager):
        task = task_manager.create(_scheduled())
        policy = AuthorizationPolicy(AuthContext(principal_id="admin", is_admin=True))
        assert task_manager.get_authorized(task.id, policy).id == task.id

    def test_owner_can_manage_own_task(self, task_manager):
        task = task_manager.create(_scheduled())
        policy = AuthorizationPolicy(AuthContext(principal_id="alice", is_admin=False))
        assert task_manager.get_authorized(task.id, policy).id == task.id

    def test_other_principal_denied(self, task_manager):
        task = task_manager.create(_scheduled())
        policy = AuthorizationPolicy(AuthContext(principal_id="bob", is_admin=False))
        with pytest.raises(PermissionDeniedError):
            task_manager.get_authorized(task.id, policy)

    def test_nonexistent_task_raises(self, task_manager):
        policy = AuthorizationPolicy(AuthContext(principal_id="admin", is_admin=True))
        with pytest.raises(TaskNotFoundError, match="Task not found"):
            task_manager.get_authorized("task-missing", policy)
