from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from taskengine.execution.types import InvocationResult, TriggerContext
from taskengine.engine import TaskEngine
from taskengine.infrastructure.config import TimeoutConfig
from taskengine.infrastructure.database import AppDatabase


class FakeClock:
    """Injectable clock whose time only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeInvoker:
    """Records every call and answers with a canned result, exception, or awaitable gate."""

    def __init__(self, result: Any = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.result = result if result is not None else {"output": "done", "tool_outputs": []}
        self.error: Exception | None = None
        self.gate: Any = None  # an asyncio.Event to block on

    async def invoke(
        self,
        agent_id: str,
        instructions: str,
        tools: list[str],
        trigger_context: TriggerContext,
    ) -> InvocationResult | dict[str, Any]:
        self.calls.append({
            "agent_id": agent_id,
            "instructions": instructions,
            "tools": tools,
            "trigger": trigger_context,
        })
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def db() -> AppDatabase:
    """Create an in-memory database for testing."""
    app_db = AppDatabase()
    app_db._init_test()
    return app_db


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture
def engine(db, invoker, clock) -> TaskEngine:
    return TaskEngine(
        db,
        invoker,
        clock=clock,
        timeouts=TimeoutConfig(execution_timeout=2000, claim_grace=1000),
        max_concurrent=2,
        poll_interval_s=0.05,
    )
