"""Orchestrator class: composes services, wires subsystems."""

from __future__ import annotations

from pathlib import Path

from taskengine.engine import TaskEngine
from taskengine.execution.command_invoker import CommandAgentInvoker
from taskengine.execution.types import AgentInvoker
from taskengine.infrastructure.config import AGENT_COMMAND, DATA_DIR
from taskengine.infrastructure.database import AppDatabase, database
from taskengine.infrastructure.logger import logger
from taskengine.ipc.snapshot_writer import SnapshotWriter
from taskengine.ipc.watcher import IpcDeps, IpcWatcher


class Orchestrator:
    """Composes all services and manages the application lifecycle."""

    def __init__(
        self,
        db: AppDatabase = database,
        invoker: AgentInvoker | None = None,
        ipc_base_dir: Path | None = None,
    ) -> None:
        self._db = db
        self._invoker = invoker
        self._ipc_watcher = IpcWatcher(ipc_base_dir or DATA_DIR / "ipc")
        self._engine: TaskEngine | None = None
        self._ipc_deps: IpcDeps | None = None

    @property
    def engine(self) -> TaskEngine:
        assert self._engine is not None, "Orchestrator not started"
        return self._engine

    async def start(self, db_path: Path | None = None) -> None:
        """Initialize all services and start the polling loops."""
        logger.info("Starting task engine...")

        if not self._db.is_open:
            self._db.init(db_path)

        if self._invoker is None and not AGENT_COMMAND:
            logger.warning("AGENT_COMMAND is not set; every execution will fail until it is configured")
        self._engine = TaskEngine(self._db, self._invoker or CommandAgentInvoker())

        # Recovers interrupted executions, then starts the scheduler loop
        self._engine.start()

        self._ipc_deps = IpcDeps(self._engine, SnapshotWriter(self._ipc_watcher.ipc_base_dir))
        self._ipc_watcher.start(self._ipc_deps)

        logger.info("Task engine started successfully")

    async def shutdown(self) -> None:
        """Gracefully shut down all services."""
        logger.info("Shutting down task engine...")

        self._ipc_watcher.stop()
        if self._engine:
            await self._engine.stop()
        if self._ipc_deps:
            await self._ipc_deps.drain(timeout=5.0)
        self._db.close()

        logger.info("Task engine shut down complete")
