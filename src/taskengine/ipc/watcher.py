"""Inbox watcher: watches the inbox directory for commands and events."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Coroutine

from watchfiles import awatch

from taskengine.engine import TaskEngine
from taskengine.errors import TaskEngineError
from taskengine.infrastructure.config import ADMIN_PRINCIPAL, DATA_DIR, IPC_POLL_INTERVAL
from taskengine.infrastructure.logger import logger
from taskengine.ipc.dispatcher import IpcCommandDispatcher, IpcHandlerError
from taskengine.ipc.handlers.event_handlers import INGEST_EVENT, IngestEventHandler
from taskengine.ipc.handlers.task_handlers import (
    AddTriggerHandler,
    CancelTaskHandler,
    CreateTaskHandler,
    DeleteTaskHandler,
    PauseTaskHandler,
    ResumeTaskHandler,
    RunTaskHandler,
    TaskHistoryHandler,
    UpdateTaskHandler,
)
from taskengine.ipc.snapshot_writer import SnapshotWriter


class IpcDeps:
    """Dependencies for inbox handlers, passed as a context object."""

    def __init__(self, engine: TaskEngine, snapshot_writer: SnapshotWriter) -> None:
        self.engine = engine
        self.snapshot_writer = snapshot_writer
        self._background: set[asyncio.Task[None]] = set()

    def spawn(self, coro: Coroutine[Any, Any, object], **log_fields: Any) -> asyncio.Task[None]:
        """Run `coro` in the background; engine errors are logged, not raised."""
        task = asyncio.create_task(self._guard(coro, log_fields))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for background runs; with a timeout, cancel whatever is left after it."""
        if timeout is None:
            while self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)
            return
        if not self._background:
            return
        _done, pending = await asyncio.wait(set(self._background), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @staticmethod
    async def _guard(coro: Coroutine[Any, Any, object], log_fields: dict[str, Any]) -> None:
        try:
            await coro
        except TaskEngineError as err:
            logger.warning(err.message, details=err.details, **log_fields)
        except Exception:
            logger.exception("Background inbox run failed", **log_fields)


# Fallback poll interval: slower since watchfiles handles the fast path
FALLBACK_POLL_INTERVAL = IPC_POLL_INTERVAL * 10


def build_dispatcher() -> IpcCommandDispatcher:
    return IpcCommandDispatcher([
        CreateTaskHandler(),
        UpdateTaskHandler(),
        DeleteTaskHandler(),
        PauseTaskHandler(),
        ResumeTaskHandler(),
        CancelTaskHandler(),
        RunTaskHandler(),
        AddTriggerHandler(),
        TaskHistoryHandler(),
        IngestEventHandler(),
    ])


class IpcWatcher:
    """Watches <base>/<principal>/commands and <base>/<source>/events for JSON files."""

    def __init__(self, ipc_base_dir: Path | None = None) -> None:
        self._dispatcher = build_dispatcher()
        self._ipc_base_dir = ipc_base_dir or DATA_DIR / "ipc"
        self._processing = False
        self._running = False
        self._watch_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def ipc_base_dir(self) -> Path:
        return self._ipc_base_dir

    def start(self, deps: IpcDeps) -> None:
        if self._running:
            logger.debug("Inbox watcher already running, skipping duplicate start")
            return
        self._running = True
        self._ipc_base_dir.mkdir(parents=True, exist_ok=True)

        self._watch_task = asyncio.create_task(self._watch_loop(deps))
        # Fallback poll at slower interval
        self._poll_task = asyncio.create_task(self._fallback_poll_loop(deps))
        logger.info("Inbox watcher started (watchfiles + fallback poll)", path=str(self._ipc_base_dir))

    def stop(self) -> None:
        self._running = False
        if self._watch_task:
            self._watch_task.cancel()
            self._watch_task = None
        if self._poll_task:
            self._poll_task.cancel()
            self._poll_task = None

    async def dispatch_command(self, data: dict[str, Any], principal_id: str, deps: IpcDeps) -> None:
        """Dispatch one command directly, bypassing the filesystem."""
        await self._dispatcher.dispatch(data, principal_id, principal_id == ADMIN_PRINCIPAL, deps)

    async def process_once(self, deps: IpcDeps) -> None:
        """Process every pending command and event file once."""
        await self._process_ipc_files(deps)

    async def _watch_loop(self, deps: IpcDeps) -> None:
        """Use watchfiles to watch for inbox file changes."""
        try:
            async for _changes in awatch(str(self._ipc_base_dir)):
                if not self._running:
                    break
                await self._process_ipc_files(deps)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("watchfiles error")

    async def _fallback_poll_loop(self, deps: IpcDeps) -> None:
        """Slow fallback poll."""
        while self._running:
            try:
                await self._process_ipc_files(deps)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in inbox fallback poll")
            await asyncio.sleep(FALLBACK_POLL_INTERVAL)

    async def _process_ipc_files(self, deps: IpcDeps) -> None:
        if self._processing:
            return
        self._processing = True

        try:
            if not self._ipc_base_dir.exists():
                return

            principals = sorted(
                e.name for e in self._ipc_base_dir.iterdir() if e.is_dir() and e.name != "errors"
            )
            for principal_id in principals:
                principal_dir = self._ipc_base_dir / principal_id
                await self._process_dir(principal_dir / "commands", principal_id, deps, event=False)
                await self._process_dir(principal_dir / "events", principal_id, deps, event=True)
        except Exception:
            logger.exception("Error in inbox processing")
        finally:
            self._processing = False

    async def _process_dir(self, directory: Path, principal_id: str, deps: IpcDeps, event: bool) -> None:
        if not directory.exists():
            return

        is_admin = principal_id == ADMIN_PRINCIPAL
        for file_path in sorted(f for f in directory.iterdir() if f.suffix == ".json"):
            try:
                data = json.loads(file_path.read_text())
                if not isinstance(data, dict):
                    logger.warning("Inbox file is not a JSON object", file=file_path.name, principal_id=principal_id)
                    self._move_to_errors(file_path, principal_id)
                    continue
                if event:
                    data = {**data, "type": INGEST_EVENT}
                await self._dispatcher.dispatch(data, principal_id, is_admin, deps)
                file_path.unlink()
            except IpcHandlerError:
                # Already logged by the dispatcher
                self._move_to_errors(file_path, principal_id)
            except Exception:
                logger.exception("Error processing inbox file", file=file_path.name, principal_id=principal_id)
                self._move_to_errors(file_path, principal_id)

    def _move_to_errors(self, file_path: Path, principal_id: str) -> None:
        error_dir = self._ipc_base_dir / "errors"
        error_dir.mkdir(parents=True, exist_ok=True)
        try:
            file_path.rename(error_dir / f"{principal_id}-{file_path.name}")
        except OSError as err:
            logger.warning("Could not move inbox file to errors", file=file_path.name, error=str(err))
