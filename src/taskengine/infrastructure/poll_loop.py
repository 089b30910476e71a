"""Shared async polling loop abstraction."""

from __future__ import annotations

import asyncio
from typing import Callable, Awaitable

from taskengine.infrastructure.logger import logger


class PollLoop:
    """Runs an async callback every `interval_s` seconds until stopped.

    A failing cycle is logged and the next one still runs on time. `wake()`
    cuts the current sleep short so a newly due task need not wait a full
    interval.
    """

    def __init__(self, name: str, interval_s: float, fn: Callable[[], Awaitable[object]]) -> None:
        self.name = name
        self.interval_s = interval_s
        self.cycles = 0
        self._fn = fn
        self._task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"poll:{self.name}")
        logger.info("Poll loop started", loop=self.name, interval_s=self.interval_s)

    def wake(self) -> None:
        self._wake.set()

    def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        logger.info("Poll loop stopped", loop=self.name, cycles=self.cycles)

    async def _loop(self) -> None:
        while True:
            self._wake.clear()
            try:
                await self._fn()
            except Exception:
                logger.exception("Poll cycle failed", loop=self.name)
            self.cycles += 1
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass


def start_poll_loop(name: str, interval_s: float, fn: Callable[[], Awaitable[object]]) -> PollLoop:
    """Create and start a polling loop. Returns a handle to stop it."""
    loop = PollLoop(name, interval_s, fn)
    loop.start()
    return loop
