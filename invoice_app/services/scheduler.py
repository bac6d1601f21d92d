from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicJob:
    """Run ``callback`` every ``interval`` seconds on the running event loop."""

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[object]],
        *,
        run_on_start: bool = False,
    ) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_on_start = run_on_start
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("Started background job %s (every %ss)", self.name, self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped background job %s", self.name)

    async def _run_once(self) -> None:
        try:
            await self._callback()
        except Exception:
            # A failed run must not kill the schedule; the next tick retries.
            logger.exception("Background job %s failed", self.name)
        self.runs += 1

    async def _loop(self) -> None:
        if self._run_on_start:
            await self._run_once()
        while True:
            await asyncio.sleep(self.interval)
            await self._run_once()
