from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable


logger = logging.getLogger(__name__)


class RecurringTask:
    """Run an async job on a fixed cadence until stopped; a failed cycle never ends the loop."""

    def __init__(
        self,
        name: str,
        interval_s: float,
        job: Callable[[], Awaitable[object]],
        *,
        run_immediately: bool = False,
    ) -> None:
        self.name = name
        self.interval_s = max(0.01, float(interval_s))
        self._job = job
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.interval_s)
        while True:
            try:
                await self._job()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("recurring task cycle failed name=%s", self.name)
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=f"medguard:{self.name}")
        logger.info("recurring_task_started name=%s interval_s=%s", self.name, self.interval_s)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("recurring_task_stopped name=%s", self.name)
