# app/infra/broadcast_sweeper.py
"""
Timer loop that runs the broadcast expiry sweep.

Same start/stop/loop shape as JobWorker. Safe to run in every worker
instance: the sweep's writes are guarded, so overlapping runs only
repeat no-ops.
"""
from __future__ import annotations

import asyncio

from app.core.dispatch.sweeper import BroadcastSweeper
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


class BroadcastSweepLoop:
    """
    Usage:
        loop = BroadcastSweepLoop(BroadcastSweeper(requests=store), interval=15)
        await loop.start()
        ...
        await loop.stop()
    """

    def __init__(self, sweeper: BroadcastSweeper, *, interval: float = 15.0):
        self._sweeper = sweeper
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._running = False
        self._runs = 0

    @property
    def runs(self) -> int:
        return self._runs

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="broadcast_sweeper")
        self._task.add_done_callback(self._on_task_done)
        logger.info(f"Broadcast sweeper started: interval={self._interval}s")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Broadcast sweeper stopped")

    async def run_once(self) -> None:
        await self._sweeper.expire_stale()
        self._runs += 1

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Broadcast sweep error: {exc}", exc_info=True)
                inc_counter("sweep_errors")
            await asyncio.sleep(self._interval)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Broadcast sweeper task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
