from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from .rate_limit import SlidingWindowLimiter
from .tracker import AbuseTracker

logger = logging.getLogger("ipguard.reaper")


class Reaper:
    """Periodic eviction of stale tracker records.

    Each pass runs in a worker thread so a large table never stalls the event
    loop serving requests.
    """

    def __init__(
        self,
        tracker: AbuseTracker,
        interval: Optional[float] = None,
        limiter: Optional[SlidingWindowLimiter] = None,
        limiter_period_seconds: int = 60,
    ) -> None:
        self.tracker = tracker
        self.interval = interval if interval is not None else tracker.policy.reaper_interval
        self.limiter = limiter
        self.limiter_period_seconds = limiter_period_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        removed = await asyncio.to_thread(self.tracker.reap)
        if self.limiter is not None:
            await asyncio.to_thread(self.limiter.prune, self.limiter_period_seconds)
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reaper pass failed", extra={"event": "reaper_error"})

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("Reaper started", extra={"event": "reaper_started"})

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Reaper stopped", extra={"event": "reaper_stopped"})
