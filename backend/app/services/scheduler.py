"""
Periodic job scheduler.

Owns the process's timers (geofence evaluation, stale call sweep, queue
retries). Time comes from an injectable clock: under a ManualClock, tick()
runs exactly the jobs that are due, with no real waiting.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from backend.app.core.clock import SystemClock

logger = logging.getLogger(__name__)


@dataclass
class Job:
    name: str
    func: Callable[[], Awaitable[object]]
    interval_ms: int
    next_run_ms: int
    runs: int = 0
    failures: int = 0


class Scheduler:

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()
        self.jobs: List[Job] = []
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    def every(self, seconds: float, name: str, func: Callable[[], Awaitable[object]],
              run_immediately: bool = False) -> Job:
        interval_ms = int(seconds * 1000)
        if interval_ms <= 0:
            raise ValueError(f"Job {name} needs a positive interval, got {seconds}s")
        first = self.clock.now_ms() if run_immediately else self.clock.now_ms() + interval_ms
        job = Job(name=name, func=func, interval_ms=interval_ms, next_run_ms=first)
        self.jobs.append(job)
        return job

    async def tick(self) -> List[str]:
        """Run every due job once. Returns the names of the jobs that ran."""
        now = self.clock.now_ms()
        ran = []
        for job in self.jobs:
            if job.next_run_ms > now:
                continue
            # Skip missed slots instead of bursting to catch up
            while job.next_run_ms <= now:
                job.next_run_ms += job.interval_ms
            try:
                await job.func()
            except Exception:
                job.failures += 1
                logger.exception("Scheduled job failed", extra={"job": job.name})
            job.runs += 1
            ran.append(job.name)
        return ran

    def seconds_until_next(self) -> float:
        if not self.jobs:
            return 1.0
        next_run = min(job.next_run_ms for job in self.jobs)
        return max(0.0, (next_run - self.clock.now_ms()) / 1000)

    async def run_forever(self) -> None:
        while not self._stopping:
            await self.tick()
            await self.clock.sleep(self.seconds_until_next())

    def start(self) -> None:
        if self._task is None:
            self._stopping = False
            self._task = asyncio.create_task(self.run_forever())
            logger.info("Scheduler started", extra={"jobs": [job.name for job in self.jobs]})

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
