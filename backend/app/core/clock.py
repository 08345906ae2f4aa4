"""
Injectable clocks.

Services never read the wall clock directly; they receive a Clock so that
schedulers, staleness windows and cache TTLs are deterministic under test.
"""

import asyncio
import time


class SystemClock:
    """Wall-clock time backed by the event loop for sleeping."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """
    Clock that only moves when told to.

    sleep() advances the clock by the requested amount and yields control
    once, so loops driven by it make progress without real waiting.
    """

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self._now_ms = start_ms

    def now_ms(self) -> int:
        return self._now_ms

    def now(self) -> float:
        return self._now_ms / 1000.0

    def advance(self, seconds: float) -> None:
        self._now_ms += int(seconds * 1000)

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)
