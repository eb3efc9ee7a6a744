from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


class ConcurrencyGate:
    """Admission queue bounding in-flight work and spacing out start times.

    At most ``max_concurrent`` units run at once and no two units start closer
    together than ``min_interval`` seconds. The queue itself is unbounded.
    """

    def __init__(self, max_concurrent: int = 20, min_interval: float = 0.05):
        self.max_concurrent = max(int(max_concurrent), 1)
        self.min_interval = max(float(min_interval), 0.0)
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._spacing = asyncio.Lock()
        self._next_start = 0.0
        self._queued = 0
        self._in_flight = 0
        self.peak_in_flight = 0

    @property
    def queue_length(self) -> int:
        return self._queued

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        self._queued += 1
        admitted = False
        try:
            async with self._slots:
                async with self._spacing:
                    delay = self._next_start - time.monotonic()
                    if delay > 0:
                        await asyncio.sleep(delay)
                    self._next_start = time.monotonic() + self.min_interval
                    self._queued -= 1
                    admitted = True
                    self._in_flight += 1
                    self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
                try:
                    return await fn()
                finally:
                    self._in_flight -= 1
        finally:
            if not admitted:
                self._queued -= 1

    def stats(self) -> dict[str, int]:
        return {
            "queue_length": self._queued,
            "processing": self._in_flight,
            "max_concurrent": self.max_concurrent,
        }
