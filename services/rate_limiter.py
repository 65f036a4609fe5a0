"""
Process-wide admission queue for the flight GDS.

Callers are admitted in arrival order, and only when every sliding window
(per second, per five minutes, per hour) has headroom. The check and the
counter update happen under one lock, so two queued callers can never both
pass on the same free slot.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Deque, Dict, List, Sequence

from config import settings
from request_context import get_request_id

log = logging.getLogger("gds")


@dataclass(frozen=True)
class Window:
    limit: int
    seconds: float

    @property
    def label(self) -> str:
        return f"{self.limit}/{self.seconds:g}s"


class AdmissionQueue:
    def __init__(
        self,
        windows: Sequence[Window],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not windows:
            raise ValueError("at least one window is required")
        self.windows = list(windows)
        self._clock = clock
        self._sleep = sleep
        self._stamps: List[Deque[float]] = [deque() for _ in self.windows]
        # asyncio.Lock wakes waiters in FIFO order
        self._lock = asyncio.Lock()
        self.in_flight = 0
        self.admitted = 0

    @classmethod
    def from_settings(cls) -> "AdmissionQueue":
        return cls([
            Window(settings.GDS_MAX_PER_SECOND, 1.0),
            Window(settings.GDS_MAX_PER_5_MINUTES, 300.0),
            Window(settings.GDS_MAX_PER_HOUR, 3600.0),
        ])

    def _prune(self, now: float) -> None:
        for window, stamps in zip(self.windows, self._stamps):
            while stamps and now - stamps[0] >= window.seconds:
                stamps.popleft()

    def _wait_needed(self, now: float) -> float:
        wait = 0.0
        for window, stamps in zip(self.windows, self._stamps):
            if len(stamps) >= window.limit:
                wait = max(wait, stamps[0] + window.seconds - now)
        return wait

    async def acquire(self) -> None:
        # The lock is held while waiting so later arrivals queue behind us.
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                wait = self._wait_needed(now)
                if wait <= 0:
                    for stamps in self._stamps:
                        stamps.append(now)
                    self.in_flight += 1
                    self.admitted += 1
                    return
                log.debug("Admission queue waiting", extra={
                    "request_id": get_request_id(),
                    "wait_s": round(wait, 3),
                })
                await self._sleep(wait)

    def release(self) -> None:
        if self.in_flight > 0:
            self.in_flight -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> Dict[str, int]:
        now = self._clock()
        self._prune(now)
        counts = {w.label: len(s) for w, s in zip(self.windows, self._stamps)}
        counts["in_flight"] = self.in_flight
        return counts
