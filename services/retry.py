"""
Bounded retry with exponential backoff and jitter for remote providers.

Only throttling (429) and server-side (5xx) responses are retried; every
other error propagates on the first attempt.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from config import settings
from request_context import get_request_id

log = logging.getLogger("retry")

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def _retry_after_s(exc: BaseException) -> Optional[float]:
    if not isinstance(exc, httpx.HTTPStatusError):
        return None
    value = exc.response.headers.get("Retry-After")
    try:
        return max(0.0, float(value)) if value is not None else None
    except ValueError:
        return None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0
    jitter_s: float = 0.25

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay_s=settings.RETRY_BASE_DELAY_S,
            max_delay_s=settings.RETRY_MAX_DELAY_S,
            jitter_s=settings.RETRY_JITTER_S,
        )

    def delay_for(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        """Delay before retry number `attempt` (0-based); never above the cap."""
        hinted = _retry_after_s(exc) if exc is not None else None
        if hinted is not None:
            return min(hinted, self.max_delay_s)
        backoff = min(self.max_delay_s, self.base_delay_s * (2 ** attempt))
        jitter = random.uniform(0, self.jitter_s) if self.jitter_s > 0 else 0.0
        return min(self.max_delay_s, backoff + jitter)

    async def run(
        self,
        op: Callable[[], Awaitable[T]],
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        label: str = "request",
    ) -> T:
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return await op()
            except Exception as e:
                if not is_retryable(e) or attempt == attempts - 1:
                    raise
                delay = self.delay_for(attempt, e)
                log.warning("Retrying after transient provider error", extra={
                    "request_id": get_request_id(),
                    "label": label,
                    "attempt": attempt + 1,
                    "status": e.response.status_code,
                    "delay_s": round(delay, 3),
                })
                await sleep(delay)
        raise RuntimeError("unreachable")
