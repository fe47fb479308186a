"""Run-scoped token bucket rate limiting for external providers."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class TokenBucket:
    """Async token bucket shared by every worker calling one provider.

    One token is added every ``interval_seconds`` up to ``capacity``.
    ``acquire`` waits until a token is available. An interval of zero
    disables limiting.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        capacity: int = 1,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.interval_seconds = max(0.0, float(interval_seconds))
        self.capacity = max(1, int(capacity))
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.capacity)
        self._last_refill = clock()
        self._lock = asyncio.Lock()
        self.total_wait_seconds = 0.0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed <= 0:
            return
        self._tokens = min(float(self.capacity), self._tokens + elapsed / self.interval_seconds)
        self._last_refill = now

    async def acquire(self) -> float:
        """Take one token, waiting if needed. Returns seconds waited."""
        if self.interval_seconds == 0:
            return 0.0

        waited = 0.0
        # Lock keeps waiters in FIFO order and the token count consistent
        async with self._lock:
            self._refill()
            while self._tokens < 1:
                delay = (1 - self._tokens) * self.interval_seconds
                await self._sleep(delay)
                waited += delay
                self._refill()
            self._tokens -= 1

        if waited:
            self.total_wait_seconds += waited
            logger.debug(
                "Rate limiter wait",
                extra={"provider": self.name, "waited_s": round(waited, 3)},
            )
        return waited

    @property
    def available_tokens(self) -> float:
        if self.interval_seconds == 0:
            return float(self.capacity)
        self._refill()
        return self._tokens
