"""Wall-clock budget for a single run."""

import time
from collections.abc import Callable


class RunDeadline:
    """Tracks elapsed and remaining time against a fixed run budget."""

    def __init__(
        self,
        timeout_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self.started_at = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self.started_at

    @property
    def remaining(self) -> float:
        return max(0.0, self.timeout_seconds - self.elapsed)

    def expired(self) -> bool:
        return self.remaining <= 0

    def has_time_for(self, seconds: float) -> bool:
        """Whether at least ``seconds`` remain before the budget runs out."""
        return self.remaining >= seconds
