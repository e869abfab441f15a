"""Fixed-window per-client rate limiting, applied before admission."""

import time
from collections.abc import Callable
from typing import Optional

from runner_pool.errors import RateLimitExceeded

TimeFn = Callable[[], float]


class FixedWindowRateLimiter:
    """Count requests per client key in fixed, aligned time windows.

    Windows start at multiples of window_seconds on the clock; every counter
    resets when a new window begins. limit=0 disables the limiter.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: float,
        now_fn: Optional[TimeFn] = None,
    ) -> None:
        self.limit = max(0, int(limit))
        self.window_seconds = float(window_seconds)
        self._now = now_fn or time.monotonic
        self._window: Optional[int] = None
        self._counts: dict[str, int] = {}

    @property
    def enabled(self) -> bool:
        return self.limit > 0 and self.window_seconds > 0

    def hit(self, key: str) -> None:
        """Count one request for key, or raise RateLimitExceeded."""
        if not self.enabled:
            return

        now = self._now()
        window = int(now // self.window_seconds)
        if window != self._window:
            self._window = window
            self._counts.clear()

        count = self._counts.get(key, 0)
        if count >= self.limit:
            retry_in = (window + 1) * self.window_seconds - now
            raise RateLimitExceeded(key, self.limit, self.window_seconds, retry_in)
        self._counts[key] = count + 1

    def remaining(self, key: str) -> Optional[int]:
        if not self.enabled:
            return None
        window = int(self._now() // self.window_seconds)
        if window != self._window:
            return self.limit
        return self.limit - self._counts.get(key, 0)
