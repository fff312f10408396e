"""
Fixed-Window Rate Limiter

Each connector owns one RateLimiter sized to its venue's request budget
(Binance spot: 1200 requests per 60 seconds). The ingestion loop calls
``try_acquire()`` before every poll and skips the request when it returns
False; it never sleeps waiting for budget.

The window rolls over lazily: the first call after the window has elapsed
resets the counter, so no timer thread is involved.
"""

import threading
import time
from typing import Callable


class RateLimiter:
    """
    Count requests inside a fixed time window.

    Args:
        limit: Requests allowed per window
        window_seconds: Window length
        clock: Monotonic clock returning seconds (injectable for tests)

    Example:
        >>> limiter = RateLimiter(limit=2, window_seconds=60)
        >>> limiter.try_acquire(), limiter.try_acquire(), limiter.try_acquire()
        (True, True, False)
        >>> limiter.remaining()
        0
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic
    ):
        if limit <= 0:
            raise ValueError(f"Rate limit must be positive, got {limit}")
        if window_seconds <= 0:
            raise ValueError(f"Rate limit window must be positive, got {window_seconds}")

        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._count = 0
        self._window_start = clock()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window(self) -> float:
        return self._window

    def _roll(self, now: float) -> None:
        # caller holds the lock
        if now - self._window_start >= self._window:
            self._count = 0
            self._window_start = now

    def try_acquire(self) -> bool:
        """Consume one request if the current window has budget left."""
        with self._lock:
            self._roll(self._clock())
            if self._count >= self._limit:
                return False
            self._count += 1
            return True

    def remaining(self) -> int:
        """Requests left in the current window, never negative."""
        with self._lock:
            self._roll(self._clock())
            return max(0, self._limit - self._count)

    def seconds_until_reset(self) -> float:
        with self._lock:
            now = self._clock()
            self._roll(now)
            return max(0.0, self._window - (now - self._window_start))

    def reset(self) -> None:
        """Start a fresh window immediately."""
        with self._lock:
            self._count = 0
            self._window_start = self._clock()

    def __repr__(self) -> str:
        return f"<RateLimiter(limit={self._limit}, window={self._window:g}s)>"
