"""Delivery rate limiting shared across the worker pool.

A token bucket replaces a fixed sleep between users: every worker asks the
same bucket for a token right before calling the delivery collaborator, so
the configured rate holds no matter how many workers run.  Only delivery
waits on it; filtering and assembly never do.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from salesdigest.config import DELIVERY_INTERVAL_SECONDS
from salesdigest.observability.telemetry import counter


class TokenBucket:
    """
    Thread-safe token bucket.

    Tokens may go negative: each caller reserves its slot under the lock and
    then sleeps outside it, so waiting callers queue up in arrival order
    without holding the lock.
    """

    def __init__(
        self,
        rate_per_second: float | None,
        capacity: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate_per_second is not None and rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive (or None for unlimited)")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = rate_per_second
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(capacity)
        self._updated = clock()

    @classmethod
    def from_interval(
        cls,
        interval_seconds: float = DELIVERY_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> TokenBucket:
        """One call per ``interval_seconds`` across all callers; 0 disables throttling."""
        rate = None if interval_seconds <= 0 else 1.0 / interval_seconds
        return cls(rate, capacity=1, clock=clock, sleep=sleep)

    @property
    def unlimited(self) -> bool:
        return self.rate is None

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._updated = now
        assert self.rate is not None
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)

    def reserve(self) -> float:
        """Take a token now and return how long the caller must wait before using it."""
        if self.rate is None:
            return 0.0
        with self._lock:
            self._refill()
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.rate

    def _refund(self) -> None:
        with self._lock:
            self._tokens = min(float(self.capacity), self._tokens + 1.0)

    def acquire(self, timeout: float | None = None) -> bool:
        """
        Block until a token is available.

        Returns:
            False (without consuming a token) if the wait would exceed ``timeout``
        """
        wait = self.reserve()
        if timeout is not None and wait > timeout:
            self._refund()
            counter("rate_limit.timeouts")
            return False
        if wait > 0:
            counter("rate_limit.throttled")
            self._sleep(wait)
        return True
