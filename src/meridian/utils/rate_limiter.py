from __future__ import annotations

import threading
import time
from typing import Callable


class RateLimiter:
    """
    Token bucket shared by all calls to one venue.
    `capacity` tokens refill at `refill_per_second`.
    """

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        *,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if capacity <= 0 or refill_per_second <= 0:
            raise ValueError("capacity and refill_per_second must be positive")
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self._monotonic = monotonic
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated_at = monotonic()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._monotonic()
        elapsed = now - self._updated_at
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
            self._updated_at = now

    def try_acquire(self, tokens: int = 1) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def wait_time(self, tokens: int = 1) -> float:
        with self._lock:
            self._refill()
            missing = tokens - self._tokens
            if missing <= 0:
                return 0.0
            return missing / self.refill_per_second

    def acquire(self, tokens: int = 1) -> None:
        while not self.try_acquire(tokens):
            self._sleep(self.wait_time(tokens))

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens
