"""
Per-connection sliding-window rate limiter.

Keeps a rolling log of admission timestamps for the last minute.  Bursts
are bounded by the per-second count and sustained throughput by the
per-minute count.  ``requests_per_hour`` and ``burst_limit`` are advisory:
they are reported by ``snapshot()`` but never gate admission.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict

from connectors.errors import RateLimitExceeded
from utils.schemas import RateLimitPolicy

_SECOND = 1.0
_MINUTE = 60.0


class RateLimiter:
    def __init__(self, policy: RateLimitPolicy, clock: Callable[[], float] = time.monotonic) -> None:
        self.policy = policy
        self._clock = clock
        self._requests: Deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= _MINUTE:
            self._requests.popleft()

    def check_limit(self) -> None:
        """Admit and record one request, or raise ``RateLimitExceeded``."""
        with self._lock:
            now = self._clock()
            self._prune(now)

            last_second = sum(1 for t in self._requests if now - t < _SECOND)
            if last_second >= self.policy.requests_per_second:
                raise RateLimitExceeded("second", self.policy.requests_per_second)

            if len(self._requests) >= self.policy.requests_per_minute:
                raise RateLimitExceeded("minute", self.policy.requests_per_minute)

            self._requests.append(now)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            now = self._clock()
            self._prune(now)
            return {
                "last_second": sum(1 for t in self._requests if now - t < _SECOND),
                "last_minute": len(self._requests),
                "requests_per_hour": self.policy.requests_per_hour,
                "burst_limit": self.policy.burst_limit,
            }
