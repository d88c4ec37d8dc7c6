"""
Per-key token-bucket limiter for wallet unlock attempts.

Each user starts with ``max_attempts`` tokens that refill linearly over
``window_seconds``.  A successful unlock resets the bucket.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict
from typing import Callable


class UnlockRateLimiter:
    """Simple per-user token-bucket rate limiter."""

    __slots__ = ("_buckets", "_max", "_window", "_clock")

    def __init__(self, max_attempts: int = 5, window_seconds: float = 900.0,
                 clock: Callable[[], float] = time.monotonic):
        self._max = max_attempts  # 0 = unlimited
        self._window = window_seconds
        self._clock = clock
        # key -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(
            lambda: [float(max_attempts), self._clock()]
        )

    def _refill(self, key: str) -> list[float]:
        bucket = self._buckets[key]
        now = self._clock()
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._max), bucket[0] + elapsed * (self._max / self._window))
        bucket[1] = now
        return bucket

    def check(self, key: str) -> tuple[bool, int]:
        """
        Consume one attempt for *key*.

        Returns ``(allowed, retry_after_seconds)``.
        """
        if self._max <= 0:
            return True, 0
        bucket = self._refill(key)
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True, 0
        per_token = self._window / self._max
        return False, max(1, math.ceil((1.0 - bucket[0]) * per_token))

    def reset(self, key: str) -> None:
        self._buckets.pop(key, None)
