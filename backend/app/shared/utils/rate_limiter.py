"""
Windowed Rate Limiter (per key)

Each key (tenant id, webhook token, ...) owns a bucket with a counter and a
reset instant. The first hit opens a window of `window_seconds`; hits beyond
`limit` inside the window are refused until the window elapses.

State is process-local and intentionally lost on restart: it only bounds
short-term bursts. Each consumer constructs its own limiter (optionally with
its own bucket map and clock), so tests get isolated instances.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from app.shared.utils.exceptions import RateLimitExceededError

logger = logging.getLogger("rate_limiter")


@dataclass
class RateLimitBucket:
    count: int
    reset_at: float


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(limit=30, window_seconds=60)
        limiter.hit("user-1")      # raises RateLimitExceededError on the 31st call
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        buckets: Optional[Dict[str, RateLimitBucket]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._buckets = buckets if buckets is not None else {}
        self._clock = clock

    def hit(self, key: str) -> int:
        """
        Count one request for `key`.

        Returns the number of requests seen in the current window.
        Raises RateLimitExceededError when that number exceeds the limit.
        """
        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None or now > bucket.reset_at:
            bucket = RateLimitBucket(count=0, reset_at=now + self.window_seconds)
            self._buckets[key] = bucket

        bucket.count += 1
        if bucket.count > self.limit:
            logger.warning(f"Rate limit exceeded for key={key} ({bucket.count}/{self.limit})")
            raise RateLimitExceededError(key, self.limit, int(self.window_seconds))
        return bucket.count

    def remaining(self, key: str) -> int:
        bucket = self._buckets.get(key)
        if bucket is None or self._clock() > bucket.reset_at:
            return self.limit
        return max(0, self.limit - bucket.count)
