"""
Simple In-Memory Cache with TTL and LRU Eviction

Features:
- TTL (Time To Live) for automatic expiration
- Max size with LRU (Least Recently Used) eviction
- Injectable clock so tests can move time without sleeping

Each component owns its own instance; nothing here is process-global.
A cold cache is always safe: callers just recompute.
"""
import logging
import time
from typing import Any, Optional, Callable
from collections import OrderedDict
from dataclasses import dataclass

logger = logging.getLogger("cache")


@dataclass
class CacheEntry:
    """A single cache entry with data and expiration time."""
    data: Any
    expires_at: float  # clock() value


class SimpleCache:
    """
    In-memory cache with TTL and LRU eviction.

    Usage:
        cache = SimpleCache(max_size=100)
        cache.set("user-1:100", chats, ttl_seconds=3)
        chats = cache.get("user-1:100")   # None once expired
    """

    def __init__(self, max_size: int = 100, clock: Callable[[], float] = time.monotonic):
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._max_size = max_size
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        """Cached data if present and not expired, None otherwise."""
        entry = self._cache.get(key)

        if entry is None:
            return None

        if self._clock() >= entry.expires_at:
            self._cache.pop(key, None)
            logger.debug(f"Cache EXPIRED: {key}")
            return None

        # Move to end for LRU tracking
        self._cache.move_to_end(key)
        return entry.data

    def set(self, key: str, data: Any, ttl_seconds: float = 60) -> None:
        while len(self._cache) >= self._max_size and key not in self._cache:
            oldest_key = next(iter(self._cache))
            self._cache.pop(oldest_key)
            logger.debug(f"Cache LRU eviction: {oldest_key}")

        self._cache[key] = CacheEntry(data=data, expires_at=self._clock() + ttl_seconds)
        self._cache.move_to_end(key)

