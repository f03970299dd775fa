"""
Simple In-Memory Caching System
TTL key/value store backing the address watch registry and the price feed
"""

import time
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class SimpleCache:
    """
    In-memory cache with TTL support.

    default_ttl=None keeps entries until deleted. With keep_stale=True expired
    entries are not evicted: get() misses on them but get_stale() still returns
    them, for callers that fall back to the last known value.
    """

    def __init__(
        self,
        default_ttl: Optional[float] = 300,
        keep_stale: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self._cache: Dict[str, Dict[str, Any]] = {}
        self.default_ttl = default_ttl
        self.keep_stale = keep_stale
        self._clock = clock
        self.stats = {"hits": 0, "misses": 0, "stale_hits": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def _is_fresh(self, entry: Dict[str, Any], now: float) -> bool:
        return entry["expires_at"] is None or entry["expires_at"] > now

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache"""
        self._cleanup_expired()

        entry = self._cache.get(key)
        if entry is not None and self._is_fresh(entry, self._clock()):
            self.stats["hits"] += 1
            return entry["value"]

        self.stats["misses"] += 1
        return default

    def get_stale(self, key: str, default: Any = None) -> Any:
        """Get value even if its TTL has passed (only meaningful with keep_stale=True)"""
        entry = self._cache.get(key)
        if entry is None:
            return default
        self.stats["stale_hits"] += 1
        return entry["value"]

    def get_age(self, key: str) -> Optional[float]:
        """Seconds since the entry was set, or None if absent"""
        entry = self._cache.get(key)
        if entry is None:
            return None
        return self._clock() - entry["created_at"]

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set value in cache with TTL"""
        if ttl is None:
            ttl = self.default_ttl

        now = self._clock()
        self._cache[key] = {
            "value": value,
            "created_at": now,
            "expires_at": None if ttl is None or ttl <= 0 else now + ttl,
        }
        self.stats["sets"] += 1

    def delete(self, key: str) -> bool:
        """Delete key from cache"""
        if key in self._cache:
            del self._cache[key]
            self.stats["deletes"] += 1
            return True
        return False

    def clear(self) -> None:
        """Clear all cache entries"""
        cleared_count = len(self._cache)
        self._cache.clear()
        self.stats["deletes"] += cleared_count

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired"""
        return self.get(key, None) is not None

    def items(self) -> List[Tuple[str, Any]]:
        """Fresh (key, value) pairs"""
        self._cleanup_expired()
        now = self._clock()
        return [(key, entry["value"]) for key, entry in self._cache.items() if self._is_fresh(entry, now)]

    def evict_expired(self) -> int:
        """Drop expired entries regardless of keep_stale; returns the number removed"""
        return self._remove_expired()

    def _cleanup_expired(self) -> None:
        """Remove expired entries"""
        if not self.keep_stale:
            self._remove_expired()

    def _remove_expired(self) -> int:
        current_time = self._clock()
        expired_keys = [
            key
            for key, entry in self._cache.items()
            if not self._is_fresh(entry, current_time)
        ]

        for key in expired_keys:
            del self._cache[key]
            self.stats["evictions"] += 1
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self.items())

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (
            (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        )

        return {
            **self.stats,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self._cache),
        }
