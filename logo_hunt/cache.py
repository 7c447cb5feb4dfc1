"""
Simple in-memory caching for read-heavy endpoints. The leaderboard is polled by every
dashboard screen, so it is served from here between writes.
"""

import logging
import time
from typing import Any, Optional, Dict
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

LEADERBOARD_KEY = "leaderboard"


@dataclass
class CacheEntry:
    """A single cache entry with value and expiration"""
    value: Any
    expires_at: float
    created_at: float


class MemoryCache:
    """Thread-safe in-memory cache with TTL support"""

    def __init__(self):
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'evictions': 0
        }

    def get(self, key: str) -> Optional[Any]:
        """Get a value from cache, return None if not found or expired"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None
            if time.time() > entry.expires_at:
                del self._cache[key]
                self._stats['misses'] += 1
                self._stats['evictions'] += 1
                return None
            self._stats['hits'] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float = 60) -> None:
        with self._lock:
            now = time.time()
            self._cache[key] = CacheEntry(value=value, expires_at=now + ttl_seconds, created_at=now)
            self._stats['sets'] += 1

    def delete(self, key: str) -> bool:
        """Delete a key from cache, return True if existed"""
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._stats['evictions'] += len(self._cache)
            self._cache.clear()

    def cleanup_expired(self) -> int:
        """Remove all expired entries, return count of removed entries"""
        with self._lock:
            now = time.time()
            expired_keys = [k for k, e in self._cache.items() if now > e.expires_at]
            for key in expired_keys:
                del self._cache[key]
            self._stats['evictions'] += len(expired_keys)
            return len(expired_keys)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total_requests = self._stats['hits'] + self._stats['misses']
            hit_rate = (self._stats['hits'] / total_requests * 100) if total_requests > 0 else 0
            return {
                **self._stats,
                'total_requests': total_requests,
                'hit_rate_percent': round(hit_rate, 2),
                'cache_size': len(self._cache),
            }


# Global cache instance
_cache = MemoryCache()


def get_cache() -> MemoryCache:
    return _cache


_leaderboard_generation = 0


def leaderboard_generation() -> int:
    """Counter bumped by every invalidation; read it before querying the rows."""
    return _leaderboard_generation


def cache_leaderboard(leaderboard: list, ttl_seconds: float = 30, generation: Optional[int] = None) -> bool:
    """Cache the leaderboard unless it was invalidated since `generation` was read."""
    with _cache._lock:
        if generation is not None and generation != _leaderboard_generation:
            return False
        _cache.set(LEADERBOARD_KEY, leaderboard, ttl_seconds)
        return True


def get_cached_leaderboard() -> Optional[list]:
    return _cache.get(LEADERBOARD_KEY)


def invalidate_leaderboard_cache() -> None:
    """Drop the cached leaderboard after any write that changes it."""
    global _leaderboard_generation
    with _cache._lock:
        _leaderboard_generation += 1
        dropped = _cache.delete(LEADERBOARD_KEY)
    if dropped:
        logger.debug("leaderboard_cache_invalidated")
