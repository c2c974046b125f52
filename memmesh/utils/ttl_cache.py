"""
Time-bounded cache for search results with an explicit sweeper lifecycle.
"""

import threading
from typing import Any, Optional, Tuple

from cachetools import TTLCache

from .config import CacheConfig
from .logging_config import get_logger

logger = get_logger(__name__)

CacheKey = Tuple[str, str, int]


def cache_key(user_id: str, query: str, limit: int) -> CacheKey:
    return (user_id, ' '.join(query.lower().split()), int(limit))


class SearchCache:
    """Thread-safe TTLCache keyed by (user_id, normalized query, limit).

    Expired entries are never returned. ``start`` runs a daemon thread that
    evicts them periodically so memory is released for owners who stop
    searching.
    """

    def __init__(self, config: CacheConfig):
        self.config = config
        self._cache = TTLCache(maxsize=config.maxsize, ttl=config.ttl_seconds)
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._sweeper is not None:
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name='search-cache-sweeper', daemon=True)
        self._sweeper.start()
        logger.debug(f'Search cache sweeper started (interval {self.config.sweep_interval_seconds}s)')

    def stop(self) -> None:
        if self._sweeper is None:
            return
        self._stop_event.set()
        self._sweeper.join(timeout=max(1.0, self.config.sweep_interval_seconds))
        self._sweeper = None
        logger.debug('Search cache sweeper stopped')

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.config.sweep_interval_seconds):
            self.expire()

    def expire(self) -> None:
        with self._lock:
            self._cache.expire()

    def get(self, key: CacheKey) -> Optional[Any]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: CacheKey, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def invalidate_owner(self, user_id: str) -> int:
        """Drop every cached entry of one owner. Returns the number removed."""
        with self._lock:
            stale = [key for key in list(self._cache.keys()) if key[0] == user_id]
            for key in stale:
                self._cache.pop(key, None)
        if stale:
            logger.debug(f'Invalidated {len(stale)} cached searches for user {user_id}')
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
