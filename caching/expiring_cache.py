"""
Expiring Cache
Keyed in-memory store with per-entry TTL, owned by the service that uses it
"""

import time
import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class ExpiringCache:
    """In-memory cache with TTL support and an atomic claim for debouncing"""

    def __init__(self, default_ttl: float = 300, clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[str, Dict[str, Any]] = {}
        self.default_ttl = default_ttl
        self._clock = clock
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache"""
        entry = self._cache.get(key)
        if entry is not None:
            if entry["expires_at"] > self._clock():
                self.stats["hits"] += 1
                return entry["value"]
            # Expired
            del self._cache[key]
            self.stats["evictions"] += 1

        self.stats["misses"] += 1
        return default

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set value in cache with TTL"""
        if ttl is None:
            ttl = self.default_ttl
        now = self._clock()
        self._cache[key] = {"value": value, "created_at": now, "expires_at": now + ttl}
        self.stats["sets"] += 1
        if len(self._cache) % 500 == 0:
            self._cleanup_expired()

    def delete(self, key: str) -> bool:
        """Delete key from cache"""
        if key in self._cache:
            del self._cache[key]
            self.stats["deletes"] += 1
            return True
        return False

    def claim(self, key: str, ttl: Optional[float] = None) -> bool:
        """Mark key as taken for ttl; False if it is already taken

        No await between check and set, so it is atomic within one event loop.
        """
        if self.get(key) is not None:
            logger.debug(f"Debounced repeated action: {key}")
            return False
        self.set(key, True, ttl)
        return True

    def clear(self) -> None:
        cleared_count = len(self._cache)
        self._cache.clear()
        self.stats["deletes"] += cleared_count

    def _cleanup_expired(self) -> None:
        """Remove expired entries"""
        current_time = self._clock()
        expired_keys = [key for key, entry in self._cache.items() if entry["expires_at"] <= current_time]
        for key in expired_keys:
            del self._cache[key]
            self.stats["evictions"] += 1

    def __len__(self) -> int:
        self._cleanup_expired()
        return len(self._cache)
