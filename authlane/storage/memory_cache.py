from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from authlane.logging import get_logger

logger = get_logger(__name__)


class MemoryCache:
    """Process-local stand-in for RedisCache.

    Mirrors the Redis key semantics the services rely on: plain keys with a
    TTL and sorted collections keyed by float score. Every public method
    completes without awaiting while holding the lock, so each call is atomic
    with respect to other tasks and threads.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, str] = {}
        self._scored: Dict[str, Dict[str, float]] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.RLock()

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= self._clock():
            self._values.pop(key, None)
            self._scored.pop(key, None)
            self._expires_at.pop(key, None)

    def _sweep_expired(self) -> None:
        now = self._clock()
        for key in [k for k, deadline in self._expires_at.items() if deadline <= now]:
            self._values.pop(key, None)
            self._scored.pop(key, None)
            del self._expires_at[key]

    def _set_expiry(self, key: str, ttl_seconds: float) -> None:
        self._expires_at[key] = self._clock() + max(1.0, float(ttl_seconds))

    async def set_with_ttl(self, key: str, ttl_seconds: int, value: str = "1") -> None:
        with self._lock:
            self._sweep_expired()
            self._values[key] = value
            self._set_expiry(key, ttl_seconds)

    async def exists(self, key: str) -> bool:
        with self._lock:
            self._purge_if_expired(key)
            return key in self._values or bool(self._scored.get(key))

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)
            self._scored.pop(key, None)
            self._expires_at.pop(key, None)

    async def add_scored(self, key: str, score: float, member: str) -> None:
        with self._lock:
            self._purge_if_expired(key)
            self._scored.setdefault(key, {})[member] = score

    async def remove_scored_below(self, key: str, max_score: float) -> int:
        with self._lock:
            return self._remove_below(key, max_score)

    def _remove_below(self, key: str, max_score: float) -> int:
        self._purge_if_expired(key)
        members = self._scored.get(key)
        if not members:
            return 0
        stale = [member for member, score in members.items() if score < max_score]
        for member in stale:
            del members[member]
        return len(stale)

    async def count_scored_above(self, key: str, min_score: float) -> int:
        with self._lock:
            self._purge_if_expired(key)
            members = self._scored.get(key) or {}
            return sum(1 for score in members.values() if score >= min_score)

    async def oldest_score(self, key: str) -> Optional[float]:
        with self._lock:
            self._purge_if_expired(key)
            members = self._scored.get(key)
            return min(members.values()) if members else None

    async def expire_key(self, key: str, ttl_seconds: int) -> None:
        with self._lock:
            if key in self._values or key in self._scored:
                self._set_expiry(key, ttl_seconds)

    async def admit_scored(
        self,
        key: str,
        *,
        now: float,
        window_seconds: float,
        limit: int,
        member: str,
        ttl_seconds: int,
    ) -> Tuple[bool, int, Optional[float]]:
        """Run one sliding-window step; returns (allowed, count, oldest_score)."""
        with self._lock:
            self._sweep_expired()
            self._remove_below(key, now - window_seconds)
            members = self._scored.setdefault(key, {})
            count = len(members)
            if count >= limit:
                oldest = min(members.values()) if members else None
                return False, count, oldest
            members[member] = now
            self._set_expiry(key, ttl_seconds)
            return True, count + 1, min(members.values())

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            dropped = len(self._values) + len(self._scored)
            self._values.clear()
            self._scored.clear()
            self._expires_at.clear()
        logger.debug("memory_cache_closed", keys=dropped)
