from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple

from authlane.logging import get_logger
from authlane.service.errors import RateLimitedError
from authlane.storage.errors import StoreUnavailable

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60
# Keys outlive the window so a burst at its edge is still counted
KEY_TTL_GRACE_SECONDS = 60


class SlidingWindowStore(Protocol):
    async def admit_scored(
        self,
        key: str,
        *,
        now: float,
        window_seconds: float,
        limit: int,
        member: str,
        ttl_seconds: int,
    ) -> Tuple[bool, int, Optional[float]]: ...

    async def remove_scored_below(self, key: str, max_score: float) -> int: ...

    async def count_scored_above(self, key: str, min_score: float) -> int: ...


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int
    limit: int = 0


class RateLimiter:
    """Sliding-window log admission control backed by a sorted-set store."""

    def __init__(
        self,
        store: SlidingWindowStore,
        *,
        clock: Callable[[], float] = time.time,
        key_prefix: str = "ratelimit:",
    ) -> None:
        self.store = store
        self._clock = clock
        self._key_prefix = key_prefix

    def _store_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    @staticmethod
    def _normalize_window(key: str, window_seconds: int) -> int:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            return DEFAULT_WINDOW_SECONDS
        return window_seconds

    async def allow(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(allowed=True, remaining=0, retry_after=0, limit=limit)
        window_seconds = self._normalize_window(key, window_seconds)
        now = self._clock()
        member = f"{time.time_ns()}-{uuid.uuid4().hex}"
        allowed, count, oldest = await self.store.admit_scored(
            self._store_key(key),
            now=now,
            window_seconds=window_seconds,
            limit=limit,
            member=member,
            ttl_seconds=window_seconds + KEY_TTL_GRACE_SECONDS,
        )
        if allowed:
            return RateLimitDecision(
                allowed=True, remaining=max(0, limit - count), retry_after=0, limit=limit
            )
        retry_after = window_seconds
        if oldest is not None:
            retry_after = max(0, math.ceil(window_seconds - (now - oldest)))
        logger.info("rate_limit_exceeded", key=key, limit=limit, retry_after=retry_after)
        return RateLimitDecision(
            allowed=False, remaining=0, retry_after=retry_after, limit=limit
        )

    async def get_remaining_requests(
        self, key: str, limit: int, window_seconds: int
    ) -> int:
        if limit <= 0:
            return 0
        window_seconds = self._normalize_window(key, window_seconds)
        window_start = self._clock() - window_seconds
        store_key = self._store_key(key)
        await self.store.remove_scored_below(store_key, window_start)
        count = await self.store.count_scored_above(store_key, window_start)
        return max(0, limit - count)

    async def enforce(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        """Admit the call or raise RateLimitedError.

        A revocation store outage is logged and admits the request.
        """
        try:
            decision = await self.allow(key, limit, window_seconds)
        except StoreUnavailable as exc:
            logger.error("rate_limit_store_unavailable", key=key, error=str(exc))
            return RateLimitDecision(allowed=True, remaining=limit, retry_after=0, limit=limit)
        if not decision.allowed:
            raise RateLimitedError(
                "rate limit exceeded",
                retry_after=decision.retry_after,
                limit=limit,
                detail={"retry_after": decision.retry_after},
            )
        return decision
