from __future__ import annotations

from typing import Any, Awaitable, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authlane.logging import get_logger
from authlane.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for the token denylist and rate-limit windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Lua sliding window: prune, count, then admit atomically
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = ARGV[1]
local window_start = ARGV[2]
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local ttl = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. window_start)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  return {0, count, oldest[2] or false}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, ttl)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return {1, count + 1, oldest[2]}
"""

    def __init__(
        self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime relies on it."""
        # A short-lived sync client keeps the async client off a temporary event loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, op: str, command: Awaitable[Any]) -> Any:
        try:
            return await command
        except RedisError as exc:
            logger.warning("redis_command_failed", op=op, error=str(exc))
            raise StoreUnavailable(f"redis {op} failed", {"op": op}) from exc

    async def set_with_ttl(self, key: str, ttl_seconds: int, value: str = "1") -> None:
        await self._run(
            "set", self.client.set(key, value, ex=max(1, int(ttl_seconds)))
        )

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", self.client.exists(key)))

    async def delete(self, key: str) -> None:
        await self._run("delete", self.client.delete(key))

    async def add_scored(self, key: str, score: float, member: str) -> None:
        await self._run("zadd", self.client.zadd(key, {member: score}))

    async def remove_scored_below(self, key: str, max_score: float) -> int:
        removed = await self._run(
            "zremrangebyscore",
            self.client.zremrangebyscore(key, "-inf", f"({max_score!r}"),
        )
        return int(removed or 0)

    async def count_scored_above(self, key: str, min_score: float) -> int:
        count = await self._run("zcount", self.client.zcount(key, min_score, "+inf"))
        return int(count or 0)

    async def oldest_score(self, key: str) -> Optional[float]:
        entries = await self._run(
            "zrange", self.client.zrange(key, 0, 0, withscores=True)
        )
        if not entries:
            return None
        _, score = entries[0]
        return float(score)

    async def expire_key(self, key: str, ttl_seconds: int) -> None:
        await self._run("expire", self.client.expire(key, max(1, int(ttl_seconds))))

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
        """Run one sliding-window step in a single script call.

        Returns ``(allowed, count, oldest_score)`` where ``count`` includes the
        newly admitted member.
        """
        allowed, count, oldest = await self._run(
            "sliding_window",
            self._sliding_window(
                keys=[key],
                args=[
                    repr(float(now)),
                    repr(float(now) - float(window_seconds)),
                    int(limit),
                    member,
                    max(1, int(ttl_seconds)),
                ],
            ),
        )
        oldest_score = float(oldest) if oldest is not None else None
        return bool(int(allowed)), int(count), oldest_score

    async def ping(self) -> None:
        await self._run("ping", self.client.ping())

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting the runtime."""
        await self.client.aclose()
