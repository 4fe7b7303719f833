from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from authlane.config import Settings, get_settings, reset_settings_cache
from authlane.logging import get_logger
from authlane.service.auth import AuthService
from authlane.service.passwords import PasswordHashing
from authlane.service.rate_limit import RateLimiter
from authlane.service.tokens import TokenCodec
from authlane.storage.memory import MemoryStore
from authlane.storage.memory_cache import MemoryCache
from authlane.storage.postgres import PostgresStore
from authlane.storage.redis_cache import RedisCache

logger = get_logger(__name__)

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a store URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlsplit(url)
        if not parsed.password:
            return url
        host = parsed.hostname or ""
        if parsed.port:
            host = f"{host}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{host}"
        return urlunsplit(parsed._replace(netloc=netloc))
    except ValueError:
        return "***unparseable-url***"


class ShutdownError(Exception):
    """One or more resources failed to close; ``errors`` lists every failure."""

    def __init__(self, errors: List[Tuple[str, BaseException]]):
        self.errors = errors
        summary = "; ".join(f"{name}: {exc}" for name, exc in errors)
        super().__init__(f"shutdown failed: {summary}")


class Runtime:
    """Holds singleton store and service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
            )
            raise

        self.cache = self._build_cache()
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.passwords = PasswordHashing(time_cost=self.settings.password_hash_cost)
        self.auth = AuthService(self.store, self.cache, self.codec, self.passwords)
        self.rate_limiter = RateLimiter(self.cache)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            access_ttl_seconds=self.codec.access_ttl_seconds,
            refresh_ttl_seconds=self.codec.refresh_ttl_seconds,
        )

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the token denylist and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; the denylist and rate "
                "limits are process-local only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def health(self) -> Dict[str, Any]:
        """Ping both stores concurrently and report pass/fail with per-store errors."""

        async def _ping_store() -> None:
            await asyncio.to_thread(self.store.ping)

        results = await asyncio.gather(
            asyncio.wait_for(_ping_store(), HEALTH_CHECK_TIMEOUT_SECONDS),
            asyncio.wait_for(self.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS),
            return_exceptions=True,
        )
        errors = {
            name: str(result) or type(result).__name__
            for name, result in zip(("credential_store", "revocation_store"), results)
            if isinstance(result, Exception)
        }
        if errors:
            logger.warning("health_check_failed", errors=errors)
            return {"status": "fail", "errors": errors}
        return {"status": "pass"}

    async def close(self) -> None:
        """Close both stores concurrently; raise ShutdownError listing every failure."""
        results = await asyncio.gather(
            asyncio.to_thread(self.store.close),
            self.cache.close(),
            return_exceptions=True,
        )
        failures = [
            (name, result)
            for name, result in zip(("credential_store", "revocation_store"), results)
            if isinstance(result, BaseException)
        ]
        if failures:
            for name, exc in failures:
                logger.error("runtime_close_failed", resource=name, error=str(exc))
            raise ShutdownError(failures)
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, building it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            previous = runtime
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                loop.create_task(previous.close())
            else:
                try:
                    asyncio.run(previous.close())
                except ShutdownError as exc:
                    logger.warning("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
