from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from flamingo.config import Settings
from flamingo.logging import get_logger
from flamingo.service.auth import AuthService
from flamingo.service.background import BackgroundTaskRunner
from flamingo.service.email import EmailService
from flamingo.service.permissions import PermissionEvaluator
from flamingo.service.projects import ProjectService
from flamingo.service.tokens import TokenService
from flamingo.storage.memory import MemoryStore
from flamingo.storage.postgres import PostgresStore
from flamingo.storage.redis_cache import RedisCache

logger = get_logger(__name__)

SHUTDOWN_DRAIN_SECONDS = 5.0
# local buckets are swept for refilled entries once the table grows past this
LOCAL_BUCKET_SWEEP_THRESHOLD = 1024


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    user = parsed.username or ""
    netloc = f"{user}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the service instances for one FastAPI app."""

    def __init__(self, settings: Settings):
        self.settings = settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if settings.use_memory_store
                else PostgresStore(settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if settings.use_memory_store else "postgres",
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and sign-in state; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.background = BackgroundTaskRunner()
        self.email = EmailService.from_settings(settings)
        self.tokens = TokenService(self.store, settings)
        self.auth = AuthService(
            self.store,
            self.tokens,
            settings,
            email=self.email,
            background=self.background,
            cache=self.cache,
        )
        self.permissions = PermissionEvaluator(self.store)
        self.projects = ProjectService(self.store, self.permissions)

        self._local_rate_limits: Dict[str, Tuple[float, float, float]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type="memory" if settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            google_configured=self.auth.google_configured,
        )

    async def start(self) -> None:
        await self.store.start()

    async def close(self) -> None:
        await self.background.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
        if self.cache:
            await self.cache.close()
        await self.store.close()
        logger.info("runtime_closed", background_failures=self.background.failures)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token bucket check that works with or without Redis.

    ``limit`` tokens refill evenly across ``window_seconds``. Without a cache
    the buckets live in this process only.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        buckets = runtime._local_rate_limits
        tokens, last_ts, _ = buckets.get(key, (float(limit), now, now))
        tokens = min(float(limit), tokens + max(0.0, now - last_ts) * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + (float(limit) - tokens) / refill_rate
        buckets[key] = (tokens, now, full_at)
        if len(buckets) > LOCAL_BUCKET_SWEEP_THRESHOLD:
            _sweep_full_buckets(buckets, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


def _sweep_full_buckets(buckets: Dict[str, Tuple[float, float, float]], now: float) -> None:
    """Drop buckets that have refilled; a missing key starts full anyway."""
    for key in [k for k, (_, _, full_at) in buckets.items() if full_at <= now]:
        del buckets[key]
