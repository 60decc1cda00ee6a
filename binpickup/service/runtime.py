from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from binpickup.config import get_settings, reset_settings_cache
from binpickup.logging import get_logger
from binpickup.service.auth import AuthService
from binpickup.service.login_guard import LoginGuard
from binpickup.service.pickups import PickupService
from binpickup.service.tokens import TokenService
from binpickup.service.users import UserAdminService
from binpickup.storage.memory import MemoryStore
from binpickup.storage.postgres import PostgresStore
from binpickup.storage.redis_cache import NullCache, RedisCache, RevocationCache

logger = get_logger(__name__)


def _redact_url(url: Optional[str]) -> Optional[str]:
    """Hide the password in a connection URL before it is logged.

    ``redis://:hunter2@cache:6379/0`` becomes ``redis://:***@cache:6379/0``.
    """
    if not url:
        return url
    parsed = urlsplit(url)
    if parsed.password is None:
        return url
    userinfo, _, hostinfo = parsed.netloc.rpartition("@")
    user = userinfo.partition(":")[0]
    return urlunsplit(parsed._replace(netloc=f"{user}:***@{hostinfo}"))


class Runtime:
    """Wires the store, cache and services that the routes share."""

    def __init__(self, *, cache: Optional[RevocationCache] = None):
        self.settings = get_settings()
        self.store = self._build_store()
        self.cache: RevocationCache = cache if cache is not None else self._build_cache()
        self.tokens = TokenService(self.settings, self.cache)
        self.guard = LoginGuard(self.store, self.settings)
        self.auth = AuthService(self.store, self.tokens, self.guard, self.settings)
        self.pickups = PickupService(self.store)
        self.users = UserAdminService(self.store)
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache.available,
            test_mode=self.settings.test_mode,
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            max_login_attempts=self.settings.max_login_attempts,
        )

    def _build_store(self):
        if self.settings.use_memory_store:
            return MemoryStore(fs_root=self.settings.data_root)
        try:
            return PostgresStore(
                self.settings.database_url,
                fs_root=self.settings.data_root,
                timeout=self.settings.auth_timeout_seconds,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_redact_url(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _build_cache(self) -> RevocationCache:
        if not self.settings.redis_url:
            logger.warning(
                "redis_disabled",
                message="No REDIS_URL configured; access-token revocation is disabled "
                "and rate limits are in-process only.",
            )
            return NullCache()
        cache = RedisCache(self.settings.redis_url)
        try:
            cache.verify_connection()
        except Exception as exc:
            # keep the client: calls degrade until Redis comes back
            logger.warning(
                "redis_unreachable_at_startup",
                redis_url=_redact_url(self.settings.redis_url),
                error=str(exc),
            )
        return cache

    async def start(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.open()

    async def stop(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, cache: Optional[RevocationCache] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(cache=cache)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> bool:
    """Token-bucket rate limit that still holds when Redis is unavailable."""
    if limit <= 0:
        return True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    result = await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    if result is not None:
        return result
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        if len(runtime._local_rate_limits) > 10000:
            stale = now - timedelta(seconds=window_seconds)
            for k in [k for k, (_, ts) in runtime._local_rate_limits.items() if ts < stale]:
                runtime._local_rate_limits.pop(k, None)
    return allowed
