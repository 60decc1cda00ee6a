from __future__ import annotations

import hashlib
import time
from typing import Optional, Protocol, runtime_checkable

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from binpickup.logging import get_logger

logger = get_logger(__name__)

DENYLIST_PREFIX = "auth:access:denylist:"


def denylist_key(token: str) -> str:
    """Denylist key for an access token; the raw token never reaches Redis."""
    digest = hashlib.sha256(token.encode()).hexdigest()
    return f"{DENYLIST_PREFIX}{digest}"


@runtime_checkable
class RevocationCache(Protocol):
    """Key/value capability used for the access-token denylist and rate limits.

    Implementations never raise on backend failure: reads degrade to "absent"
    and writes report ``False``. ``available`` reflects the last observed
    backend state for health reporting; it never gates calls.
    """

    @property
    def available(self) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Optional[bool]: ...

    async def close(self) -> None: ...


class NullCache:
    """Cache stand-in used when no Redis is configured."""

    @property
    def available(self) -> bool:
        return False

    async def get(self, key: str) -> Optional[str]:
        return None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        return False

    async def delete(self, key: str) -> bool:
        return False

    async def exists(self, key: str) -> bool:
        return False

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Optional[bool]:
        return None

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None


class RedisCache:
    """Thin Redis wrapper for the token denylist and rate limits."""

    # KEYS[1] bucket hash; ARGV: now, refill per second, capacity, cost.
    # Returns 1 when the cost was taken from the bucket, 0 otherwise.
    _TOKEN_BUCKET_SCRIPT = """
local now, rate, capacity, cost = tonumber(ARGV[1]), tonumber(ARGV[2]), tonumber(ARGV[3]), tonumber(ARGV[4])
local state = redis.call('HMGET', KEYS[1], 'level', 'at')
local level = tonumber(state[1]) or capacity
local at = tonumber(state[2]) or now
level = math.min(capacity, level + math.max(0, now - at) * rate)
local granted = 0
if level >= cost then
  level = level - cost
  granted = 1
end
redis.call('HSET', KEYS[1], 'level', level, 'at', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(capacity / rate)))
return granted
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._available = True

    @property
    def available(self) -> bool:
        return self._available

    def _degrade(self, operation: str, key: str, exc: Exception) -> None:
        if self._available:
            logger.warning(
                "redis_cache_degraded",
                operation=operation,
                key_prefix=key.rsplit(":", 1)[0],
                error=str(exc),
            )
        self._available = False

    def _recover(self) -> None:
        if not self._available:
            logger.info("redis_cache_recovered")
        self._available = True

    def verify_connection(self) -> None:
        """Ping with a throwaway sync client; the async pool stays loop-free."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self.client.get(key)
        except (RedisError, OSError) as exc:
            self._degrade("get", key, exc)
            return None
        self._recover()
        return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        if ttl_seconds is not None and ttl_seconds <= 0:
            return False
        try:
            await self.client.set(key, value, ex=ttl_seconds)
        except (RedisError, OSError) as exc:
            self._degrade("set", key, exc)
            return False
        self._recover()
        return True

    async def delete(self, key: str) -> bool:
        try:
            removed = await self.client.delete(key)
        except (RedisError, OSError) as exc:
            self._degrade("delete", key, exc)
            return False
        self._recover()
        return bool(removed)

    async def exists(self, key: str) -> bool:
        try:
            found = await self.client.exists(key)
        except (RedisError, OSError) as exc:
            self._degrade("exists", key, exc)
            return False
        self._recover()
        return bool(found)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so client-supplied parts cannot collide."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Optional[bool]:
        """Consume from a Redis token bucket; ``None`` when Redis is unreachable."""
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        try:
            granted = await self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            )
        except (RedisError, OSError) as exc:
            self._degrade("rate_limit", safe_key, exc)
            return None
        self._recover()
        return bool(int(granted))

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
