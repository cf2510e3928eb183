from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from tokenguard.logging import get_logger

logger = get_logger(__name__)


class RedisCache:
    """Shared cache tier so revocations and attempt counters span processes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Increment and anchor the window TTL on the first hit only
    _INCR_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
elseif redis.call('PTTL', KEYS[1]) < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        key_prefix: str = "tokenguard:",
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        if ttl_ms <= 0:
            await self.client.delete(self._key(key))
            return
        await self.client.set(self._key(key), value, px=int(ttl_ms))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*(self._key(k) for k in keys)))

    async def incr(self, key: str, ttl_ms: int) -> int:
        result = await self.client.eval(
            self._INCR_SCRIPT, 1, self._key(key), int(ttl_ms)
        )
        return int(result)

    async def clear(self) -> None:
        """Remove every key under this cache's prefix."""
        async for key in self.client.scan_iter(match=f"{self.key_prefix}*"):
            await self.client.delete(key)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        key_prefix: str = "tokenguard:",
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        if ttl_ms <= 0:
            self.client.delete(self._key(key))
            return
        self.client.set(self._key(key), value, px=int(ttl_ms))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.client.delete(*(self._key(k) for k in keys)))

    async def incr(self, key: str, ttl_ms: int) -> int:
        result = self.client.eval(
            RedisCache._INCR_SCRIPT, 1, self._key(key), int(ttl_ms)
        )
        return int(result)

    async def clear(self) -> None:
        for key in self.client.scan_iter(match=f"{self.key_prefix}*"):
            self.client.delete(key)

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
