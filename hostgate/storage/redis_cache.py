from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for short-lived keys with expiry."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(ttl_seconds: float) -> int:
        # Redis rejects zero or negative expiries
        return max(1, int(ttl_seconds))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
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

    async def set_if_absent(self, key: str, ttl_seconds: float) -> bool:
        """Atomic SET NX EX; True when this call created the key."""
        created = await self.client.set(key, "1", ex=self._ttl_seconds(ttl_seconds), nx=True)
        return bool(created)

    async def set(self, key: str, ttl_seconds: float) -> None:
        await self.client.set(key, "1", ex=self._ttl_seconds(ttl_seconds))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    when every test runs under its own ``asyncio.run``, but exposes the same
    awaitable methods as ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def set_if_absent(self, key: str, ttl_seconds: float) -> bool:
        created = self.client.set(
            key, "1", ex=RedisCache._ttl_seconds(ttl_seconds), nx=True
        )
        return bool(created)

    async def set(self, key: str, ttl_seconds: float) -> None:
        self.client.set(key, "1", ex=RedisCache._ttl_seconds(ttl_seconds))

    async def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()


__all__ = ["RedisCache", "SyncRedisCache"]
