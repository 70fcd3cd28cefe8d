"""Replay-detection cache for single-use assertion identifiers.

Three implementations share one small async interface:

- ``RedisDedupCache``: shared across gateway instances, ``SET NX EX``.
- ``LocalDedupCache``: in-process map with per-key expiry, persisted to disk
  so a restart reloads identifiers whose window has not closed yet.
- ``FallbackDedupCache``: Redis first, local cache when Redis errors.

Entries are only ever removed by expiry.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol

from redis.exceptions import RedisError

from hostgate.logging import get_logger
from hostgate.service.fs import atomic_write_text
from hostgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

DEFAULT_KEY_PREFIX = "hostgate:assertion:jti:"


class DedupCache(Protocol):
    async def put(self, key: str, ttl_seconds: float) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def put_if_absent(self, key: str, ttl_seconds: float) -> bool: ...


class RedisDedupCache:
    def __init__(
        self,
        cache: RedisCache | SyncRedisCache,
        *,
        prefix: str = DEFAULT_KEY_PREFIX,
    ) -> None:
        self.cache = cache
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def put(self, key: str, ttl_seconds: float) -> None:
        await self.cache.set(self._key(key), ttl_seconds)

    async def exists(self, key: str) -> bool:
        return await self.cache.exists(self._key(key))

    async def put_if_absent(self, key: str, ttl_seconds: float) -> bool:
        return await self.cache.set_if_absent(self._key(key), ttl_seconds)

    def verify_connection(self) -> None:
        self.cache.verify_connection()


class LocalDedupCache:
    """Single-process dedup cache with expiry, optionally persisted to disk."""

    def __init__(
        self,
        state_path: Optional[Path] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state_path = Path(state_path) if state_path else None
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        if self.state_path:
            self._load()

    def _load(self) -> None:
        assert self.state_path is not None
        if not self.state_path.exists():
            return
        try:
            raw = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("dedup_state_load_failed", path=str(self.state_path), error=str(exc))
            return
        now = self._clock()
        loaded = {
            str(key): float(expires_at)
            for key, expires_at in raw.items()
            if float(expires_at) > now
        }
        self._entries.update(loaded)
        logger.info("dedup_state_loaded", entries=len(loaded))

    def _persist(self) -> None:
        # caller holds self._lock
        if not self.state_path:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            atomic_write_text(self.state_path, json.dumps(self._entries))
        except OSError as exc:
            logger.error("dedup_state_persist_failed", path=str(self.state_path), error=str(exc))

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]

    def _live(self, key: str, now: float) -> bool:
        expires_at = self._entries.get(key)
        return expires_at is not None and expires_at > now

    def _record(self, key: str, ttl_seconds: float, *, only_if_absent: bool) -> bool:
        # the liveness check and the disk write share one lock hold
        with self._lock:
            now = self._clock()
            if only_if_absent and self._live(key, now):
                return False
            self._purge_expired(now)
            self._entries[key] = now + max(1.0, float(ttl_seconds))
            self._persist()
            return True

    async def _run_record(self, key: str, ttl_seconds: float, *, only_if_absent: bool) -> bool:
        if self.state_path is None:
            return self._record(key, ttl_seconds, only_if_absent=only_if_absent)
        # disk write off the event loop
        return await asyncio.to_thread(
            self._record, key, ttl_seconds, only_if_absent=only_if_absent
        )

    async def put(self, key: str, ttl_seconds: float) -> None:
        await self._run_record(key, ttl_seconds, only_if_absent=False)

    def _exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock())

    async def exists(self, key: str) -> bool:
        if self.state_path is None:
            return self._exists(key)
        # a persisting writer may hold the lock
        return await asyncio.to_thread(self._exists, key)

    async def put_if_absent(self, key: str, ttl_seconds: float) -> bool:
        return await self._run_record(key, ttl_seconds, only_if_absent=True)

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for expires_at in self._entries.values() if expires_at > now)

    def verify_connection(self) -> None:
        return None


class FallbackDedupCache:
    """Redis-backed cache that degrades to the local cache on Redis errors.

    Every identifier accepted through Redis is mirrored locally, so an outage
    that starts after acceptance still sees it on this instance.
    """

    def __init__(self, primary: RedisDedupCache, fallback: LocalDedupCache) -> None:
        self.primary = primary
        self.fallback = fallback

    def _degraded(self, operation: str, exc: Exception) -> None:
        logger.warning(
            "dedup_cache_degraded",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )

    async def put(self, key: str, ttl_seconds: float) -> None:
        await self.fallback.put(key, ttl_seconds)
        try:
            await self.primary.put(key, ttl_seconds)
        except (RedisError, OSError) as exc:
            self._degraded("put", exc)

    async def exists(self, key: str) -> bool:
        try:
            if await self.primary.exists(key):
                return True
        except (RedisError, OSError) as exc:
            self._degraded("exists", exc)
        return await self.fallback.exists(key)

    async def put_if_absent(self, key: str, ttl_seconds: float) -> bool:
        try:
            created = await self.primary.put_if_absent(key, ttl_seconds)
        except (RedisError, OSError) as exc:
            self._degraded("put_if_absent", exc)
            return await self.fallback.put_if_absent(key, ttl_seconds)
        if not created:
            return False
        # Local mirror; a False here means Redis lost a key this instance recorded
        if not await self.fallback.put_if_absent(key, ttl_seconds):
            logger.warning("dedup_cache_redis_missing_key", key=key)
            return False
        return True

    def verify_connection(self) -> None:
        self.primary.verify_connection()


__all__ = [
    "DedupCache",
    "RedisDedupCache",
    "LocalDedupCache",
    "FallbackDedupCache",
    "DEFAULT_KEY_PREFIX",
]
