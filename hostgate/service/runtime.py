from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from pathlib import Path
from typing import Optional

from hostgate.config import Settings, StoreBackend, TokenGateMode, get_settings, reset_settings_cache
from hostgate.logging import get_logger, mask_url_password
from hostgate.service.assertions import AssertionVerifier, load_rsa_public_key
from hostgate.service.auth import OperatorAuthenticator, RequestAuthenticator
from hostgate.service.errors import ConfigurationError
from hostgate.service.pending_sweeper import PendingWriteSweeper
from hostgate.service.periodic import PeriodicTask
from hostgate.service.records import RecordService
from hostgate.service.retention import RetentionSweeper
from hostgate.service.tokens import (
    AssertionTokenGate,
    SharedSecretTokenGate,
    TokenGate,
    TokenIssuer,
    load_rsa_private_key,
)
from hostgate.storage.base import TenantStore
from hostgate.storage.dedup import (
    DedupCache,
    FallbackDedupCache,
    LocalDedupCache,
    RedisDedupCache,
)
from hostgate.storage.file_store import FileTenantStore
from hostgate.storage.pending import PendingWriteQueue
from hostgate.storage.postgres import PostgresTenantStore
from hostgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class Runtime:
    """Builds every gateway component once from ``Settings``.

    Invalid deployments fail here with ``ConfigurationError`` rather than on
    the first request.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.fs_root = Path(self.settings.shared_fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            gate_mode=self.settings.token_gate_mode.value,
            test_mode=self.settings.test_mode,
        )

        self.store: TenantStore = self._build_store()
        self.cache: RedisCache | SyncRedisCache | None = None
        self.dedup: DedupCache = self._build_dedup()

        self.issuer = self._build_issuer()
        self.verifier: Optional[AssertionVerifier] = None
        self.gate: TokenGate = self._build_gate()
        self.authenticator = RequestAuthenticator(self.issuer)
        self.operator_auth = OperatorAuthenticator(self.settings.effective_operator_api_key)
        if not self.operator_auth.configured:
            logger.warning("operator_key_not_configured")

        self.pending = PendingWriteQueue(self.fs_root)
        self.records = RecordService(
            self.store,
            self.pending,
            timeout_seconds=self.settings.storage_timeout_seconds,
        )
        self.pending_sweeper = PendingWriteSweeper(
            self.pending,
            self.store,
            max_attempts=self.settings.pending_max_attempts,
            timeout_seconds=self.settings.storage_timeout_seconds,
        )
        self.retention = RetentionSweeper(
            self.store,
            ttl=timedelta(days=self.settings.retention_ttl_days),
            timeout_seconds=self.settings.storage_timeout_seconds,
        )
        self.pending_task = PeriodicTask(
            "pending_sweep",
            self.pending_sweeper.sweep,
            self.settings.pending_sweep_interval_seconds,
        )
        self.retention_task: Optional[PeriodicTask] = None
        if self.settings.retention_enabled:
            self.retention_task = PeriodicTask(
                "retention_sweep",
                self.retention.sweep,
                self.settings.retention_interval_seconds,
            )

        logger.info(
            "runtime_initialized",
            store_backend=self.store.backend,
            gate_mode=self.gate.mode,
            redis_enabled=self.cache is not None,
            retention_enabled=self.settings.retention_enabled,
            retention_ttl_days=self.settings.retention_ttl_days,
        )

    def _build_store(self) -> TenantStore:
        backend = self.settings.store_backend
        try:
            if backend == StoreBackend.POSTGRES:
                if not self.settings.database_url:
                    raise ConfigurationError("DATABASE_URL is required when STORE_BACKEND=postgres")
                store: TenantStore = PostgresTenantStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.storage_timeout_seconds,
                )
            else:
                store = FileTenantStore(self.fs_root)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=backend.value,
                database_url=mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
            )
            raise
        logger.info("runtime_store_initialized", store_type=backend.value)
        return store

    def _build_dedup(self) -> DedupCache:
        local = LocalDedupCache(self.fs_root / "state" / "dedup.json")
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is not None:
            return FallbackDedupCache(RedisDedupCache(self.cache), local)

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise ConfigurationError(
                "Redis is required to share replay protection across instances; start Redis "
                "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for a local cache."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; assertion replay protection "
                "is local to this process."
            ),
            mode=fallback_mode,
        )
        return local

    def _build_issuer(self) -> TokenIssuer:
        try:
            pem = self.settings.token_private_key_pem()
        except OSError as exc:
            raise ConfigurationError("token signing key could not be read") from exc
        if not pem:
            raise ConfigurationError("token signing key is not configured")
        return TokenIssuer(
            load_rsa_private_key(pem),
            issuer=self.settings.token_issuer,
            audience=self.settings.token_audience,
            ttl_seconds=self.settings.token_ttl_seconds,
            leeway_seconds=self.settings.clock_skew_seconds,
        )

    def _build_gate(self) -> TokenGate:
        if self.settings.token_gate_mode == TokenGateMode.SHARED_SECRET:
            logger.warning(
                "token_gate_shared_secret",
                message="POST /token accepts a static shared secret; prefer assertion gating",
            )
            return SharedSecretTokenGate(self.settings.host_api_key or "")

        try:
            pem = self.settings.host_public_key_pem()
        except OSError as exc:
            raise ConfigurationError("host assertion public key could not be read") from exc
        if not pem:
            raise ConfigurationError(
                "HOST_PUBLIC_KEY or HOST_PUBLIC_KEY_PATH is required when TOKEN_GATE_MODE=assertion"
            )
        if not self.settings.host_assertion_issuer:
            raise ConfigurationError(
                "HOST_ASSERTION_ISSUER is required when TOKEN_GATE_MODE=assertion"
            )
        self.verifier = AssertionVerifier(
            load_rsa_public_key(pem),
            self.dedup,
            audience=self.settings.host_assertion_audience,
            issuer=self.settings.host_assertion_issuer,
            leeway_seconds=self.settings.clock_skew_seconds,
            max_lifetime_seconds=self.settings.host_assertion_max_lifetime_seconds,
        )
        return AssertionTokenGate(self.verifier)

    async def start_background(self) -> None:
        await self.pending_task.start()
        if self.retention_task is not None:
            await self.retention_task.start()
        else:
            logger.info("retention_sweep_disabled")

    async def stop_background(self) -> None:
        await self.pending_task.stop()
        if self.retention_task is not None:
            await self.retention_task.stop()

    async def close(self) -> None:
        await self.stop_background()
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
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
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
