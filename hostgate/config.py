from __future__ import annotations

import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hostgate.logging import get_logger

logger = get_logger(__name__)

_TOKEN_KEY_FILENAME = ".token_signing_key.pem"


class TokenGateMode(str, Enum):
    """How callers prove they may mint end-user tokens.

    - ASSERTION: a short-lived RSA-signed host assertion, single use
    - SHARED_SECRET: a static operator secret in ``X-Host-Api-Key``;
      kept for older host integrations and strictly weaker
    """

    ASSERTION = "assertion"
    SHARED_SECRET = "shared_secret"


class StoreBackend(str, Enum):
    FILE = "file"
    POSTGRES = "postgres"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


def read_pem(inline: Optional[str], path: Optional[str]) -> Optional[str]:
    """Return PEM text from an inline value or a file path.

    Inline values may carry literal ``\\n`` sequences when they come from a
    single-line environment variable.
    """
    if inline:
        return inline.replace("\\n", "\n").strip() + "\n"
    if path:
        return Path(path).read_text(encoding="utf-8")
    return None


class Settings(BaseModel):
    """Gateway settings, built once at startup and passed to each component."""

    token_gate_mode: TokenGateMode = env_field(
        TokenGateMode.ASSERTION,
        "TOKEN_GATE_MODE",
        description="assertion (default) or shared_secret; never both",
    )
    host_public_key: Optional[str] = env_field(None, "HOST_PUBLIC_KEY")
    host_public_key_path: Optional[str] = env_field(None, "HOST_PUBLIC_KEY_PATH")
    host_assertion_audience: str = env_field("hostgate", "HOST_ASSERTION_AUDIENCE")
    host_assertion_issuer: Optional[str] = env_field(None, "HOST_ASSERTION_ISSUER")
    host_assertion_max_lifetime_seconds: int = env_field(
        300, "HOST_ASSERTION_MAX_LIFETIME_SECONDS", ge=1
    )
    host_api_key: Optional[str] = env_field(None, "HOST_API_KEY")
    operator_api_key: Optional[str] = env_field(
        None,
        "OPERATOR_API_KEY",
        description="Secret for erasure/export/ops routes; defaults to HOST_API_KEY",
    )

    token_private_key: Optional[str] = env_field(None, "TOKEN_PRIVATE_KEY")
    token_private_key_path: Optional[str] = env_field(None, "TOKEN_PRIVATE_KEY_PATH")
    token_issuer: str = env_field("hostgate", "TOKEN_ISSUER")
    token_audience: str = env_field("hostgate-clients", "TOKEN_AUDIENCE")
    token_ttl_seconds: int = env_field(300, "TOKEN_TTL_SECONDS", ge=1, le=3600)
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS", ge=0, le=300)

    store_backend: StoreBackend = env_field(StoreBackend.FILE, "STORE_BACKEND")
    database_url: Optional[str] = env_field(None, "DATABASE_URL")
    shared_fs_root: str = env_field("/srv/hostgate", "SHARED_FS_ROOT")
    storage_timeout_seconds: float = env_field(5.0, "STORAGE_TIMEOUT_SECONDS", gt=0)

    redis_url: Optional[str] = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

    retention_enabled: bool = env_field(
        True,
        "RETENTION_ENABLED",
        description="Disable when an external retention policy owns record expiry",
    )
    retention_ttl_days: int = env_field(30, "RETENTION_TTL_DAYS", ge=1)
    retention_interval_seconds: int = env_field(
        24 * 60 * 60, "RETENTION_INTERVAL_SECONDS", ge=1
    )
    pending_sweep_interval_seconds: int = env_field(
        10, "PENDING_SWEEP_INTERVAL_SECONDS", ge=1
    )
    pending_max_attempts: int = env_field(10, "PENDING_MAX_ATTEMPTS", ge=1)

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    ip_allowlist: List[str] = env_field([], "IP_ALLOWLIST")
    max_body_bytes: int = env_field(200_000, "MAX_BODY_BYTES", ge=1)
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour: sync Redis client, resettable runtime",
    )
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", "ip_allowlist", mode="before")
    @classmethod
    def _split_lists(cls, value: Any) -> List[str]:
        return _split_csv(value)

    @field_validator("cors_allow_origins")
    @classmethod
    def _reject_wildcard_origin(cls, value: List[str]) -> List[str]:
        if "*" in value:
            raise ValueError("wildcard CORS origin is not allowed; list origins explicitly")
        return value

    @field_validator(
        "host_public_key",
        "host_public_key_path",
        "host_assertion_issuer",
        "host_api_key",
        "operator_api_key",
        "token_private_key",
        "token_private_key_path",
        "database_url",
        "redis_url",
    )
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _ensure_token_signing_key(self) -> "Settings":
        if self.token_private_key or self.token_private_key_path:
            return self
        self.token_private_key_path = str(
            _ensure_persisted_signing_key(Path(self.shared_fs_root))
        )
        return self

    @property
    def effective_operator_api_key(self) -> Optional[str]:
        return self.operator_api_key or self.host_api_key

    def host_public_key_pem(self) -> Optional[str]:
        return read_pem(self.host_public_key, self.host_public_key_path)

    def token_private_key_pem(self) -> Optional[str]:
        return read_pem(self.token_private_key, self.token_private_key_path)


def _ensure_persisted_signing_key(fs_root: Path) -> Path:
    """Generate the token signing key once and keep it under ``fs_root``.

    Persisting the key keeps already-issued tokens valid across restarts.
    """
    key_path = fs_root / _TOKEN_KEY_FILENAME
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass

    if key_path.exists() and not key_path.is_symlink():
        return key_path

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    fd, tmp_path = tempfile.mkstemp(
        dir=str(fs_root), prefix=".token_signing_key_", suffix=".tmp"
    )
    try:
        try:
            os.write(fd, pem)
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(key_path))
    except OSError as exc:
        Path(tmp_path).unlink(missing_ok=True)
        logger.error("token_key_persist_failed", error=str(exc), path=str(key_path))
        raise RuntimeError(
            "Unable to persist token signing key; set TOKEN_PRIVATE_KEY or make "
            "SHARED_FS_ROOT writable"
        ) from exc
    logger.info("token_key_generated", path=str(key_path))
    return key_path


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
