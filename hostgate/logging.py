from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import structlog

# Per-request correlation id, echoed back in X-Request-ID
_request_id: ContextVar[Optional[str]] = ContextVar("hostgate_request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    value = correlation_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def _inject_request_id(_logger: Any, _name: str, event: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id is not None:
        event.setdefault("correlation_id", request_id)
    return event


_SECRET_MARKERS = ("password", "secret", "token", "api_key", "authorization", "assertion", "private_key")


def _redact_secrets(_logger: Any, _name: str, event: Dict[str, Any]) -> Dict[str, Any]:
    """Blank string values under credential-looking keys.

    ``*_fingerprint`` fields are one-way digests and are left alone.
    """
    for key, value in list(event.items()):
        lowered = key.lower()
        if lowered.endswith("_fingerprint") or not isinstance(value, str) or not value:
            continue
        if any(marker in lowered for marker in _SECRET_MARKERS):
            event[key] = "[redacted]"
    return event


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    """Install the structlog pipeline.

    JSON lines by default; a colored console renderer when ``dev_mode`` is
    set or ``json_output`` is off.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _inject_request_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Logging comes up before Settings are parsed, so it reads its own variables
configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    dev_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def fingerprint(credential: Optional[str]) -> Optional[str]:
    """Short SHA-256 fingerprint of a credential, safe to log.

    Lets operators correlate repeated attempts with the same token without
    ever writing the token itself.
    """
    if not credential:
        return None
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:16]


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a DSN with ``***``.

    ``postgresql://app:hunter2@db:5432/gw`` -> ``postgresql://app:***@db:5432/gw``
    """
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if parts.password is None:
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        return urlunsplit(parts._replace(netloc=f"{parts.username or ''}:***@{host}"))
    except ValueError:
        return "<unparseable url>"


# Fragments that must not reach a response body or a pending entry's last_error
_LEAKY_FRAGMENTS = [
    re.compile(r"(?i)\b(postgres(?:ql)?|rediss?)://\S+"),
    re.compile(r"(?i)\b(select|insert|update|delete)\b\s+.{0,80}"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+"),
    re.compile(r"(?i)[a-z]:\\\S+"),
    re.compile(r"(?i)(password|secret|token|key|credential)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback \(most recent call last\).*", re.S),
]

_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip connection strings, SQL, paths and credentials from ``error``."""
    if not isinstance(error, str) or not error:
        return "unknown error"
    for pattern in _LEAKY_FRAGMENTS:
        error = pattern.sub(replacement, error)
    if len(error) > _MAX_ERROR_LENGTH:
        error = error[: _MAX_ERROR_LENGTH - 3] + "..."
    return error


__all__ = [
    "configure_logging",
    "fingerprint",
    "get_correlation_id",
    "get_logger",
    "mask_url_password",
    "sanitize_error_message",
    "set_correlation_id",
]
