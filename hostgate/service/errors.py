from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can switch on:
    - validation_error (400)
    - unauthorized / invalid_assertion / replayed_assertion /
      missing_credential / invalid_credential (401)
    - forbidden (403)
    - not_found (404)
    - payload_too_large (413)
    - server_error / configuration_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(ServiceError):
    """Deployment is misconfigured; raised at startup wherever possible (500)."""
    status_code = 500
    error_code = "configuration_error"


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` is kept for logs only and never returned to the caller.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str, *, reason: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason or message


class InvalidAssertion(AuthenticationError):
    """Host assertion failed signature, audience, issuer or expiry checks (401)."""
    error_code = "invalid_assertion"


class ReplayedAssertion(InvalidAssertion):
    """Host assertion's single-use id was already consumed (401)."""
    error_code = "replayed_assertion"


class MissingCredential(AuthenticationError):
    """No bearer value on a request that needs one (401)."""
    error_code = "missing_credential"


class InvalidCredential(AuthenticationError):
    """Bearer token failed signature, expiry or claim checks (401)."""
    error_code = "invalid_credential"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class PayloadTooLarge(ServiceError):
    """Request body exceeds the configured cap (413)."""
    status_code = 413
    error_code = "payload_too_large"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailable(ServiceError):
    """A dependency is down and the operation cannot be deferred (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ConfigurationError",
    "ValidationError",
    "AuthenticationError",
    "InvalidAssertion",
    "ReplayedAssertion",
    "MissingCredential",
    "InvalidCredential",
    "ForbiddenError",
    "NotFoundError",
    "PayloadTooLarge",
    "ServerError",
    "ServiceUnavailable",
]
