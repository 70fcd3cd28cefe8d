from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for storage-layer failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(StorageError):
    """Backend call failed or timed out.

    Writes that hit this are diverted to the pending queue; reads surface 503.
    """


class TenantScopeViolation(StorageError):
    """A stored record's tenant fields do not match the scope it was read under."""


class RetentionSweepError(StorageError):
    """A single record could not be removed during a retention sweep."""


__all__ = [
    "StorageError",
    "StorageUnavailable",
    "TenantScopeViolation",
    "RetentionSweepError",
]
