from __future__ import annotations

import asyncio
import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar

from hostgate.logging import get_logger, sanitize_error_message
from hostgate.service.auth import Identity
from hostgate.service.errors import ServiceUnavailable, ValidationError
from hostgate.storage.base import TenantStore
from hostgate.storage.errors import StorageUnavailable
from hostgate.storage.models import PersistedRecord
from hostgate.storage.pending import PendingWriteQueue

logger = get_logger(__name__)

T = TypeVar("T")

CONTENT_HASH_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


async def call_store(
    func: Callable[..., T],
    *args: Any,
    timeout_seconds: float,
    operation: str,
    **kwargs: Any,
) -> T:
    """Run a blocking store call in a worker thread, bounded by a timeout.

    A timeout is reported as ``StorageUnavailable`` so callers treat a hung
    backend exactly like a failed one.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout_seconds
        )
    except asyncio.TimeoutError as exc:
        logger.warning("storage_call_timeout", operation=operation, timeout=timeout_seconds)
        raise StorageUnavailable(f"{operation} timed out") from exc


def compute_content_hash(payload: Any) -> str:
    """SHA-256 of the canonical JSON form (sorted keys, compact separators)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def validate_content_hash(value: str) -> str:
    value = value.strip()
    if not CONTENT_HASH_PATTERN.match(value):
        raise ValidationError(
            "invalid content hash",
            detail={"field": "content_hash", "pattern": CONTENT_HASH_PATTERN.pattern},
        )
    return value


def record_key(org_id: str, user_id: str, content_hash: str) -> str:
    return f"{org_id}|{user_id}|{content_hash}"


@dataclass(frozen=True)
class SaveResult:
    key: str
    content_hash: str
    queued: bool
    record: Optional[PersistedRecord] = None
    pending_id: Optional[str] = None


class RecordService:
    """Tenant-scoped record operations on top of the configured store.

    Writes that fail against the store are staged in the pending queue and
    reported as queued; reads have no such fallback and fail with 503.
    """

    def __init__(
        self,
        store: TenantStore,
        pending: PendingWriteQueue,
        *,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.pending = pending
        self.timeout_seconds = timeout_seconds

    def resolve_content_hash(self, payload: Dict[str, Any], supplied: Optional[str]) -> str:
        if supplied is None:
            return compute_content_hash(payload)
        return validate_content_hash(supplied)

    async def save(
        self,
        identity: Identity,
        payload: Dict[str, Any],
        content_hash: Optional[str] = None,
    ) -> SaveResult:
        org_id, user_id = identity.org_id, identity.user_id
        resolved = self.resolve_content_hash(payload, content_hash)
        key = record_key(org_id, user_id, resolved)
        try:
            record = await call_store(
                self.store.upsert,
                org_id,
                user_id,
                resolved,
                payload,
                timeout_seconds=self.timeout_seconds,
                operation="upsert",
            )
        except StorageUnavailable as exc:
            logger.warning(
                "record_write_deferred",
                org_id=org_id,
                user_id=user_id,
                content_hash=resolved,
                error=sanitize_error_message(str(exc)),
            )
            try:
                entry = await asyncio.to_thread(
                    self.pending.enqueue, org_id, user_id, resolved, payload
                )
            except OSError as enqueue_exc:
                # no durable copy of this write exists
                logger.error(
                    "pending_enqueue_failed",
                    org_id=org_id,
                    user_id=user_id,
                    content_hash=resolved,
                    error=sanitize_error_message(str(enqueue_exc)),
                )
                raise ServiceUnavailable("storage unavailable; write was not accepted") from enqueue_exc
            return SaveResult(key=key, content_hash=resolved, queued=True, pending_id=entry.id)
        return SaveResult(key=key, content_hash=resolved, queued=False, record=record)

    async def list_for(self, identity: Identity) -> List[PersistedRecord]:
        return await call_store(
            self.store.list_by_tenant,
            identity.org_id,
            identity.user_id,
            timeout_seconds=self.timeout_seconds,
            operation="list_by_tenant",
        )

    async def get_for(self, identity: Identity, content_hash: str) -> Optional[PersistedRecord]:
        return await call_store(
            self.store.get,
            identity.org_id,
            identity.user_id,
            content_hash,
            timeout_seconds=self.timeout_seconds,
            operation="get",
        )

    async def erase(self, org_id: str, user_id: str) -> int:
        deleted = await call_store(
            self.store.delete_by_tenant,
            org_id,
            user_id,
            timeout_seconds=self.timeout_seconds,
            operation="delete_by_tenant",
        )
        logger.info("tenant_records_erased", org_id=org_id, user_id=user_id, deleted=deleted)
        return deleted

    async def export(self, org_id: str, user_id: str) -> List[PersistedRecord]:
        records = await call_store(
            self.store.list_by_tenant,
            org_id,
            user_id,
            timeout_seconds=self.timeout_seconds,
            operation="export",
        )
        logger.info("tenant_records_exported", org_id=org_id, user_id=user_id, count=len(records))
        return records


__all__ = [
    "CONTENT_HASH_PATTERN",
    "RecordService",
    "SaveResult",
    "call_store",
    "compute_content_hash",
    "record_key",
    "validate_content_hash",
]
