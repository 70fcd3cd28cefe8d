from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from hostgate.logging import get_logger, sanitize_error_message
from hostgate.service.records import call_store
from hostgate.storage.base import TenantStore
from hostgate.storage.errors import RetentionSweepError
from hostgate.storage.models import RecordKey, utcnow

logger = get_logger(__name__)


@dataclass
class RetentionReport:
    cutoff: Optional[datetime] = None
    examined: int = 0
    deleted: int = 0
    failed: int = 0
    skipped: bool = False
    errors: List[RetentionSweepError] = field(default_factory=list)


class RetentionSweeper:
    """Delete records whose ``updated_at`` is older than the TTL.

    Idempotent; a record refreshed between listing and deletion survives,
    and one failed deletion never stops the rest of the sweep.
    """

    def __init__(
        self,
        store: TenantStore,
        *,
        ttl: timedelta,
        timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    async def sweep(self, ttl: Optional[timedelta] = None) -> RetentionReport:
        if self._lock.locked():
            logger.info("retention_sweep_skipped_overlap")
            return RetentionReport(skipped=True)
        async with self._lock:
            return await self._sweep(ttl or self.ttl)

    async def _delete_one(self, key: RecordKey, cutoff: datetime) -> bool:
        try:
            return await call_store(
                self.store.delete_record,
                key.org_id,
                key.user_id,
                key.content_hash,
                older_than=cutoff,
                timeout_seconds=self.timeout_seconds,
                operation="retention_delete",
            )
        except Exception as exc:
            raise RetentionSweepError(
                "retention delete failed",
                {"org_id": key.org_id, "user_id": key.user_id, "content_hash": key.content_hash},
            ) from exc

    async def _sweep(self, ttl: timedelta) -> RetentionReport:
        cutoff = self._clock() - ttl
        report = RetentionReport(cutoff=cutoff)
        expired = await call_store(
            self.store.list_expired,
            cutoff,
            timeout_seconds=self.timeout_seconds,
            operation="list_expired",
        )
        for key in expired:
            report.examined += 1
            try:
                if await self._delete_one(key, cutoff):
                    report.deleted += 1
            except RetentionSweepError as exc:
                report.failed += 1
                report.errors.append(exc)
                logger.error(
                    "retention_delete_failed",
                    error=sanitize_error_message(str(exc.__cause__ or exc)),
                    **exc.detail,
                )
        logger.info(
            "retention_sweep_complete",
            cutoff=cutoff.isoformat(),
            examined=report.examined,
            deleted=report.deleted,
            failed=report.failed,
        )
        return report


__all__ = ["RetentionReport", "RetentionSweeper"]
