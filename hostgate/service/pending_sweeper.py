from __future__ import annotations

import asyncio
from dataclasses import dataclass

from hostgate.logging import get_logger, sanitize_error_message
from hostgate.service.records import call_store
from hostgate.storage.base import TenantStore
from hostgate.storage.models import DEAD, PENDING, utcnow
from hostgate.storage.pending import PendingWriteQueue

logger = get_logger(__name__)


@dataclass
class PendingSweepReport:
    examined: int = 0
    replayed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    superseded: int = 0
    skipped: bool = False


class PendingWriteSweeper:
    """Replay staged writes against the tenant store.

    Entries keep the content hash computed when they were staged, so a
    replay lands on the same key as the original write would have. A replay
    never overwrites a record written after the entry was staged.
    """

    def __init__(
        self,
        queue: PendingWriteQueue,
        store: TenantStore,
        *,
        max_attempts: int = 10,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.queue = queue
        self.store = store
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self._lock = asyncio.Lock()

    async def sweep(self) -> PendingSweepReport:
        if self._lock.locked():
            logger.info("pending_sweep_skipped_overlap")
            return PendingSweepReport(skipped=True)
        async with self._lock:
            return await self._sweep()

    async def _sweep(self) -> PendingSweepReport:
        report = PendingSweepReport()
        entries = await asyncio.to_thread(self.queue.list_entries, status=PENDING)
        for entry in entries:
            report.examined += 1
            try:
                written = await call_store(
                    self.store.upsert,
                    entry.org_id,
                    entry.user_id,
                    entry.content_hash,
                    entry.payload,
                    older_than=entry.created_at,
                    timeout_seconds=self.timeout_seconds,
                    operation="pending_replay",
                )
            except Exception as exc:
                report.failed += 1
                entry.attempts += 1
                entry.last_error = sanitize_error_message(str(exc))
                entry.last_attempt_at = utcnow()
                if entry.attempts >= self.max_attempts:
                    entry.status = DEAD
                    report.dead_lettered += 1
                    logger.error(
                        "pending_write_dead_lettered",
                        entry_id=entry.id,
                        org_id=entry.org_id,
                        user_id=entry.user_id,
                        attempts=entry.attempts,
                        last_error=entry.last_error,
                    )
                else:
                    logger.warning(
                        "pending_write_retry_failed",
                        entry_id=entry.id,
                        attempts=entry.attempts,
                        error=entry.last_error,
                    )
                await asyncio.to_thread(self.queue.update, entry)
                continue

            await asyncio.to_thread(self.queue.remove, entry.id)
            if written is None:
                report.superseded += 1
                logger.info(
                    "pending_write_superseded",
                    entry_id=entry.id,
                    org_id=entry.org_id,
                    user_id=entry.user_id,
                    content_hash=entry.content_hash,
                )
                continue
            report.replayed += 1
            logger.info(
                "pending_write_replayed",
                entry_id=entry.id,
                org_id=entry.org_id,
                user_id=entry.user_id,
                attempts=entry.attempts + 1,
            )

        if report.examined:
            logger.info(
                "pending_sweep_complete",
                examined=report.examined,
                replayed=report.replayed,
                failed=report.failed,
                dead_lettered=report.dead_lettered,
                superseded=report.superseded,
            )
        return report

    def stats(self) -> dict:
        return self.queue.stats()


__all__ = ["PendingSweepReport", "PendingWriteSweeper"]
