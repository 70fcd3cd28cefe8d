from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from hostgate.logging import get_logger
from hostgate.service.fs import PathTraversalError, atomic_write_text, safe_join
from hostgate.storage.models import DEAD, PENDING, PendingWrite

logger = get_logger(__name__)

_SUFFIX = ".json"


class PendingWriteQueue:
    """Durable local staging area for writes the tenant store rejected.

    One file per entry in ``<fs_root>/pending``, named
    ``<epoch_ns>-<12 hex>.json`` so directory order is creation order.
    """

    def __init__(self, fs_root: str | Path) -> None:
        self.root = Path(fs_root) / "pending"
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, entry_id: str) -> Path:
        return safe_join(self.root, f"{entry_id}{_SUFFIX}")

    def enqueue(
        self, org_id: str, user_id: str, content_hash: str, payload: Dict[str, Any]
    ) -> PendingWrite:
        """Stage a write; raises ``OSError`` when the disk itself fails."""
        entry = PendingWrite(
            id=PendingWrite.new_id(),
            org_id=org_id,
            user_id=user_id,
            content_hash=content_hash,
            payload=payload,
        )
        with self._lock:
            atomic_write_text(self._path(entry.id), json.dumps(entry.to_document()))
        logger.info(
            "pending_write_enqueued",
            entry_id=entry.id,
            org_id=org_id,
            user_id=user_id,
            content_hash=content_hash,
        )
        return entry

    def list_entries(self, *, status: Optional[str] = None) -> List[PendingWrite]:
        entries: List[PendingWrite] = []
        for path in sorted(self.root.glob(f"*{_SUFFIX}")):
            if path.name.startswith("."):
                continue
            try:
                entry = PendingWrite.from_document(json.loads(path.read_text(encoding="utf-8")))
            except FileNotFoundError:
                continue
            except (ValueError, KeyError, TypeError) as exc:
                # left in place for an operator to inspect
                logger.error("pending_write_corrupt", file=path.name, error=str(exc))
                continue
            if status is None or entry.status == status:
                entries.append(entry)
        return entries

    def update(self, entry: PendingWrite) -> None:
        with self._lock:
            atomic_write_text(self._path(entry.id), json.dumps(entry.to_document()))

    def remove(self, entry_id: str) -> bool:
        try:
            path = self._path(entry_id)
        except PathTraversalError:
            return False
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    def stats(self) -> Dict[str, int]:
        counts = {PENDING: 0, DEAD: 0}
        for entry in self.list_entries():
            counts[entry.status] = counts.get(entry.status, 0) + 1
        return counts


__all__ = ["PendingWriteQueue"]
