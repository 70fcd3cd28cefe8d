from __future__ import annotations

import base64
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from hostgate.logging import get_logger
from hostgate.service.fs import atomic_write_text, safe_join
from hostgate.storage.errors import StorageUnavailable, TenantScopeViolation
from hostgate.storage.models import PersistedRecord, RecordKey, utcnow

logger = get_logger(__name__)

_SUFFIX = ".json"


def _encode_part(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")


def _decode_part(value: str) -> str:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode(value + padding).decode("utf-8")


def record_relpath(org_id: str, user_id: str, content_hash: str) -> str:
    """Deterministic, reversible relative path for a record key.

    ``<org>/<user>/<hash>.json`` with every component URL-safe base64 without
    padding, so no component can introduce a separator or ``..``.
    """
    return "/".join(
        (_encode_part(org_id), _encode_part(user_id), _encode_part(content_hash) + _SUFFIX)
    )


def parse_record_relpath(relpath: str) -> Optional[RecordKey]:
    parts = relpath.split("/")
    if len(parts) != 3 or not parts[2].endswith(_SUFFIX) or parts[2].startswith("."):
        return None
    parts[2] = parts[2][: -len(_SUFFIX)]
    try:
        org_id, user_id, content_hash = (_decode_part(part) for part in parts)
    except (ValueError, UnicodeDecodeError):
        return None
    return RecordKey(org_id, user_id, content_hash)


class FileTenantStore:
    """One JSON file per record under ``<fs_root>/records``.

    Suitable for single-instance and development deployments. Writes are
    atomic per file and serialized within the process; across processes the
    last writer wins.
    """

    backend = "file"

    def __init__(self, fs_root: str | Path) -> None:
        self.fs_root = Path(fs_root)
        self.records_dir = self.fs_root / "records"
        self.records_dir.mkdir(parents=True, exist_ok=True)
        self.records_dir = self.records_dir.resolve()
        self._lock = threading.Lock()

    def _path(self, org_id: str, user_id: str, content_hash: str) -> Path:
        if not (org_id and user_id and content_hash):
            raise ValueError("org_id, user_id and content_hash are required")
        return safe_join(self.records_dir, record_relpath(org_id, user_id, content_hash))

    def _tenant_dir(self, org_id: str, user_id: str) -> Path:
        return safe_join(self.records_dir, f"{_encode_part(org_id)}/{_encode_part(user_id)}")

    def _read(self, path: Path) -> Optional[PersistedRecord]:
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError as exc:
            logger.error("file_record_corrupt", file=path.name, error=str(exc))
            return None
        except OSError as exc:
            raise StorageUnavailable("record read failed", {"file": path.name}) from exc
        try:
            return PersistedRecord.from_document(doc)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("file_record_corrupt", file=path.name, error=str(exc))
            return None

    def _iter_records(self, base: Optional[Path] = None) -> Iterator[Tuple[Path, RecordKey]]:
        base = base or self.records_dir
        if not base.exists():
            return
        try:
            entries = sorted(base.rglob("*" + _SUFFIX))
        except OSError as exc:
            raise StorageUnavailable("record directory unreadable") from exc
        for path in entries:
            key = parse_record_relpath(path.relative_to(self.records_dir).as_posix())
            if key is not None:
                yield path, key

    @staticmethod
    def _check_scope(record: PersistedRecord, org_id: str, user_id: str) -> None:
        if record.org_id != org_id or record.user_id != user_id:
            logger.error(
                "tenant_scope_violation",
                expected_org_id=org_id,
                expected_user_id=user_id,
                stored_org_id=record.org_id,
                stored_user_id=record.user_id,
            )
            raise TenantScopeViolation("stored record does not match tenant scope")

    def upsert(
        self,
        org_id: str,
        user_id: str,
        content_hash: str,
        payload: Dict[str, Any],
        *,
        older_than: Optional[datetime] = None,
    ) -> Optional[PersistedRecord]:
        record = PersistedRecord(
            org_id=org_id,
            user_id=user_id,
            content_hash=content_hash,
            payload=payload,
            updated_at=utcnow(),
        )
        path = self._path(org_id, user_id, content_hash)
        with self._lock:
            if older_than is not None:
                current = self._read(path)
                if current is not None and current.updated_at >= older_than:
                    return None
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                atomic_write_text(path, json.dumps(record.to_document(), separators=(",", ":")))
            except OSError as exc:
                raise StorageUnavailable("record write failed") from exc
        return record

    def get(self, org_id: str, user_id: str, content_hash: str) -> Optional[PersistedRecord]:
        record = self._read(self._path(org_id, user_id, content_hash))
        if record is None:
            return None
        self._check_scope(record, org_id, user_id)
        return record

    def list_by_tenant(self, org_id: str, user_id: str) -> List[PersistedRecord]:
        records: List[PersistedRecord] = []
        for path, key in self._iter_records(self._tenant_dir(org_id, user_id)):
            if key.org_id != org_id or key.user_id != user_id:
                continue
            record = self._read(path)
            if record is None:
                continue
            self._check_scope(record, org_id, user_id)
            records.append(record)
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records

    def delete_by_tenant(self, org_id: str, user_id: str) -> int:
        deleted = 0
        with self._lock:
            for path, key in self._iter_records(self._tenant_dir(org_id, user_id)):
                if key.org_id != org_id or key.user_id != user_id:
                    continue
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    raise StorageUnavailable("record delete failed") from exc
                deleted += 1
        return deleted

    def iter_all(self) -> Iterator[PersistedRecord]:
        """Every readable record across all tenants, for migrations."""
        for path, key in self._iter_records():
            record = self._read(path)
            if record is None:
                continue
            if record.key != key:
                logger.error("file_record_key_mismatch", file=path.name)
                continue
            yield record

    def list_expired(self, cutoff: datetime) -> List[RecordKey]:
        expired: List[RecordKey] = []
        for path, key in self._iter_records():
            record = self._read(path)
            if record is not None and record.updated_at < cutoff:
                expired.append(key)
        return expired

    def delete_record(
        self,
        org_id: str,
        user_id: str,
        content_hash: str,
        *,
        older_than: Optional[datetime] = None,
    ) -> bool:
        path = self._path(org_id, user_id, content_hash)
        with self._lock:
            if older_than is not None:
                record = self._read(path)
                # Refreshed since it was listed
                if record is None or record.updated_at >= older_than:
                    return False
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise StorageUnavailable("record delete failed") from exc
        return True

    def verify_connection(self) -> None:
        if not self.records_dir.is_dir():
            raise StorageUnavailable("record directory missing")
        marker = self.records_dir / ".health_check"
        marker.write_text(utcnow().isoformat())
        marker.unlink(missing_ok=True)

    def close(self) -> None:
        return None


__all__ = ["FileTenantStore", "parse_record_relpath", "record_relpath"]
