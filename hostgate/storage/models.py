from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class RecordKey:
    org_id: str
    user_id: str
    content_hash: str


@dataclass
class PersistedRecord:
    org_id: str
    user_id: str
    content_hash: str
    payload: Dict[str, Any]
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> RecordKey:
        return RecordKey(self.org_id, self.user_id, self.content_hash)

    def to_document(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "user_id": self.user_id,
            "content_hash": self.content_hash,
            "payload": self.payload,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PersistedRecord":
        return cls(
            org_id=doc["org_id"],
            user_id=doc["user_id"],
            content_hash=doc["content_hash"],
            payload=doc["payload"],
            updated_at=parse_timestamp(doc["updated_at"]),
        )


PENDING = "pending"
DEAD = "dead"


@dataclass
class PendingWrite:
    """A write staged on local disk after the tenant store rejected it.

    ``status`` moves from ``pending`` to ``dead`` once retries are exhausted;
    dead entries stay on disk for operators and are never dropped.
    """

    id: str
    org_id: str
    user_id: str
    content_hash: str
    payload: Dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    status: str = PENDING
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None

    @staticmethod
    def new_id() -> str:
        # zero-padded nanosecond timestamp keeps directory order equal to creation order
        return f"{time.time_ns():020d}-{secrets.token_hex(6)}"

    def to_document(self) -> Dict[str, Any]:
        doc = asdict(self)
        doc["created_at"] = self.created_at.isoformat()
        doc["last_attempt_at"] = (
            self.last_attempt_at.isoformat() if self.last_attempt_at else None
        )
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PendingWrite":
        last_attempt = doc.get("last_attempt_at")
        return cls(
            id=doc["id"],
            org_id=doc["org_id"],
            user_id=doc["user_id"],
            content_hash=doc["content_hash"],
            payload=doc["payload"],
            created_at=parse_timestamp(doc["created_at"]),
            attempts=int(doc.get("attempts", 0)),
            status=doc.get("status", PENDING),
            last_error=doc.get("last_error"),
            last_attempt_at=parse_timestamp(last_attempt) if last_attempt else None,
        )
