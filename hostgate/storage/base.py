from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from hostgate.storage.models import PersistedRecord, RecordKey


class TenantStore(Protocol):
    """Tenant-scoped record persistence keyed by ``(org_id, user_id, content_hash)``.

    Implementations are synchronous; the service layer runs them in a worker
    thread bounded by the storage timeout.
    """

    backend: str

    def upsert(
        self,
        org_id: str,
        user_id: str,
        content_hash: str,
        payload: Dict[str, Any],
        *,
        older_than: Optional[datetime] = None,
    ) -> Optional[PersistedRecord]:
        """Insert or replace the record for the key.

        With ``older_than``, an existing record whose ``updated_at`` is at or
        after that instant is left untouched and ``None`` is returned.
        """
        ...

    def get(self, org_id: str, user_id: str, content_hash: str) -> Optional[PersistedRecord]: ...

    def list_by_tenant(self, org_id: str, user_id: str) -> List[PersistedRecord]: ...

    def delete_by_tenant(self, org_id: str, user_id: str) -> int: ...

    def list_expired(self, cutoff: datetime) -> List[RecordKey]: ...

    def delete_record(
        self,
        org_id: str,
        user_id: str,
        content_hash: str,
        *,
        older_than: Optional[datetime] = None,
    ) -> bool: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...
