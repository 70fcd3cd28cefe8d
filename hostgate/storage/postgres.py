from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from hostgate.logging import get_logger, mask_url_password
from hostgate.service.errors import ConfigurationError
from hostgate.storage.errors import StorageUnavailable
from hostgate.storage.models import PersistedRecord, RecordKey

TABLE = "tenant_record"

# Tenant markers are transaction-local (set_config(..., true)); an unset marker
# reads back as NULL or '' and matches no row.
_SCHEMA_STATEMENTS = [
    f"""
    CREATE TABLE IF NOT EXISTS {TABLE} (
        org_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        payload JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (org_id, user_id, content_hash)
    )
    """,
    f"CREATE INDEX IF NOT EXISTS {TABLE}_updated_at_idx ON {TABLE} (updated_at)",
    f"ALTER TABLE {TABLE} ENABLE ROW LEVEL SECURITY",
    f"ALTER TABLE {TABLE} FORCE ROW LEVEL SECURITY",
    f"DROP POLICY IF EXISTS tenant_isolation ON {TABLE}",
    f"""
    CREATE POLICY tenant_isolation ON {TABLE}
        FOR ALL
        USING (
            org_id = current_setting('hostgate.org_id', true)
            AND user_id = current_setting('hostgate.user_id', true)
        )
        WITH CHECK (
            org_id = current_setting('hostgate.org_id', true)
            AND user_id = current_setting('hostgate.user_id', true)
        )
    """,
    f"DROP POLICY IF EXISTS retention_select ON {TABLE}",
    f"""
    CREATE POLICY retention_select ON {TABLE}
        FOR SELECT
        USING (updated_at < NULLIF(current_setting('hostgate.retention_cutoff', true), '')::timestamptz)
    """,
    f"DROP POLICY IF EXISTS retention_delete ON {TABLE}",
    f"""
    CREATE POLICY retention_delete ON {TABLE}
        FOR DELETE
        USING (updated_at < NULLIF(current_setting('hostgate.retention_cutoff', true), '')::timestamptz)
    """,
]

REQUIRED_POLICIES = {"tenant_isolation", "retention_select", "retention_delete"}

_RECORD_COLUMNS = "org_id, user_id, content_hash, payload, updated_at"


def _row_to_record(row: Dict[str, Any]) -> PersistedRecord:
    return PersistedRecord(
        org_id=row["org_id"],
        user_id=row["user_id"],
        content_hash=row["content_hash"],
        payload=row["payload"],
        updated_at=row["updated_at"],
    )


class PostgresTenantStore:
    """Relational tenant store with row-level security enforced by Postgres.

    Every operation runs in its own transaction that first sets the tenant
    marker; the ``tenant_isolation`` policy then hides and rejects every row
    of any other tenant, whatever the SQL says. The connecting role must not
    be a superuser and must not hold ``BYPASSRLS``; startup fails otherwise.
    """

    backend = "postgres"

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
            },
            open=True,
        )
        try:
            if ensure_schema:
                self._ensure_schema()
            self._verify_row_security()
        except BaseException:
            self.pool.close()
            raise
        self.logger.info("postgres_store_ready", dsn=mask_url_password(dsn))

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _storage_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (psycopg.OperationalError, psycopg.InterfaceError, PoolTimeout) as exc:
            self.logger.warning(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise StorageUnavailable(f"{operation} failed") from exc

    def _set_statement_timeout(self, conn) -> None:
        conn.execute(
            "SELECT set_config('statement_timeout', %s, true)",
            (f"{int(self.timeout_seconds * 1000)}ms",),
        )

    @contextmanager
    def _tenant_transaction(self, org_id: str, user_id: str, operation: str):
        if not org_id or not user_id:
            raise ValueError("org_id and user_id are required")
        with self._storage_errors(operation):
            with self._connect() as conn:
                conn.execute(
                    "SELECT set_config('hostgate.org_id', %s, true),"
                    " set_config('hostgate.user_id', %s, true)",
                    (org_id, user_id),
                )
                self._set_statement_timeout(conn)
                yield conn

    @contextmanager
    def _retention_transaction(self, cutoff: datetime, operation: str):
        with self._storage_errors(operation):
            with self._connect() as conn:
                conn.execute(
                    "SELECT set_config('hostgate.retention_cutoff', %s, true)",
                    (cutoff.isoformat(),),
                )
                self._set_statement_timeout(conn)
                yield conn

    def _ensure_schema(self) -> None:
        """Create the table and policies; skipped quietly when the role may not."""

        with self._storage_errors("ensure_schema"):
            with self._connect() as conn:
                exists = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (TABLE,)
                ).fetchone()
                if exists and exists["oid"] is not None:
                    owned = conn.execute(
                        "SELECT pg_get_userbyid(relowner) = current_user AS owned"
                        " FROM pg_class WHERE oid = to_regclass(%s)",
                        (TABLE,),
                    ).fetchone()
                    if not owned or not owned["owned"]:
                        self.logger.info("postgres_schema_managed_externally", table=TABLE)
                        return
                for statement in _SCHEMA_STATEMENTS:
                    conn.execute(statement)

    def _verify_row_security(self) -> None:
        """Refuse to serve unless the engine, not the app, enforces isolation."""

        with self._storage_errors("verify_row_security"):
            with self._connect() as conn:
                table = conn.execute(
                    "SELECT relrowsecurity, relforcerowsecurity FROM pg_class"
                    " WHERE oid = to_regclass(%s)",
                    (TABLE,),
                ).fetchone()
                policies = {
                    row["policyname"]
                    for row in conn.execute(
                        "SELECT policyname FROM pg_policies WHERE tablename = %s",
                        (TABLE,),
                    ).fetchall()
                }
                role = conn.execute(
                    "SELECT rolsuper, rolbypassrls FROM pg_roles WHERE rolname = current_user"
                ).fetchone()

        if not table:
            raise ConfigurationError(f"table {TABLE} is missing")
        if not (table["relrowsecurity"] and table["relforcerowsecurity"]):
            self.logger.error("postgres_row_security_disabled", table=TABLE)
            raise ConfigurationError(f"row level security is not enforced on {TABLE}")
        missing = REQUIRED_POLICIES - policies
        if missing:
            self.logger.error("postgres_policies_missing", missing=sorted(missing))
            raise ConfigurationError(f"row security policies missing on {TABLE}")
        if role and (role["rolsuper"] or role["rolbypassrls"]):
            self.logger.error(
                "postgres_role_bypasses_rls",
                superuser=bool(role["rolsuper"]),
                bypassrls=bool(role["rolbypassrls"]),
            )
            raise ConfigurationError(
                "database role bypasses row level security; connect as an unprivileged role"
            )

    def upsert(
        self,
        org_id: str,
        user_id: str,
        content_hash: str,
        payload: Dict[str, Any],
        *,
        older_than: Optional[datetime] = None,
    ) -> Optional[PersistedRecord]:
        with self._tenant_transaction(org_id, user_id, "upsert") as conn:
            # the conflict branch is skipped when the stored row is not older
            row = conn.execute(
                f"""
                INSERT INTO {TABLE} (org_id, user_id, content_hash, payload, updated_at)
                VALUES (%s, %s, %s, %s, now())
                ON CONFLICT (org_id, user_id, content_hash)
                DO UPDATE SET payload = EXCLUDED.payload, updated_at = now()
                WHERE %s::timestamptz IS NULL OR {TABLE}.updated_at < %s::timestamptz
                RETURNING {_RECORD_COLUMNS}
                """,
                (org_id, user_id, content_hash, Jsonb(payload), older_than, older_than),
            ).fetchone()
        return _row_to_record(row) if row else None

    def get(self, org_id: str, user_id: str, content_hash: str) -> Optional[PersistedRecord]:
        with self._tenant_transaction(org_id, user_id, "get") as conn:
            row = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM {TABLE}"
                " WHERE org_id = %s AND user_id = %s AND content_hash = %s",
                (org_id, user_id, content_hash),
            ).fetchone()
        return _row_to_record(row) if row else None

    def list_by_tenant(self, org_id: str, user_id: str) -> List[PersistedRecord]:
        with self._tenant_transaction(org_id, user_id, "list_by_tenant") as conn:
            rows = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM {TABLE}"
                " WHERE org_id = %s AND user_id = %s ORDER BY updated_at DESC",
                (org_id, user_id),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def delete_by_tenant(self, org_id: str, user_id: str) -> int:
        with self._tenant_transaction(org_id, user_id, "delete_by_tenant") as conn:
            cur = conn.execute(
                f"DELETE FROM {TABLE} WHERE org_id = %s AND user_id = %s",
                (org_id, user_id),
            )
            return cur.rowcount

    def list_expired(self, cutoff: datetime) -> List[RecordKey]:
        with self._retention_transaction(cutoff, "list_expired") as conn:
            rows = conn.execute(
                f"SELECT org_id, user_id, content_hash FROM {TABLE} WHERE updated_at < %s",
                (cutoff,),
            ).fetchall()
        return [RecordKey(row["org_id"], row["user_id"], row["content_hash"]) for row in rows]

    def delete_record(
        self,
        org_id: str,
        user_id: str,
        content_hash: str,
        *,
        older_than: Optional[datetime] = None,
    ) -> bool:
        if older_than is not None:
            with self._retention_transaction(older_than, "delete_expired") as conn:
                cur = conn.execute(
                    f"DELETE FROM {TABLE} WHERE org_id = %s AND user_id = %s"
                    " AND content_hash = %s AND updated_at < %s",
                    (org_id, user_id, content_hash, older_than),
                )
                return cur.rowcount > 0
        with self._tenant_transaction(org_id, user_id, "delete_record") as conn:
            cur = conn.execute(
                f"DELETE FROM {TABLE} WHERE org_id = %s AND user_id = %s AND content_hash = %s",
                (org_id, user_id, content_hash),
            )
            return cur.rowcount > 0

    def verify_connection(self) -> None:
        with self._storage_errors("verify_connection"):
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresTenantStore", "REQUIRED_POLICIES", "TABLE"]
