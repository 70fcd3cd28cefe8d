"""PostgresTenantStore behaviour with the pool stubbed out."""

from datetime import datetime, timezone

import psycopg
import pytest

from hostgate.logging import get_logger
from hostgate.service.errors import ConfigurationError
from hostgate.storage.errors import StorageUnavailable
from hostgate.storage.postgres import PostgresTenantStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, responder):
        self.responder = responder
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.responder(" ".join(sql.split()), params) or FakeCursor()


class FakePool:
    def __init__(self, responder=lambda sql, params: None):
        self.conn = FakeConnection(responder)
        self.closed = False

    def connection(self):
        return self.conn

    def close(self):
        self.closed = True


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(pool) -> PostgresTenantStore:
    store: PostgresTenantStore = PostgresTenantStore.__new__(PostgresTenantStore)
    store.dsn = "postgresql://app:secret@db/hostgate"
    store.timeout_seconds = 2.0
    store.logger = get_logger("test")
    store.pool = pool
    return store


def _security_responder(*, rls=True, force=True, policies=None, superuser=False, bypass=False):
    policies = policies if policies is not None else [
        "tenant_isolation",
        "retention_select",
        "retention_delete",
    ]

    def respond(sql, params):
        if "relrowsecurity" in sql:
            return FakeCursor([{"relrowsecurity": rls, "relforcerowsecurity": force}])
        if "pg_policies" in sql:
            return FakeCursor([{"policyname": name} for name in policies])
        if "pg_roles" in sql:
            return FakeCursor([{"rolsuper": superuser, "rolbypassrls": bypass}])
        return None

    return respond


class TestTenantTransactions:
    def test_upsert_sets_tenant_marker_before_insert(self):
        now = datetime.now(timezone.utc)

        def respond(sql, params):
            if sql.startswith("INSERT"):
                return FakeCursor(
                    [
                        {
                            "org_id": "acme",
                            "user_id": "u1",
                            "content_hash": "hash-0001",
                            "payload": {"a": 1},
                            "updated_at": now,
                        }
                    ]
                )
            return None

        pool = FakePool(respond)
        record = _store(pool).upsert("acme", "u1", "hash-0001", {"a": 1})

        statements = [sql for sql, _ in pool.conn.statements]
        assert "hostgate.org_id" in statements[0]
        assert pool.conn.statements[0][1] == ("acme", "u1")
        assert "statement_timeout" in statements[1]
        assert pool.conn.statements[1][1] == ("2000ms",)
        assert statements[2].startswith("INSERT INTO tenant_record")
        assert "ON CONFLICT (org_id, user_id, content_hash)" in statements[2]
        assert record.payload == {"a": 1}
        assert record.updated_at == now

    def test_missing_tenant_rejected_before_touching_pool(self):
        with pytest.raises(ValueError):
            _store(DummyPool()).list_by_tenant("", "u1")

    def test_conditional_delete_uses_retention_marker(self):
        def respond(sql, params):
            if sql.startswith("DELETE"):
                return FakeCursor(rowcount=1)
            return None

        pool = FakePool(respond)
        cutoff = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert _store(pool).delete_record("acme", "u1", "hash-0001", older_than=cutoff) is True
        first_sql, first_params = pool.conn.statements[0]
        assert "hostgate.retention_cutoff" in first_sql
        assert first_params == (cutoff.isoformat(),)
        assert "updated_at < %s" in pool.conn.statements[-1][0]

    def test_delete_by_tenant_returns_rowcount(self):
        def respond(sql, params):
            if sql.startswith("DELETE"):
                return FakeCursor(rowcount=3)
            return None

        assert _store(FakePool(respond)).delete_by_tenant("acme", "u1") == 3

    def test_operational_error_becomes_storage_unavailable(self):
        def respond(sql, params):
            raise psycopg.OperationalError("connection refused")

        with pytest.raises(StorageUnavailable):
            _store(FakePool(respond)).get("acme", "u1", "hash-0001")


class TestRowSecurityVerification:
    def test_accepts_enforced_configuration(self):
        _store(FakePool(_security_responder()))._verify_row_security()

    def test_rejects_disabled_rls(self):
        with pytest.raises(ConfigurationError):
            _store(FakePool(_security_responder(force=False)))._verify_row_security()

    def test_rejects_missing_policy(self):
        responder = _security_responder(policies=["tenant_isolation"])
        with pytest.raises(ConfigurationError):
            _store(FakePool(responder))._verify_row_security()

    def test_rejects_superuser(self):
        with pytest.raises(ConfigurationError):
            _store(FakePool(_security_responder(superuser=True)))._verify_row_security()

    def test_rejects_bypassrls_role(self):
        with pytest.raises(ConfigurationError):
            _store(FakePool(_security_responder(bypass=True)))._verify_row_security()
