import asyncio
import inspect
import os
import secrets
import sys
import tempfile
import time
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


def _generate_pem_pair() -> tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


HOST_PRIVATE_PEM, HOST_PUBLIC_PEM = _generate_pem_pair()
TOKEN_PRIVATE_PEM, _ = _generate_pem_pair()
HOST_ISSUER = "test-host"
HOST_AUDIENCE = "hostgate"
HOST_API_KEY = "test-host-api-key"
OPERATOR_API_KEY = "test-operator-key"

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="hostgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORE_BACKEND", "file")
# No Redis in unit tests; TEST_MODE permits the local dedup cache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("TOKEN_GATE_MODE", "assertion")
os.environ.setdefault("HOST_PUBLIC_KEY", HOST_PUBLIC_PEM)
os.environ.setdefault("HOST_ASSERTION_ISSUER", HOST_ISSUER)
os.environ.setdefault("HOST_ASSERTION_AUDIENCE", HOST_AUDIENCE)
os.environ.setdefault("HOST_API_KEY", HOST_API_KEY)
os.environ.setdefault("OPERATOR_API_KEY", OPERATOR_API_KEY)
os.environ.setdefault("TOKEN_PRIVATE_KEY", TOKEN_PRIVATE_PEM)
os.environ.setdefault("LOG_JSON", "true")

import jwt  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hostgate.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own file store, pending queue and dedup state
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "hostgate"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def build_assertion(
    *,
    issuer: str = HOST_ISSUER,
    audience: str = HOST_AUDIENCE,
    lifetime: int = 60,
    jti: str | None = None,
    key: str = HOST_PRIVATE_PEM,
    algorithm: str = "RS256",
    omit: tuple = (),
    **extra,
) -> str:
    now = int(time.time())
    claims = {
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + lifetime,
        "jti": jti or secrets.token_urlsafe(16),
        **extra,
    }
    for name in omit:
        claims.pop(name, None)
    return jwt.encode(claims, key, algorithm=algorithm)


@pytest.fixture
def make_assertion():
    return build_assertion


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from hostgate.app import app

    return TestClient(app)


@pytest.fixture
def issue_token(client):
    """Exchange a fresh host assertion for a bearer token."""

    def _issue(user_id: str, org_id: str) -> str:
        resp = client.post(
            "/token",
            json={"userId": user_id, "orgId": org_id},
            headers={"Authorization": f"Bearer {build_assertion()}"},
        )
        assert resp.status_code == 200, resp.text
        return resp.json()["token"]

    return _issue


@pytest.fixture
def operator_headers():
    return {"X-Operator-Key": OPERATOR_API_KEY}


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
