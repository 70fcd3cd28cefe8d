"""Host assertion verification: signature, claims, lifetime and single use."""

import asyncio
import base64
import json
import time

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from hostgate.config import get_settings
from hostgate.service.assertions import AssertionVerifier, load_rsa_public_key
from hostgate.service.errors import ConfigurationError, InvalidAssertion, ReplayedAssertion
from hostgate.storage.dedup import LocalDedupCache


def _verifier(**overrides) -> AssertionVerifier:
    settings = get_settings()
    kwargs = dict(
        audience=settings.host_assertion_audience,
        issuer=settings.host_assertion_issuer,
        leeway_seconds=30,
        max_lifetime_seconds=300,
    )
    kwargs.update(overrides)
    dedup = kwargs.pop("dedup", None)
    if dedup is None:
        dedup = LocalDedupCache()
    public_key = kwargs.pop("public_key", load_rsa_public_key(settings.host_public_key_pem()))
    return AssertionVerifier(public_key, dedup, **kwargs)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


async def _reason(verifier: AssertionVerifier, token: str) -> str:
    with pytest.raises(InvalidAssertion) as excinfo:
        await verifier.verify(token)
    return excinfo.value.reason


class TestAssertionVerifier:
    async def test_valid_assertion_accepted(self, make_assertion):
        verifier = _verifier()
        claims = await verifier.verify(make_assertion(sub="host-service"))
        assert claims.issuer == "test-host"
        assert claims.audience == "hostgate"
        assert claims.subject == "host-service"
        assert claims.jti

    async def test_second_presentation_rejected(self, make_assertion):
        verifier = _verifier()
        token = make_assertion()
        await verifier.verify(token)
        with pytest.raises(ReplayedAssertion):
            await verifier.verify(token)

    async def test_concurrent_presentations_admit_exactly_one(self, make_assertion):
        verifier = _verifier()
        token = make_assertion()

        async def attempt():
            try:
                await verifier.verify(token)
                return True
            except ReplayedAssertion:
                return False

        results = await asyncio.gather(*(attempt() for _ in range(10)))
        assert results.count(True) == 1

    async def test_distinct_jti_both_accepted(self, make_assertion):
        verifier = _verifier()
        await verifier.verify(make_assertion(jti="a-1"))
        await verifier.verify(make_assertion(jti="a-2"))

    async def test_expired_rejected(self, make_assertion):
        verifier = _verifier()
        now = int(time.time())
        token = make_assertion(iat=now - 600, exp=now - 120)
        assert await _reason(verifier, token) == "expired"

    async def test_expiry_within_leeway_accepted(self, make_assertion):
        verifier = _verifier(leeway_seconds=30)
        now = int(time.time())
        await verifier.verify(make_assertion(iat=now - 60, exp=now - 10))

    async def test_wrong_audience_rejected(self, make_assertion):
        verifier = _verifier()
        assert await _reason(verifier, make_assertion(audience="someone-else")) == "audience_mismatch"

    async def test_wrong_issuer_rejected(self, make_assertion):
        verifier = _verifier()
        assert await _reason(verifier, make_assertion(issuer="intruder")) == "issuer_mismatch"

    async def test_missing_jti_rejected(self, make_assertion):
        verifier = _verifier()
        assert await _reason(verifier, make_assertion(omit=("jti",))) == "missing_jti"

    async def test_missing_exp_rejected(self, make_assertion):
        verifier = _verifier()
        assert await _reason(verifier, make_assertion(omit=("exp",))) == "missing_claim:exp"

    async def test_lifetime_too_long_rejected(self, make_assertion):
        verifier = _verifier(max_lifetime_seconds=300)
        assert await _reason(verifier, make_assertion(lifetime=3600)) == "lifetime_too_long"

    async def test_signature_from_other_key_rejected(self, make_assertion):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        other_pem = other.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        verifier = _verifier()
        assert await _reason(verifier, make_assertion(key=other_pem)) == "bad_signature"

    async def test_hmac_algorithm_rejected(self, make_assertion):
        verifier = _verifier()
        token = make_assertion(key="shared-secret-value-long-enough-for-hmac", algorithm="HS256")
        assert await _reason(verifier, token) == "algorithm_not_allowed:HS256"

    async def test_alg_none_rejected(self):
        verifier = _verifier()
        now = int(time.time())
        token = ".".join(
            [
                _b64({"alg": "none", "typ": "JWT"}),
                _b64({"iss": "test-host", "aud": "hostgate", "exp": now + 60, "jti": "x"}),
                "",
            ]
        )
        assert await _reason(verifier, token) == "algorithm_not_allowed:none"

    async def test_garbage_rejected(self):
        verifier = _verifier()
        assert await _reason(verifier, "not-a-jwt") == "malformed"
        assert await _reason(verifier, "") == "empty"

    async def test_rejected_assertion_does_not_consume_jti(self, make_assertion):
        dedup = LocalDedupCache()
        verifier = _verifier(dedup=dedup)
        await _reason(verifier, make_assertion(jti="shared", audience="wrong"))
        await verifier.verify(make_assertion(jti="shared"))

    async def test_missing_public_key_is_configuration_error(self, make_assertion):
        verifier = _verifier(public_key=None)
        with pytest.raises(ConfigurationError):
            await verifier.verify(make_assertion())

    async def test_missing_issuer_is_configuration_error(self, make_assertion):
        verifier = _verifier(issuer=None)
        with pytest.raises(ConfigurationError):
            await verifier.verify(make_assertion())

    async def test_dedup_ttl_covers_remaining_validity(self, make_assertion):
        class RecordingDedup(LocalDedupCache):
            ttl = None

            async def put_if_absent(self, key, ttl_seconds):
                RecordingDedup.ttl = ttl_seconds
                return await super().put_if_absent(key, ttl_seconds)

        verifier = _verifier(dedup=RecordingDedup(), leeway_seconds=30)
        await verifier.verify(make_assertion(lifetime=60))
        assert 60 <= RecordingDedup.ttl <= 91


class TestLoadPublicKey:
    def test_rejects_invalid_pem(self):
        with pytest.raises(ConfigurationError):
            load_rsa_public_key("-----BEGIN PUBLIC KEY-----\nnope\n-----END PUBLIC KEY-----\n")

    def test_rejects_non_rsa_key(self):
        ec_key = ec.generate_private_key(ec.SECP256R1())
        pem = ec_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
        with pytest.raises(ConfigurationError):
            load_rsa_public_key(pem)
