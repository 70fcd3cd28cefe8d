from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from hostgate.logging import fingerprint, get_logger
from hostgate.service.errors import ConfigurationError, InvalidAssertion, ReplayedAssertion
from hostgate.storage.dedup import DedupCache

logger = get_logger(__name__)

# Asymmetric RSA family only; the verification key is public, so HS* must never verify
ALLOWED_ALGORITHMS = ("RS256", "RS384", "RS512")


@dataclass(frozen=True)
class VerifiedClaims:
    issuer: str
    audience: str
    jti: str
    expires_at: int
    issued_at: Optional[int] = None
    subject: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


def load_rsa_public_key(pem: str) -> rsa.RSAPublicKey:
    """Parse an RSA public key PEM; anything else is a configuration error."""
    try:
        key = serialization.load_pem_public_key(pem.encode("utf-8"))
    except ValueError as exc:
        raise ConfigurationError("host assertion public key is not a valid PEM") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise ConfigurationError("host assertion public key must be an RSA key")
    return key


class AssertionVerifier:
    """Verify short-lived host assertions and consume their single-use ids.

    Checks run in a fixed order: key configured, algorithm and signature,
    audience and issuer, expiry, presence of ``jti``, then an atomic
    set-if-absent in the dedup cache so two concurrent presentations of
    the same assertion cannot both pass.
    """

    def __init__(
        self,
        public_key: Optional[rsa.RSAPublicKey],
        dedup: DedupCache,
        *,
        audience: str,
        issuer: Optional[str],
        leeway_seconds: int = 30,
        max_lifetime_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.public_key = public_key
        self.dedup = dedup
        self.audience = audience
        self.issuer = issuer
        self.leeway_seconds = leeway_seconds
        self.max_lifetime_seconds = max_lifetime_seconds
        self._clock = clock

    def _reject(self, reason: str, token: str, claims: Optional[dict] = None) -> InvalidAssertion:
        claims = claims or {}
        logger.warning(
            "host_assertion_rejected",
            reason=reason,
            issuer=claims.get("iss"),
            subject=claims.get("sub"),
            jti=claims.get("jti"),
            assertion_fingerprint=fingerprint(token),
        )
        return InvalidAssertion("invalid host assertion", reason=reason)

    async def verify(
        self,
        token: str,
        expected_audience: Optional[str] = None,
        expected_issuer: Optional[str] = None,
    ) -> VerifiedClaims:
        audience = expected_audience or self.audience
        issuer = expected_issuer or self.issuer

        if self.public_key is None or not issuer:
            logger.error("host_assertion_key_missing", issuer_configured=bool(issuer))
            raise ConfigurationError("host assertion verification is not configured")

        if not token:
            raise self._reject("empty", token)

        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError:
            raise self._reject("malformed", token) from None
        alg = header.get("alg")
        if alg not in ALLOWED_ALGORITHMS:
            raise self._reject(f"algorithm_not_allowed:{alg}", token)

        try:
            claims = jwt.decode(
                token,
                self.public_key,
                algorithms=[alg],
                audience=audience,
                issuer=issuer,
                leeway=self.leeway_seconds,
                options={"require": ["exp", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError:
            raise self._reject("expired", token, _unverified_claims(token)) from None
        except jwt.InvalidAudienceError:
            raise self._reject("audience_mismatch", token, _unverified_claims(token)) from None
        except jwt.InvalidIssuerError:
            raise self._reject("issuer_mismatch", token, _unverified_claims(token)) from None
        except jwt.MissingRequiredClaimError as exc:
            raise self._reject(f"missing_claim:{exc.claim}", token) from None
        except jwt.InvalidSignatureError:
            raise self._reject("bad_signature", token, _unverified_claims(token)) from None
        except jwt.PyJWTError as exc:
            raise self._reject(f"invalid:{type(exc).__name__}", token) from None

        now = self._clock()
        exp = int(claims["exp"])
        if exp - now > self.max_lifetime_seconds + self.leeway_seconds:
            raise self._reject("lifetime_too_long", token, claims)

        jti = claims.get("jti")
        if not isinstance(jti, str) or not jti.strip():
            raise self._reject("missing_jti", token, claims)

        # Never shorter than the remaining validity plus the accepted skew
        ttl = max(1, math.ceil(exp - now + self.leeway_seconds))
        if not await self.dedup.put_if_absent(jti, ttl):
            logger.warning(
                "host_assertion_replayed",
                issuer=claims.get("iss"),
                subject=claims.get("sub"),
                jti=jti,
                assertion_fingerprint=fingerprint(token),
            )
            raise ReplayedAssertion("invalid host assertion", reason="replayed")

        aud_claim = claims.get("aud")
        return VerifiedClaims(
            issuer=claims["iss"],
            audience=aud_claim if isinstance(aud_claim, str) else audience,
            jti=jti,
            expires_at=exp,
            issued_at=int(claims["iat"]) if "iat" in claims else None,
            subject=claims.get("sub"),
            raw=claims,
        )


def _unverified_claims(token: str) -> dict:
    """Claims for logging only; never trusted for decisions."""
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return {}


__all__ = [
    "ALLOWED_ALGORITHMS",
    "AssertionVerifier",
    "VerifiedClaims",
    "load_rsa_public_key",
]
