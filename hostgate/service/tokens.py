from __future__ import annotations

import hmac
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from hostgate.logging import fingerprint, get_logger
from hostgate.service.assertions import AssertionVerifier, VerifiedClaims
from hostgate.service.errors import (
    ConfigurationError,
    ForbiddenError,
    InvalidCredential,
    MissingCredential,
)

logger = get_logger(__name__)

TOKEN_ALGORITHM = "RS256"
TOKEN_SCOPE = ["records"]


@dataclass(frozen=True)
class IssuedToken:
    token: str
    subject: str
    org_id: str
    issued_at: int
    expires_at: int

    @property
    def expires_in(self) -> int:
        return self.expires_at - self.issued_at


def load_rsa_private_key(pem: str) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError("token signing key is not a valid unencrypted PEM") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ConfigurationError("token signing key must be an RSA key")
    return key


class TokenIssuer:
    """Mint and decode the short-lived bearer tokens handed to end users."""

    def __init__(
        self,
        private_key: rsa.RSAPrivateKey,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int = 300,
        leeway_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def mint(self, subject: str, org_id: str) -> IssuedToken:
        now = int(self._clock())
        expires_at = now + self.ttl_seconds
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "org_id": org_id,
            "scope": TOKEN_SCOPE,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": now,
            "nbf": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self.private_key, algorithm=TOKEN_ALGORITHM)
        logger.info(
            "token_minted",
            subject=subject,
            org_id=org_id,
            expires_at=expires_at,
            token_fingerprint=fingerprint(token),
        )
        return IssuedToken(
            token=token,
            subject=subject,
            org_id=org_id,
            issued_at=now,
            expires_at=expires_at,
        )

    def decode(self, token: str) -> Dict[str, Any]:
        """Verify a bearer token and return its claims.

        Raises ``InvalidCredential`` for any signature, expiry or claim failure.
        """
        try:
            claims = jwt.decode(
                token,
                self.public_key,
                algorithms=[TOKEN_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway_seconds,
                options={"require": ["exp", "iat", "sub", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError:
            raise InvalidCredential("invalid bearer token", reason="expired") from None
        except jwt.PyJWTError as exc:
            raise InvalidCredential(
                "invalid bearer token", reason=f"invalid:{type(exc).__name__}"
            ) from None
        if claims.get("token_type") != "access":
            raise InvalidCredential("invalid bearer token", reason="wrong_token_type")
        org_id = claims.get("org_id")
        if not isinstance(org_id, str) or not org_id:
            raise InvalidCredential("invalid bearer token", reason="missing_org_id")
        return claims


@dataclass(frozen=True)
class GateResult:
    mode: str
    claims: Optional[VerifiedClaims] = None


class TokenGate(Protocol):
    mode: str

    async def authorize(
        self,
        authorization: Optional[str],
        host_api_key: Optional[str],
        *,
        client_ip: Optional[str] = None,
    ) -> GateResult: ...


def bearer_value(authorization: Optional[str]) -> Optional[str]:
    """Extract the credential from ``Authorization: Bearer <value>``."""
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    value = value.strip()
    return value or None


class AssertionTokenGate:
    """Only a verified, unreplayed host assertion may mint tokens."""

    mode = "assertion"

    def __init__(self, verifier: AssertionVerifier) -> None:
        self.verifier = verifier

    async def authorize(
        self,
        authorization: Optional[str],
        host_api_key: Optional[str],
        *,
        client_ip: Optional[str] = None,
    ) -> GateResult:
        assertion = bearer_value(authorization)
        if not assertion:
            logger.warning(
                "host_assertion_missing",
                client_ip=client_ip,
                host_api_key_present=bool(host_api_key),
            )
            raise MissingCredential("host assertion required", reason="missing_assertion")
        claims = await self.verifier.verify(assertion)
        return GateResult(mode=self.mode, claims=claims)


class SharedSecretTokenGate:
    """Static shared secret gate kept for older host integrations.

    Anyone holding the secret can mint tokens for any tenant, with no
    replay protection; deployments opt in explicitly.
    """

    mode = "shared_secret"

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ConfigurationError("HOST_API_KEY is required for shared_secret token gating")
        self._secret = secret

    async def authorize(
        self,
        authorization: Optional[str],
        host_api_key: Optional[str],
        *,
        client_ip: Optional[str] = None,
    ) -> GateResult:
        if not host_api_key or not hmac.compare_digest(
            host_api_key.encode("utf-8"), self._secret.encode("utf-8")
        ):
            logger.warning(
                "shared_secret_rejected",
                client_ip=client_ip,
                present=bool(host_api_key),
                credential_fingerprint=fingerprint(host_api_key),
            )
            raise ForbiddenError("forbidden")
        return GateResult(mode=self.mode)


__all__ = [
    "AssertionTokenGate",
    "GateResult",
    "IssuedToken",
    "SharedSecretTokenGate",
    "TokenGate",
    "TokenIssuer",
    "bearer_value",
    "load_rsa_private_key",
]
