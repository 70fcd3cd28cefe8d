from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from hostgate.logging import fingerprint, get_logger
from hostgate.service.errors import ForbiddenError, InvalidCredential, MissingCredential
from hostgate.service.tokens import TokenIssuer, bearer_value

logger = get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    """Tenant identity derived from a verified bearer token.

    The only source of ``org_id``/``subject`` for tenant-scoped handlers.
    """

    subject: str
    org_id: str

    @property
    def user_id(self) -> str:
        return self.subject


class RequestAuthenticator:
    def __init__(self, issuer: TokenIssuer) -> None:
        self.issuer = issuer

    def authenticate(
        self, authorization: Optional[str], *, client_ip: Optional[str] = None
    ) -> Identity:
        token = bearer_value(authorization)
        if not token:
            raise MissingCredential("bearer token required", reason="missing_bearer")
        try:
            claims = self.issuer.decode(token)
        except InvalidCredential as exc:
            logger.warning(
                "bearer_token_rejected",
                reason=exc.reason,
                client_ip=client_ip,
                token_fingerprint=fingerprint(token),
            )
            raise
        return Identity(subject=str(claims["sub"]), org_id=str(claims["org_id"]))


class OperatorAuthenticator:
    """Shared-secret guard for erasure, export and queue inspection routes."""

    def __init__(self, secret: Optional[str]) -> None:
        self._secret = secret

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def authorize(self, presented: Optional[str], *, client_ip: Optional[str] = None) -> None:
        if not presented:
            raise MissingCredential("operator credential required", reason="missing_operator_key")
        if not self._secret:
            logger.error("operator_key_not_configured", client_ip=client_ip)
            raise ForbiddenError("forbidden")
        if not hmac.compare_digest(presented.encode("utf-8"), self._secret.encode("utf-8")):
            logger.warning(
                "operator_key_rejected",
                client_ip=client_ip,
                credential_fingerprint=fingerprint(presented),
            )
            raise ForbiddenError("forbidden")


__all__ = ["Identity", "OperatorAuthenticator", "RequestAuthenticator"]
