from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hostgate.logging import get_correlation_id
from hostgate.service.errors import ValidationError
from hostgate.storage.models import PersistedRecord

TENANT_ID_PATTERN = r"^[A-Za-z0-9._:@-]{1,128}$"
_TENANT_ID_RE = re.compile(TENANT_ID_PATTERN)

MAX_PAYLOAD_DEPTH = 20
MAX_ARRAY_ITEMS = 1000

# Stable error codes a response may carry
ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "invalid_assertion",
    "replayed_assertion",
    "missing_credential",
    "invalid_credential",
    "forbidden",
    "not_found",
    "payload_too_large",
    "configuration_error",
    "server_error",
    "service_unavailable",
}


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """Envelope carried by every error response; success bodies are the bare resource."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def validate_tenant_id(value: str, field: str) -> str:
    if not isinstance(value, str) or not _TENANT_ID_RE.match(value):
        raise ValidationError(
            f"invalid {field}", detail={"field": field, "pattern": TENANT_ID_PATTERN}
        )
    return value


class TokenRequest(BaseModel):
    user_id: str = Field(..., alias="userId", pattern=TENANT_ID_PATTERN)
    org_id: str = Field(..., alias="orgId", pattern=TENANT_ID_PATTERN)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TokenResponse(BaseModel):
    token: str
    expires_in: int
    token_type: str = "bearer"


class RecordOut(BaseModel):
    content_hash: str
    payload: Dict[str, Any]
    updated_at: datetime

    @classmethod
    def from_record(cls, record: PersistedRecord) -> "RecordOut":
        return cls(
            content_hash=record.content_hash,
            payload=record.payload,
            updated_at=record.updated_at,
        )


class RecordSaveResponse(BaseModel):
    queued: bool
    key: str
    content_hash: str
    updated_at: Optional[datetime] = None
    pending_id: Optional[str] = None


class RecordListResponse(BaseModel):
    records: List[RecordOut]
    count: int


class EraseResponse(BaseModel):
    org_id: str
    user_id: str
    deleted: int


class ExportResponse(BaseModel):
    org_id: str
    user_id: str
    records: List[RecordOut]
    count: int


class PendingStatsResponse(BaseModel):
    pending: int
    dead: int


def validate_payload(payload: Any) -> Dict[str, Any]:
    """Payloads are opaque JSON objects with bounded nesting and array sizes."""

    if not isinstance(payload, dict):
        raise ValidationError("payload must be a JSON object")

    def _walk(value: Any, depth: int) -> None:
        if depth > MAX_PAYLOAD_DEPTH:
            raise ValidationError(
                "payload nested too deeply", detail={"max_depth": MAX_PAYLOAD_DEPTH}
            )
        if isinstance(value, dict):
            for item in value.values():
                _walk(item, depth + 1)
        elif isinstance(value, list):
            if len(value) > MAX_ARRAY_ITEMS:
                raise ValidationError(
                    "payload array too large", detail={"max_items": MAX_ARRAY_ITEMS}
                )
            for item in value:
                _walk(item, depth + 1)

    _walk(payload, 1)
    return payload
