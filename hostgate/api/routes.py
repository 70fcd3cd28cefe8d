from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Mapping, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from hostgate.api.schemas import (
    EraseResponse,
    ExportResponse,
    PendingStatsResponse,
    RecordListResponse,
    RecordOut,
    RecordSaveResponse,
    TokenRequest,
    TokenResponse,
    validate_payload,
    validate_tenant_id,
)
from hostgate.logging import get_logger
from hostgate.service.auth import Identity
from hostgate.service.errors import NotFoundError, PayloadTooLarge, ValidationError
from hostgate.service.records import validate_content_hash
from hostgate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

_TENANT_FIELDS = {
    "orgId": "org_id",
    "org_id": "org_id",
    "userId": "user_id",
    "user_id": "user_id",
}


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _note_tenant_fields(
    identity: Identity, source: str, values: Mapping[str, Any], route: str
) -> None:
    """Tenant ids supplied by the caller are ignored; mismatches are logged."""
    expected = {"org_id": identity.org_id, "user_id": identity.user_id}
    for name, field in _TENANT_FIELDS.items():
        if name not in values:
            continue
        supplied = values[name]
        if supplied != expected[field]:
            logger.warning(
                "tenant_field_mismatch",
                route=route,
                source=source,
                field=name,
                identity_org_id=identity.org_id,
                identity_user_id=identity.user_id,
            )


async def get_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Identity:
    runtime = get_runtime()
    return runtime.authenticator.authenticate(authorization, client_ip=_client_ip(request))


async def require_operator(
    request: Request,
    x_operator_key: Optional[str] = Header(None, alias="X-Operator-Key"),
    x_host_api_key: Optional[str] = Header(None, alias="X-Host-Api-Key"),
) -> None:
    runtime = get_runtime()
    runtime.operator_auth.authorize(
        x_operator_key or x_host_api_key, client_ip=_client_ip(request)
    )


@router.post("/token", response_model=TokenResponse, tags=["auth"])
async def issue_token(
    body: TokenRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_host_api_key: Optional[str] = Header(None, alias="X-Host-Api-Key"),
    x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
):
    """Mint a short-lived bearer token for ``(userId, orgId)``.

    The caller must pass the configured token gate: a signed host assertion
    in ``Authorization: Bearer`` or, in shared-secret mode, ``X-Host-Api-Key``
    (``X-Api-Key`` is accepted as an alias).
    """
    runtime = get_runtime()
    client_ip = _client_ip(request)
    result = await runtime.gate.authorize(
        authorization, x_host_api_key or x_api_key, client_ip=client_ip
    )
    issued = runtime.issuer.mint(body.user_id, body.org_id)
    logger.info(
        "token_issued",
        gate_mode=result.mode,
        host_issuer=result.claims.issuer if result.claims else None,
        org_id=body.org_id,
        user_id=body.user_id,
        client_ip=client_ip,
    )
    return TokenResponse(token=issued.token, expires_in=issued.expires_in)


async def _read_json_object(request: Request) -> Dict[str, Any]:
    max_bytes = get_runtime().settings.max_body_bytes
    raw = await request.body()
    if len(raw) > max_bytes:
        raise PayloadTooLarge("request body too large", detail={"max_bytes": max_bytes})
    try:
        payload = json.loads(raw or b"null")
    except (ValueError, RecursionError) as exc:
        # RecursionError: nesting deeper than the decoder can follow
        raise ValidationError("request body must be valid JSON") from exc
    return validate_payload(payload)


@router.post(
    "/records",
    response_model=RecordSaveResponse,
    response_model_exclude_none=True,
    status_code=201,
    tags=["records"],
)
async def save_record(
    request: Request,
    response: Response,
    identity: Identity = Depends(get_identity),
    x_content_hash: Optional[str] = Header(None, alias="X-Content-Hash"),
):
    """Persist the JSON body under the caller's tenant.

    Responds 201 when the store accepted the write and 202 when it was staged
    for a later replay.
    """
    payload = await _read_json_object(request)
    _note_tenant_fields(identity, "query", request.query_params, "save_record")
    _note_tenant_fields(identity, "body", payload, "save_record")

    runtime = get_runtime()
    result = await runtime.records.save(identity, payload, x_content_hash)
    if result.queued:
        response.status_code = 202
        return RecordSaveResponse(
            queued=True,
            key=result.key,
            content_hash=result.content_hash,
            pending_id=result.pending_id,
        )
    return RecordSaveResponse(
        queued=False,
        key=result.key,
        content_hash=result.content_hash,
        updated_at=result.record.updated_at if result.record else None,
    )


@router.get("/records", response_model=RecordListResponse, tags=["records"])
async def list_records(request: Request, identity: Identity = Depends(get_identity)):
    _note_tenant_fields(identity, "query", request.query_params, "list_records")
    runtime = get_runtime()
    records = await runtime.records.list_for(identity)
    items = [RecordOut.from_record(record) for record in records]
    return RecordListResponse(records=items, count=len(items))


@router.get(
    "/records/export",
    response_model=ExportResponse,
    tags=["operator"],
    dependencies=[Depends(require_operator)],
)
async def export_records(
    org_id: str = Query(..., alias="orgId"),
    user_id: str = Query(..., alias="userId"),
):
    validate_tenant_id(org_id, "orgId")
    validate_tenant_id(user_id, "userId")
    runtime = get_runtime()
    records = await runtime.records.export(org_id, user_id)
    items = [RecordOut.from_record(record) for record in records]
    return ExportResponse(org_id=org_id, user_id=user_id, records=items, count=len(items))


@router.get("/records/{content_hash}", response_model=RecordOut, tags=["records"])
async def get_record(content_hash: str, identity: Identity = Depends(get_identity)):
    content_hash = validate_content_hash(content_hash)
    runtime = get_runtime()
    record = await runtime.records.get_for(identity, content_hash)
    if record is None:
        raise NotFoundError("record not found")
    return RecordOut.from_record(record)


@router.delete(
    "/records",
    response_model=EraseResponse,
    tags=["operator"],
    dependencies=[Depends(require_operator)],
)
async def erase_records(
    org_id: str = Query(..., alias="orgId"),
    user_id: str = Query(..., alias="userId"),
):
    """Erase every record held for one tenant."""
    validate_tenant_id(org_id, "orgId")
    validate_tenant_id(user_id, "userId")
    runtime = get_runtime()
    deleted = await runtime.records.erase(org_id, user_id)
    return EraseResponse(org_id=org_id, user_id=user_id, deleted=deleted)


@router.get(
    "/ops/pending",
    response_model=PendingStatsResponse,
    tags=["operator"],
    dependencies=[Depends(require_operator)],
)
async def pending_stats():
    runtime = get_runtime()
    stats = await asyncio.to_thread(runtime.pending_sweeper.stats)
    return PendingStatsResponse(**stats)


__all__ = ["get_identity", "require_operator", "router"]
