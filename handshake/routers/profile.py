"""Profile draft and conditional update routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.dependencies import get_client_ip, get_database_session, get_registration_key
from handshake.schemas.profile import (
    FieldUpdateRequest,
    FieldUpdateResponse,
    ProfileCreateRequest,
    ProfileResponse,
)
from handshake.services.audit_service import AuditService, get_audit_service
from handshake.services.idempotency_service import request_fingerprint
from handshake.services.profile_service import ProfileService, get_profile_service

router = APIRouter(prefix="/profile", tags=["profile"])

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
REPLAYED_HEADER = "Idempotent-Replayed"


@router.post("", status_code=201, response_model=ProfileResponse)
async def create_profile(
    payload: ProfileCreateRequest,
    request: Request,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    profile_service: Annotated[ProfileService, Depends(get_profile_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    registration_key: Annotated[str | None, Depends(get_registration_key)],
    idempotency_key: Annotated[
        str, Header(alias=IDEMPOTENCY_KEY_HEADER, min_length=1, max_length=255)
    ],
) -> Response:
    """Open the profile draft; retries with the same key replay the first response."""
    stored = await profile_service.create_profile(
        db_session,
        registration_key=registration_key,
        idempotency_key=idempotency_key,
        fields=payload.root,
        fingerprint=request_fingerprint(request.method, request.url.path, payload.root),
    )
    if not stored.replayed:
        await audit_service.record(
            event_type="profile.drafted",
            success=True,
            request=request,
            stage="ProfileDraft",
            metadata={"field_count": len(payload.root)},
        )
    return Response(
        content=stored.body,
        status_code=stored.status_code,
        media_type="application/json",
        headers={REPLAYED_HEADER: "true" if stored.replayed else "false"},
    )


@router.get("", response_model=ProfileResponse)
async def get_profile(
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    profile_service: Annotated[ProfileService, Depends(get_profile_service)],
    registration_key: Annotated[str | None, Depends(get_registration_key)],
) -> ProfileResponse:
    """Return the stored fields and their version tokens."""
    return await profile_service.get_profile(db_session, registration_key)


# The body is read raw so the rate-limit token is spent before it is validated.
@router.patch(
    "/{field_name}",
    response_model=FieldUpdateResponse,
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {"application/json": {"schema": FieldUpdateRequest.model_json_schema()}},
        }
    },
)
async def update_field(
    field_name: str,
    request: Request,
    response: Response,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    profile_service: Annotated[ProfileService, Depends(get_profile_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    registration_key: Annotated[str | None, Depends(get_registration_key)],
    client_ip: Annotated[str, Depends(get_client_ip)],
    if_match: Annotated[str | None, Header(alias="If-Match")] = None,
) -> FieldUpdateResponse:
    """Conditionally write one field; a success locks the profile."""
    updated = await profile_service.conditional_update(
        db_session,
        client_ip=client_ip,
        registration_key=registration_key,
        field_name=field_name,
        if_match=if_match,
        body=await request.body(),
    )
    await audit_service.record(
        event_type="profile.locked",
        success=True,
        request=request,
        stage=updated.stage.value,
        metadata={"field": field_name, "version": updated.version},
    )
    response.headers["ETag"] = updated.etag
    return FieldUpdateResponse(
        name=updated.name,
        value=updated.value,
        version=updated.version,
        etag=updated.etag,
        stage=updated.stage.value,
        links=updated.links,
    )
