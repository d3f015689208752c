"""Resumable upload routes."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.dependencies import get_database_session, get_registration_key
from handshake.models.applicant import ApplicantStage
from handshake.schemas.upload import (
    UploadCompleteResponse,
    UploadProgressResponse,
    UploadTargetRequest,
    UploadTargetResponse,
)
from handshake.services.audit_service import AuditService, get_audit_service
from handshake.services.upload_service import UploadService, get_upload_service, range_header

router = APIRouter(tags=["uploads"])

# 308 "Resume Incomplete": the client keeps sending from the acknowledged offset.
RESUME_INCOMPLETE = 308


@router.post("/upload", response_model=UploadTargetResponse, status_code=201)
async def request_upload(
    payload: UploadTargetRequest,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    upload_service: Annotated[UploadService, Depends(get_upload_service)],
    registration_key: Annotated[str | None, Depends(get_registration_key)],
) -> UploadTargetResponse:
    """Return a pre-signed URL for the archive, resuming a live session when possible."""
    target = await upload_service.issue_target(
        db_session, registration_key, size=payload.size, sha256=payload.sha256
    )
    return UploadTargetResponse(
        session_id=target.session_id,
        upload_url=target.upload_url,
        offset=target.offset,
        size=target.size,
        expires_at=target.expires_at,
        links=target.links,
    )


@router.put("/uploads/{session_id}")
async def put_chunk(
    session_id: UUID,
    request: Request,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    upload_service: Annotated[UploadService, Depends(get_upload_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    expires: Annotated[int, Query()],
    signature: Annotated[str, Query(min_length=1)],
    content_range: Annotated[str | None, Header(alias="Content-Range")] = None,
) -> Response:
    """Append one contiguous chunk, or answer `bytes */total` offset queries."""
    body = await request.body()
    outcome = await upload_service.put(
        db_session,
        session_id=session_id,
        expires=expires,
        signature=signature,
        content_range=content_range,
        body=body,
    )
    if not outcome.complete:
        progress = UploadProgressResponse(
            session_id=outcome.session_id,
            offset=outcome.offset,
            size=outcome.size,
            links=outcome.links,
        )
        return JSONResponse(
            status_code=RESUME_INCOMPLETE,
            content=progress.model_dump(mode="json", by_alias=True),
            headers=range_header(outcome.offset),
        )

    await audit_service.record(
        event_type="upload.completed",
        success=True,
        request=request,
        stage=ApplicantStage.STREAMING.value,
        metadata={"session_id": str(outcome.session_id), "size": outcome.size},
    )
    completed = UploadCompleteResponse(
        session_id=outcome.session_id,
        size=outcome.size,
        sha256=outcome.sha256,
        stage=ApplicantStage.STREAMING.value,
        links=outcome.links,
    )
    return JSONResponse(
        status_code=201,
        content=completed.model_dump(mode="json", by_alias=True),
        headers=range_header(outcome.size),
    )
