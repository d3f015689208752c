"""Server-sent event stream and acknowledgment routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.dependencies import get_database_session, get_registration_key
from handshake.models.applicant import ApplicantStage
from handshake.schemas.events import AckRequest, AckResponse
from handshake.services.audit_service import AuditService, get_audit_service
from handshake.services.event_stream_service import (
    EventStreamService,
    get_event_stream_service,
)

router = APIRouter(tags=["events"])

_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/events", response_class=StreamingResponse)
async def stream_events(
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    stream_service: Annotated[EventStreamService, Depends(get_event_stream_service)],
    registration_key: Annotated[str | None, Depends(get_registration_key)],
    last_event_id: Annotated[str | None, Header(alias="Last-Event-ID")] = None,
) -> StreamingResponse:
    """Stream the owed events; reconnect with `Last-Event-ID` to resume."""
    plan = await stream_service.open_stream(db_session, registration_key, last_event_id)
    return StreamingResponse(
        stream_service.stream(plan),
        media_type="text/event-stream",
        headers=_STREAM_HEADERS,
    )


@router.post("/ack", response_model=AckResponse)
async def acknowledge(
    payload: AckRequest,
    request: Request,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    stream_service: Annotated[EventStreamService, Depends(get_event_stream_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    registration_key: Annotated[str | None, Depends(get_registration_key)],
) -> AckResponse:
    """Acknowledge events up to `lastEventId`; the final id completes the stream."""
    outcome = await stream_service.acknowledge(
        db_session, registration_key, payload.last_event_id
    )
    if outcome.stage == ApplicantStage.TOKEN_PENDING:
        await audit_service.record(
            event_type="stream.completed",
            success=True,
            request=request,
            stage=outcome.stage.value,
            metadata={"last_event_id": outcome.last_event_id},
        )
    return AckResponse(
        last_event_id=outcome.last_event_id,
        stage=outcome.stage.value,
        links=outcome.links,
    )
