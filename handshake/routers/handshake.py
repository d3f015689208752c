"""Initiation, challenge verification and status routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.core.callbacks import SIGNATURE_HEADER
from handshake.dependencies import get_database_session, get_registration_key
from handshake.models.applicant import ApplicantStage
from handshake.schemas.handshake import (
    ChallengeVerifyRequest,
    ChallengeVerifyResponse,
    InitRequest,
    InitResponse,
    StatusResponse,
)
from handshake.services.audit_service import AuditService, get_audit_service
from handshake.services.challenge_service import ChallengeService, get_challenge_service
from handshake.services.orchestrator import StageOrchestrator, get_orchestrator

router = APIRouter(tags=["handshake"])


@router.post("/init", response_model=InitResponse, status_code=201)
async def initiate(
    payload: InitRequest,
    request: Request,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    challenge_service: Annotated[ChallengeService, Depends(get_challenge_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
) -> InitResponse:
    """Register a callback endpoint and push a challenge to it."""
    issued = await challenge_service.initiate(db_session, payload.callback_url)
    challenge_service.schedule_delivery(issued.challenge_id)
    await audit_service.record(
        event_type="applicant.initiated",
        success=True,
        request=request,
        applicant_id=issued.applicant_id,
        stage=ApplicantStage.CHALLENGE_PENDING.value,
        metadata={"challenge_id": str(issued.challenge_id)},
    )
    return InitResponse(
        applicant_id=issued.applicant_id,
        challenge_id=issued.challenge_id,
        nonce=issued.nonce,
        expires_at=issued.expires_at,
        links=issued.links,
    )


@router.post("/challenge/verify", response_model=ChallengeVerifyResponse)
async def verify_challenge(
    payload: ChallengeVerifyRequest,
    request: Request,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    challenge_service: Annotated[ChallengeService, Depends(get_challenge_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    signature: Annotated[str | None, Header(alias=SIGNATURE_HEADER)] = None,
) -> ChallengeVerifyResponse:
    """Verify the HMAC response and hand out the registration key exactly once."""
    verified = await challenge_service.verify(
        db_session,
        challenge_id=payload.challenge_id,
        nonce=payload.nonce,
        signature=signature,
    )
    await audit_service.record(
        event_type="challenge.verified",
        success=True,
        request=request,
        applicant_id=verified.applicant_id,
        stage=verified.stage.value,
    )
    return ChallengeVerifyResponse(
        applicant_id=verified.applicant_id,
        registration_key=verified.registration_key,
        stage=verified.stage.value,
        links=verified.links,
    )


@router.get("/status", response_model=StatusResponse)
async def status(
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    orchestrator: Annotated[StageOrchestrator, Depends(get_orchestrator)],
    registration_key: Annotated[str | None, Depends(get_registration_key)],
) -> StatusResponse:
    """Report the applicant's stage, any pending cooldown, and where to go next."""
    applicant = await orchestrator.authenticate(db_session, registration_key)
    return StatusResponse(
        applicant_id=applicant.id,
        stage=applicant.stage.value,
        terminal=applicant.stage == ApplicantStage.ACCEPTED,
        failed_stage=applicant.failed_stage.value if applicant.failed_stage else None,
        failure_reason=applicant.failure_reason,
        cooldown_until=applicant.cooldown_until,
        links=orchestrator.next_links(applicant.stage),
    )
