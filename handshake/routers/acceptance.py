"""Acceptance token, final acceptance and JWKS routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.dependencies import get_database_session, get_registration_key
from handshake.schemas.acceptance import AcceptResponse, JWKSResponse, TokenResponse
from handshake.services.acceptance_service import AcceptanceService, get_acceptance_service
from handshake.services.audit_service import AuditService, get_audit_service

router = APIRouter(tags=["acceptance"])


@router.post("/token", response_model=TokenResponse)
async def issue_token(
    request: Request,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    acceptance_service: Annotated[AcceptanceService, Depends(get_acceptance_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    registration_key: Annotated[str | None, Depends(get_registration_key)],
) -> TokenResponse:
    """Sign an acceptance token with the current key."""
    issued = await acceptance_service.issue_token(db_session, registration_key)
    await audit_service.record(
        event_type="token.issued",
        success=True,
        request=request,
        stage="TokenPending",
        metadata={"kid": issued.kid},
    )
    return TokenResponse(
        token=issued.token,
        kid=issued.kid,
        expires_at=issued.expires_at,
        links=issued.links,
    )


@router.post("/accept", response_model=AcceptResponse)
async def accept(
    request: Request,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    acceptance_service: Annotated[AcceptanceService, Depends(get_acceptance_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    registration_key: Annotated[str | None, Depends(get_registration_key)],
    authorization: Annotated[str | None, Header()] = None,
) -> AcceptResponse:
    """Present the acceptance token and finish the handshake."""
    outcome = await acceptance_service.accept(db_session, registration_key, authorization)
    await audit_service.record(
        event_type="applicant.accepted",
        success=True,
        request=request,
        applicant_id=outcome.applicant_id,
        stage=outcome.stage.value,
    )
    return AcceptResponse(
        applicant_id=outcome.applicant_id,
        stage=outcome.stage.value,
        terminal=True,
        links=outcome.links,
    )


@router.get("/.well-known/jwks.json", response_model=JWKSResponse)
async def jwks(
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    acceptance_service: Annotated[AcceptanceService, Depends(get_acceptance_service)],
) -> JWKSResponse:
    """Publish public keys whose validity windows are open."""
    return JWKSResponse.model_validate(await acceptance_service.jwks(db_session))
