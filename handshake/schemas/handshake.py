"""Schemas for initiation, challenge verification and status endpoints."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field

from handshake.schemas.common import CamelModel, Link


class InitRequest(CamelModel):
    """Applicant announces its callback endpoint."""

    callback_url: str = Field(min_length=1, max_length=2048)


class InitResponse(CamelModel):
    applicant_id: UUID
    challenge_id: UUID
    nonce: str
    expires_at: datetime
    links: list[Link]


class ChallengeVerifyRequest(CamelModel):
    """Applicant echoes the challenge it received; the HMAC travels in `X-Signature`."""

    challenge_id: UUID
    nonce: str = Field(min_length=1, max_length=128)


class ChallengeVerifyResponse(CamelModel):
    applicant_id: UUID
    registration_key: str
    stage: str
    links: list[Link]


class StatusResponse(CamelModel):
    """Current position of the applicant in the handshake."""

    applicant_id: UUID
    stage: str
    terminal: bool
    failed_stage: str | None = None
    failure_reason: str | None = None
    cooldown_until: datetime | None = None
    links: list[Link]
