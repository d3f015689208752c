"""Schemas for acceptance token issuance and final acceptance."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from handshake.schemas.common import CamelModel, Link


class TokenResponse(CamelModel):
    token: str
    kid: str
    expires_at: datetime
    links: list[Link]


class AcceptResponse(CamelModel):
    applicant_id: UUID
    stage: str
    terminal: bool
    links: list[Link]


class JWKSResponse(BaseModel):
    """Public JSON Web Key Set."""

    keys: list[dict[str, str]]
