"""Schemas for the Stage 4 resumable upload."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field

from handshake.schemas.common import CamelModel, Link


class UploadTargetRequest(CamelModel):
    """Declared size and digest of `resume.zip`."""

    size: int = Field(gt=0)
    sha256: str = Field(pattern=r"^[0-9a-fA-F]{64}$")


class UploadTargetResponse(CamelModel):
    session_id: UUID
    upload_url: str
    offset: int
    size: int
    expires_at: datetime
    links: list[Link]


class UploadCompleteResponse(CamelModel):
    session_id: UUID
    size: int
    sha256: str
    stage: str
    links: list[Link]


class UploadProgressResponse(CamelModel):
    """Contiguous bytes received so far; sent with `308` and a `Range` header."""

    session_id: UUID
    offset: int
    size: int
    links: list[Link]
