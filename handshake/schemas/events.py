"""Schemas for Stage 5 stream acknowledgment."""

from __future__ import annotations

from pydantic import Field

from handshake.schemas.common import CamelModel, Link


class AckRequest(CamelModel):
    last_event_id: int = Field(ge=1)


class AckResponse(CamelModel):
    last_event_id: int
    stage: str
    links: list[Link]
