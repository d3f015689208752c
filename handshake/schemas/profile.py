"""Schemas for Stage 2 and Stage 3 profile endpoints."""

from __future__ import annotations

import re
from uuid import UUID

from pydantic import Field, RootModel, field_validator

from handshake.schemas.common import CamelModel, Link

FIELD_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}$")
MAX_PROFILE_FIELDS = 32
MAX_FIELD_VALUE_LENGTH = 4096


class ProfileCreateRequest(RootModel[dict[str, str]]):
    """Flat `{field: value}` mapping submitted once to open the draft."""

    @field_validator("root")
    @classmethod
    def validate_fields(cls, value: dict[str, str]) -> dict[str, str]:
        """Require a bounded set of well-formed field names and values."""
        if not value:
            raise ValueError("Profile must contain at least one field.")
        if len(value) > MAX_PROFILE_FIELDS:
            raise ValueError(f"Profile may contain at most {MAX_PROFILE_FIELDS} fields.")
        for name, field_value in value.items():
            if not FIELD_NAME_PATTERN.match(name):
                raise ValueError(f"Invalid profile field name: {name!r}.")
            if len(field_value) > MAX_FIELD_VALUE_LENGTH:
                raise ValueError(f"Profile field {name!r} is too long.")
        return value


class ProfileFieldView(CamelModel):
    name: str
    value: str
    version: int
    etag: str


class ProfileResponse(CamelModel):
    applicant_id: UUID
    stage: str
    fields: list[ProfileFieldView]
    links: list[Link]


class FieldUpdateRequest(CamelModel):
    value: str = Field(max_length=MAX_FIELD_VALUE_LENGTH)


class FieldUpdateResponse(ProfileFieldView):
    stage: str
    links: list[Link]
