"""Shared schema building blocks."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Link(CamelModel):
    """Hypermedia control pointing at the request that moves the handshake forward."""

    rel: str
    href: str
    method: Literal["GET", "POST", "PUT", "PATCH"]


class ErrorResponse(BaseModel):
    """Error body rendered by the global exception handlers."""

    detail: str
    code: str
