"""Shared FastAPI dependency helpers."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.config import get_settings
from handshake.db.session import get_db_session
from handshake.services.audit_service import (
    ProxyNetwork,
    extract_client_ip,
    parse_trusted_proxies,
)

REGISTRATION_KEY_HEADER = "X-Registration-Key"


async def get_database_session() -> AsyncGenerator[AsyncSession, None]:
    """Expose the request-scoped async database session dependency."""
    async for session in get_db_session():
        yield session


def get_registration_key(
    x_registration_key: Annotated[str | None, Header(alias=REGISTRATION_KEY_HEADER)] = None,
) -> str | None:
    """Return the raw registration key; services decide whether it is valid."""
    return x_registration_key


@lru_cache
def get_trusted_proxies() -> tuple[ProxyNetwork, ...]:
    """Proxies whose `X-Forwarded-For` header is believed."""
    return parse_trusted_proxies(get_settings().app.trusted_proxies)


def get_client_ip(
    request: Request,
    trusted_proxies: Annotated[tuple[ProxyNetwork, ...], Depends(get_trusted_proxies)],
) -> str:
    """Resolve the rate-limiting identity for the caller."""
    return extract_client_ip(request, trusted_proxies) or "unknown"
