"""Audit service backed by immutable database events."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Sequence
from functools import lru_cache
from typing import Any
from uuid import NAMESPACE_URL, UUID, uuid5

import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from handshake.config import get_settings
from handshake.db.session import get_session_factory
from handshake.models.audit_event import AuditEvent

logger = structlog.get_logger(__name__)

ProxyNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

_REDACTED = "***REDACTED***"
_SENSITIVE_KEY_PARTS = (
    "authorization",
    "key",
    "nonce",
    "secret",
    "signature",
    "token",
)


def _is_sensitive_key(key: str) -> bool:
    """Return True when metadata key likely contains credential material."""
    normalized = key.strip().lower().replace("-", "_")
    return any(part in normalized for part in _SENSITIVE_KEY_PARTS)


def _coerce_uuid(value: str | UUID | None, deterministic: bool = False) -> UUID | None:
    """Normalize UUID-like values and optionally derive deterministic UUIDs."""
    if value is None:
        return None
    if isinstance(value, UUID):
        return value
    text = value.strip()
    if not text:
        return None
    try:
        return UUID(text)
    except ValueError:
        if deterministic:
            return uuid5(NAMESPACE_URL, text)
        return None


def _coerce_ip(value: str | None) -> str | None:
    """Normalize IP address strings to canonical values."""
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def parse_trusted_proxies(values: Iterable[str]) -> tuple[ProxyNetwork, ...]:
    """Parse proxy addresses or CIDR blocks allowed to set `X-Forwarded-For`."""
    return tuple(ipaddress.ip_network(value.strip(), strict=False) for value in values)


def _is_trusted(address: str, trusted_proxies: Sequence[ProxyNetwork]) -> bool:
    parsed = ipaddress.ip_address(address)
    return any(parsed in network for network in trusted_proxies)


def extract_client_ip(
    request: Request, trusted_proxies: Sequence[ProxyNetwork] = ()
) -> str | None:
    """Extract the canonical client IP.

    `X-Forwarded-For` is honoured only when the socket peer is a trusted proxy.
    Hops are then walked from the nearest outwards and the first address that
    is not itself a trusted proxy is the client.
    """
    client = request.client
    peer = _coerce_ip(client.host) if client is not None else None
    if peer is None or not _is_trusted(peer, trusted_proxies):
        return peer

    hops = [_coerce_ip(hop) for hop in request.headers.get("x-forwarded-for", "").split(",")]
    for hop in reversed(hops):
        if hop is None:
            break
        if not _is_trusted(hop, trusted_proxies):
            return hop
    return peer


def _extract_correlation_id(request: Request) -> UUID | None:
    """Resolve request correlation ID into UUID form for storage."""
    raw_value = getattr(request.state, "correlation_id", None) or request.headers.get(
        "x-correlation-id"
    )
    if raw_value is None:
        return None
    return _coerce_uuid(str(raw_value), deterministic=True)


def _sanitize_metadata_value(value: Any) -> Any:
    """Coerce metadata values to JSON-safe primitives."""
    if value is None or isinstance(value, bool | int | float | str):
        return value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return sanitize_metadata(value)
    if isinstance(value, list):
        return [_sanitize_metadata_value(item) for item in value]
    return str(value)


def sanitize_metadata(metadata: dict[str, Any] | None) -> dict[str, Any] | None:
    """Redact credential-bearing keys from metadata."""
    if metadata is None:
        return None
    sanitized: dict[str, Any] = {}
    for key, value in metadata.items():
        if _is_sensitive_key(key):
            sanitized[key] = _REDACTED
            continue
        sanitized[key] = _sanitize_metadata_value(value)
    return sanitized or None


class AuditService:
    """Persist immutable audit events without affecting handshake outcomes.

    Rows are written through a dedicated session so that a request whose own
    transaction was rolled back still leaves its audit trail behind.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        trusted_proxies: Sequence[ProxyNetwork] = (),
    ) -> None:
        self._session_factory = session_factory
        self._trusted_proxies = tuple(trusted_proxies)

    async def record(
        self,
        event_type: str,
        success: bool,
        request: Request | None = None,
        applicant_id: str | UUID | None = None,
        stage: str | None = None,
        failure_reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Write one append-only audit row and swallow write failures."""
        if applicant_id is None:
            applicant_id = structlog.contextvars.get_contextvars().get("applicant_id")
        audit_event = AuditEvent(
            event_type=event_type.strip(),
            applicant_id=_coerce_uuid(applicant_id),
            stage=stage,
            ip_address=(
                extract_client_ip(request, self._trusted_proxies) if request is not None else None
            ),
            user_agent=request.headers.get("user-agent") if request is not None else None,
            correlation_id=_extract_correlation_id(request) if request is not None else None,
            success=success,
            failure_reason=failure_reason.strip() if failure_reason else None,
            event_metadata=sanitize_metadata(metadata),
        )

        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as audit_db:
                audit_db.add(audit_event)
                await audit_db.commit()
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                event_type=event_type,
                success=success,
                error=str(exc),
            )


@lru_cache
def get_audit_service() -> AuditService:
    """Create and cache audit service dependency."""
    return AuditService(
        trusted_proxies=parse_trusted_proxies(get_settings().app.trusted_proxies)
    )
