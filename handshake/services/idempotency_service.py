"""Idempotency guard storing responses byte-for-byte per (applicant, key)."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.errors import IdempotencyConflict
from handshake.models.idempotency import IdempotencyRecord, IdempotencyStatus
from handshake.repositories import IdempotencyRepository

logger = structlog.get_logger(__name__)

Operation = Callable[[], Awaitable[tuple[int, bytes]]]


@dataclass(frozen=True)
class StoredResponse:
    """Response produced by the guarded operation, fresh or replayed."""

    status_code: int
    body: bytes
    replayed: bool


def request_fingerprint(method: str, path: str, payload: Any) -> str:
    """Digest of the request that makes two submissions "the same"."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    material = f"{method.upper()}\n{path}\n{canonical}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()


class IdempotencyService:
    """Run an operation at most once per key and replay its stored response.

    The claim row is inserted in the caller's transaction, so a concurrent
    duplicate blocks on the unique index until the first request commits or
    rolls back. The operation must not commit on its own.
    """

    def __init__(self, repository: IdempotencyRepository | None = None) -> None:
        self._repository = repository or IdempotencyRepository()

    async def execute(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        idempotency_key: str,
        fingerprint: str,
        operation: Operation,
    ) -> StoredResponse:
        """Return the stored response for the key, running `operation` on first use."""
        existing = await self._repository.get(db_session, applicant_id, idempotency_key)
        if existing is not None:
            return self._replay(existing, fingerprint)

        try:
            record = await self._repository.claim(
                db_session, applicant_id, idempotency_key, fingerprint
            )
            if record is None:
                existing = await self._repository.get(db_session, applicant_id, idempotency_key)
                if existing is None:
                    raise IdempotencyConflict("Idempotency key was claimed concurrently; retry.")
                return self._replay(existing, fingerprint)

            status_code, body = await operation()
            await self._repository.complete(db_session, record.id, status_code, body)
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        logger.info(
            "idempotent_request_stored",
            applicant_id=str(applicant_id),
            status_code=status_code,
        )
        return StoredResponse(status_code=status_code, body=body, replayed=False)

    def _replay(self, record: IdempotencyRecord, fingerprint: str) -> StoredResponse:
        if record.request_fingerprint != fingerprint:
            raise IdempotencyConflict(
                "Idempotency key was already used with a different request payload."
            )
        if (
            record.status != IdempotencyStatus.COMPLETED
            or record.response_status is None
            or record.response_body is None
        ):
            raise IdempotencyConflict("Idempotency key has no stored response.")
        logger.info("idempotent_request_replayed", applicant_id=str(record.applicant_id))
        return StoredResponse(
            status_code=record.response_status,
            body=record.response_body,
            replayed=True,
        )


@lru_cache
def get_idempotency_service() -> IdempotencyService:
    """Create and cache the idempotency guard."""
    return IdempotencyService()
