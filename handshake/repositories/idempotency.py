"""Idempotency record persistence."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.models.idempotency import IdempotencyRecord, IdempotencyStatus


class IdempotencyRepository:
    """Claim-then-complete storage keyed by (applicant, idempotency key)."""

    async def claim(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        idempotency_key: str,
        fingerprint: str,
    ) -> IdempotencyRecord | None:
        """Insert a pending record, or return None when the key is already taken."""
        record = IdempotencyRecord(
            applicant_id=applicant_id,
            idempotency_key=idempotency_key,
            request_fingerprint=fingerprint,
            status=IdempotencyStatus.PENDING,
        )
        try:
            async with db_session.begin_nested():
                db_session.add(record)
                await db_session.flush()
        except IntegrityError:
            return None
        return record

    async def get(
        self, db_session: AsyncSession, applicant_id: UUID, idempotency_key: str
    ) -> IdempotencyRecord | None:
        """Fetch the record for the key."""
        statement = select(IdempotencyRecord).where(
            IdempotencyRecord.applicant_id == applicant_id,
            IdempotencyRecord.idempotency_key == idempotency_key,
        )
        return (await db_session.execute(statement)).scalar_one_or_none()

    async def complete(
        self,
        db_session: AsyncSession,
        record_id: UUID,
        response_status: int,
        response_body: bytes,
    ) -> None:
        """Store the produced response."""
        await db_session.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.id == record_id)
            .values(
                status=IdempotencyStatus.COMPLETED,
                response_status=response_status,
                response_body=response_body,
            )
        )
