"""Challenge persistence."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.models.challenge import Challenge, ChallengeStatus


class ChallengeRepository:
    """Row-level access to Stage 1 challenges."""

    async def create(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        nonce: str,
        signing_secret: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Challenge:
        """Insert a pending challenge."""
        challenge = Challenge(
            applicant_id=applicant_id,
            nonce=nonce,
            signing_secret=signing_secret,
            status=ChallengeStatus.PENDING,
            issued_at=issued_at,
            expires_at=expires_at,
            delivery_attempts=0,
        )
        db_session.add(challenge)
        await db_session.flush()
        return challenge

    async def get(self, db_session: AsyncSession, challenge_id: UUID) -> Challenge | None:
        """Fetch one challenge by id."""
        result = await db_session.execute(select(Challenge).where(Challenge.id == challenge_id))
        return result.scalar_one_or_none()

    async def transition(
        self,
        db_session: AsyncSession,
        challenge_id: UUID,
        from_status: ChallengeStatus,
        to_status: ChallengeStatus,
    ) -> bool:
        """Change status only from the expected one; exactly one caller wins."""
        statement = (
            update(Challenge)
            .where(Challenge.id == challenge_id, Challenge.status == from_status)
            .values(status=to_status)
        )
        result = await db_session.execute(statement)
        return result.rowcount == 1

    async def record_delivery_attempt(
        self,
        db_session: AsyncSession,
        challenge_id: UUID,
        delivered_at: datetime | None,
    ) -> None:
        """Count one callback attempt and stamp the first successful delivery."""
        values: dict[str, object] = {"delivery_attempts": Challenge.delivery_attempts + 1}
        if delivered_at is not None:
            values["delivered_at"] = delivered_at
        await db_session.execute(
            update(Challenge).where(Challenge.id == challenge_id).values(**values)
        )

    async def list_expired_pending(
        self, db_session: AsyncSession, now: datetime, limit: int = 100
    ) -> list[Challenge]:
        """Return pending challenges past their expiry."""
        statement = (
            select(Challenge)
            .where(Challenge.status == ChallengeStatus.PENDING, Challenge.expires_at <= now)
            .order_by(Challenge.expires_at)
            .limit(limit)
        )
        return list((await db_session.execute(statement)).scalars().all())

    async def expire_for_applicant(self, db_session: AsyncSession, applicant_id: UUID) -> int:
        """Expire every pending challenge of the applicant."""
        statement = (
            update(Challenge)
            .where(
                Challenge.applicant_id == applicant_id,
                Challenge.status == ChallengeStatus.PENDING,
            )
            .values(status=ChallengeStatus.EXPIRED)
        )
        result = await db_session.execute(statement)
        return result.rowcount
