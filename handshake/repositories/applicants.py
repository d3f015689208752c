"""Applicant persistence with compare-and-set stage transitions."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.models.applicant import Applicant, ApplicantStage


class ApplicantRepository:
    """Row-level access to applicant records; no statement spans two applicants."""

    async def create(self, db_session: AsyncSession, callback_url: str, now: datetime) -> Applicant:
        """Insert a new applicant in the Init stage."""
        applicant = Applicant(
            callback_url=callback_url,
            stage=ApplicantStage.INIT,
            terminal=False,
            last_activity_at=now,
        )
        db_session.add(applicant)
        await db_session.flush()
        return applicant

    async def get(self, db_session: AsyncSession, applicant_id: UUID) -> Applicant | None:
        """Fetch one applicant by primary key."""
        statement = select(Applicant).where(Applicant.id == applicant_id)
        result = await db_session.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_registration_key_hash(
        self, db_session: AsyncSession, key_hash: str
    ) -> Applicant | None:
        """Fetch the applicant owning a hashed registration key."""
        statement = select(Applicant).where(Applicant.registration_key_hash == key_hash)
        result = await db_session.execute(statement)
        return result.scalar_one_or_none()

    async def compare_and_set_stage(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        from_stage: ApplicantStage,
        to_stage: ApplicantStage,
        now: datetime,
        terminal: bool = False,
    ) -> bool:
        """Move the applicant to `to_stage` only if it is still in `from_stage`."""
        statement = (
            update(Applicant)
            .where(
                Applicant.id == applicant_id,
                Applicant.stage == from_stage,
                Applicant.failed_stage.is_(None),
            )
            .values(stage=to_stage, last_activity_at=now, terminal=terminal)
        )
        result = await db_session.execute(statement)
        return result.rowcount == 1

    async def set_registration_key_hash(
        self, db_session: AsyncSession, applicant_id: UUID, key_hash: str
    ) -> bool:
        """Store the key hash once; an already-keyed applicant is left untouched."""
        statement = (
            update(Applicant)
            .where(Applicant.id == applicant_id, Applicant.registration_key_hash.is_(None))
            .values(registration_key_hash=key_hash)
        )
        result = await db_session.execute(statement)
        return result.rowcount == 1

    async def record_failure(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        stage: ApplicantStage,
        reason: str,
        now: datetime,
        cooldown_until: datetime,
    ) -> bool:
        """Mark the stage failed while the applicant is still in it."""
        statement = (
            update(Applicant)
            .where(
                Applicant.id == applicant_id,
                Applicant.stage == stage,
                Applicant.failed_stage.is_(None),
            )
            .values(
                failed_stage=stage,
                failure_reason=reason,
                failed_at=now,
                cooldown_until=cooldown_until,
                last_activity_at=now,
            )
        )
        result = await db_session.execute(statement)
        return result.rowcount == 1

    async def clear_failure(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        failed_stage: ApplicantStage,
        reset_stage: ApplicantStage,
        now: datetime,
    ) -> bool:
        """Lift an elapsed cooldown and rewind to the failed stage's entry point."""
        statement = (
            update(Applicant)
            .where(Applicant.id == applicant_id, Applicant.failed_stage == failed_stage)
            .values(
                stage=reset_stage,
                failed_stage=None,
                failure_reason=None,
                failed_at=None,
                cooldown_until=None,
                last_activity_at=now,
            )
        )
        result = await db_session.execute(statement)
        return result.rowcount == 1

    async def find_cooling_down(
        self, db_session: AsyncSession, callback_url: str, now: datetime
    ) -> Applicant | None:
        """Return an applicant for the callback URL whose failure cooldown has not elapsed."""
        statement = (
            select(Applicant)
            .where(Applicant.callback_url == callback_url, Applicant.cooldown_until > now)
            .order_by(Applicant.cooldown_until.desc())
            .limit(1)
        )
        result = await db_session.execute(statement)
        return result.scalar_one_or_none()
