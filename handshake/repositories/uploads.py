"""Upload session persistence."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.models.upload import UploadSession, UploadStatus


class UploadRepository:
    """Row-level access to upload sessions with a monotonic offset."""

    async def create_session(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        declared_size: int,
        declared_sha256: str,
        now: datetime,
        url_expires_at: datetime,
    ) -> UploadSession:
        """Insert an in-progress session at offset 0."""
        upload = UploadSession(
            applicant_id=applicant_id,
            resource_name="resume.zip",
            declared_size=declared_size,
            declared_sha256=declared_sha256,
            offset=0,
            status=UploadStatus.IN_PROGRESS,
            last_chunk_at=now,
            url_expires_at=url_expires_at,
        )
        db_session.add(upload)
        await db_session.flush()
        return upload

    async def get_session(self, db_session: AsyncSession, session_id: UUID) -> UploadSession | None:
        """Fetch one session by id."""
        statement = select(UploadSession).where(UploadSession.id == session_id)
        return (await db_session.execute(statement)).scalar_one_or_none()

    async def get_live_session(
        self, db_session: AsyncSession, applicant_id: UUID
    ) -> UploadSession | None:
        """Return the applicant's in-progress session, if any."""
        statement = (
            select(UploadSession)
            .where(
                UploadSession.applicant_id == applicant_id,
                UploadSession.status == UploadStatus.IN_PROGRESS,
            )
            .order_by(UploadSession.created_at.desc())
            .limit(1)
        )
        return (await db_session.execute(statement)).scalar_one_or_none()

    async def advance_offset(
        self,
        db_session: AsyncSession,
        session_id: UUID,
        expected_offset: int,
        new_offset: int,
        now: datetime,
    ) -> bool:
        """Move the high-water mark forward only from the expected offset."""
        statement = (
            update(UploadSession)
            .where(
                UploadSession.id == session_id,
                UploadSession.status == UploadStatus.IN_PROGRESS,
                UploadSession.offset == expected_offset,
            )
            .values(offset=new_offset, last_chunk_at=now)
        )
        result = await db_session.execute(statement)
        return result.rowcount == 1

    async def extend_url(
        self, db_session: AsyncSession, session_id: UUID, url_expires_at: datetime
    ) -> None:
        """Move the pre-signed URL expiry of a resumed session."""
        statement = (
            update(UploadSession)
            .where(UploadSession.id == session_id)
            .values(url_expires_at=url_expires_at)
        )
        await db_session.execute(statement)

    async def mark_status(
        self,
        db_session: AsyncSession,
        session_id: UUID,
        to_status: UploadStatus,
        failure_reason: str | None = None,
    ) -> bool:
        """Finish an in-progress session as complete or failed."""
        statement = (
            update(UploadSession)
            .where(
                UploadSession.id == session_id,
                UploadSession.status == UploadStatus.IN_PROGRESS,
            )
            .values(status=to_status, failure_reason=failure_reason)
        )
        result = await db_session.execute(statement)
        return result.rowcount == 1

    async def list_stalled(
        self, db_session: AsyncSession, cutoff: datetime, limit: int = 100
    ) -> list[UploadSession]:
        """Return in-progress sessions with no chunk since the cutoff."""
        statement = (
            select(UploadSession)
            .where(
                UploadSession.status == UploadStatus.IN_PROGRESS,
                UploadSession.last_chunk_at <= cutoff,
            )
            .order_by(UploadSession.last_chunk_at)
            .limit(limit)
        )
        return list((await db_session.execute(statement)).scalars().all())

    async def fail_live_sessions(
        self, db_session: AsyncSession, applicant_id: UUID, failure_reason: str
    ) -> list[UUID]:
        """Fail every in-progress session of the applicant and return their ids."""
        statement = (
            update(UploadSession)
            .where(
                UploadSession.applicant_id == applicant_id,
                UploadSession.status == UploadStatus.IN_PROGRESS,
            )
            .values(status=UploadStatus.FAILED, failure_reason=failure_reason)
            .returning(UploadSession.id)
        )
        result = await db_session.execute(statement)
        return list(result.scalars().all())
