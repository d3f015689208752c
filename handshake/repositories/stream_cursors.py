"""Event stream cursor persistence."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.models.applicant import Applicant, ApplicantStage
from handshake.models.stream_cursor import StreamCursor


class StreamCursorRepository:
    """Row-level access to per-applicant stream cursors."""

    async def get(self, db_session: AsyncSession, applicant_id: UUID) -> StreamCursor | None:
        """Fetch the applicant cursor."""
        statement = select(StreamCursor).where(StreamCursor.applicant_id == applicant_id)
        return (await db_session.execute(statement)).scalar_one_or_none()

    async def get_or_create(self, db_session: AsyncSession, applicant_id: UUID) -> StreamCursor:
        """Fetch the cursor, creating a fresh one on first connection."""
        cursor = await self.get(db_session, applicant_id)
        if cursor is not None:
            return cursor
        cursor = StreamCursor(
            applicant_id=applicant_id,
            next_seq=1,
            last_acked_seq=0,
            generation=0,
            connected=False,
        )
        db_session.add(cursor)
        await db_session.flush()
        return cursor

    async def open_connection(
        self, db_session: AsyncSession, applicant_id: UUID, now: datetime
    ) -> int:
        """Bump the connection generation and return the new value."""
        statement = (
            update(StreamCursor)
            .where(StreamCursor.applicant_id == applicant_id)
            .values(generation=StreamCursor.generation + 1, connected=True, last_seen_at=now)
            .returning(StreamCursor.generation)
        )
        return int((await db_session.execute(statement)).scalar_one())

    async def record_progress(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        next_seq: int,
        now: datetime,
        budget_reached: bool,
    ) -> None:
        """Raise the emitted high-water mark; never lowers it."""
        values: dict[str, object] = {
            "next_seq": func.greatest(StreamCursor.next_seq, next_seq),
            "last_seen_at": now,
        }
        if budget_reached:
            values["budget_emitted_at"] = func.coalesce(StreamCursor.budget_emitted_at, now)
        await db_session.execute(
            update(StreamCursor).where(StreamCursor.applicant_id == applicant_id).values(**values)
        )

    async def close_connection(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        generation: int,
        now: datetime,
    ) -> bool:
        """Mark the connection closed unless a newer generation already replaced it."""
        statement = (
            update(StreamCursor)
            .where(
                StreamCursor.applicant_id == applicant_id,
                StreamCursor.generation == generation,
            )
            .values(connected=False, last_seen_at=now)
        )
        result = await db_session.execute(statement)
        return result.rowcount == 1

    async def acknowledge(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        seq: int,
        now: datetime,
    ) -> bool:
        """Advance the acknowledged id when `seq` was emitted and not yet acknowledged."""
        statement = (
            update(StreamCursor)
            .where(
                StreamCursor.applicant_id == applicant_id,
                StreamCursor.last_acked_seq < seq,
                StreamCursor.next_seq > seq,
            )
            .values(last_acked_seq=seq, last_seen_at=now)
        )
        result = await db_session.execute(statement)
        return result.rowcount == 1

    async def list_streaming(
        self, db_session: AsyncSession, limit: int = 500
    ) -> list[StreamCursor]:
        """Return cursors of applicants currently in the Streaming stage."""
        statement = (
            select(StreamCursor)
            .join(Applicant, Applicant.id == StreamCursor.applicant_id)
            .where(
                Applicant.stage == ApplicantStage.STREAMING,
                Applicant.failed_stage.is_(None),
            )
            .limit(limit)
        )
        return list((await db_session.execute(statement)).scalars().all())

    async def delete(self, db_session: AsyncSession, applicant_id: UUID) -> None:
        """Drop the cursor so the stream restarts from id 1."""
        await db_session.execute(
            delete(StreamCursor).where(StreamCursor.applicant_id == applicant_id)
        )
