"""Versioned profile field persistence."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.models.profile import ProfileField


class ProfileRepository:
    """Row-level access to profile fields with conditional writes."""

    async def create_fields(
        self, db_session: AsyncSession, applicant_id: UUID, values: dict[str, str]
    ) -> list[ProfileField]:
        """Insert every field at version 1."""
        rows = [
            ProfileField(applicant_id=applicant_id, name=name, value=value, version=1)
            for name, value in sorted(values.items())
        ]
        db_session.add_all(rows)
        await db_session.flush()
        return rows

    async def list_fields(self, db_session: AsyncSession, applicant_id: UUID) -> list[ProfileField]:
        """Return the applicant's fields ordered by name."""
        statement = (
            select(ProfileField)
            .where(ProfileField.applicant_id == applicant_id)
            .order_by(ProfileField.name)
        )
        return list((await db_session.execute(statement)).scalars().all())

    async def get_field(
        self, db_session: AsyncSession, applicant_id: UUID, name: str
    ) -> ProfileField | None:
        """Fetch one field by name."""
        statement = select(ProfileField).where(
            ProfileField.applicant_id == applicant_id, ProfileField.name == name
        )
        return (await db_session.execute(statement)).scalar_one_or_none()

    async def conditional_update(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        name: str,
        expected_version: int,
        value: str,
    ) -> int | None:
        """Write the value and bump the version only when the version still matches."""
        statement = (
            update(ProfileField)
            .where(
                ProfileField.applicant_id == applicant_id,
                ProfileField.name == name,
                ProfileField.version == expected_version,
            )
            .values(value=value, version=ProfileField.version + 1)
            .returning(ProfileField.version)
        )
        result = await db_session.execute(statement)
        return result.scalar_one_or_none()
