"""Signing key persistence."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.models.signing_key import SigningKey

# Transaction-scoped advisory lock key shared by every replica.
ROTATION_LOCK_ID = 0x68736B_6B6579


class SigningKeyRepository:
    """Row-level access to time-windowed signing keys."""

    async def create(
        self,
        db_session: AsyncSession,
        kid: str,
        public_key: str,
        private_key: str,
        valid_from: datetime,
        valid_until: datetime,
    ) -> SigningKey:
        """Insert a signing key for one validity window."""
        row = SigningKey(
            kid=kid,
            public_key=public_key,
            private_key=private_key,
            valid_from=valid_from,
            valid_until=valid_until,
        )
        db_session.add(row)
        await db_session.flush()
        return row

    async def get_by_kid(self, db_session: AsyncSession, kid: str) -> SigningKey | None:
        """Fetch one key by kid."""
        result = await db_session.execute(select(SigningKey).where(SigningKey.kid == kid))
        return result.scalar_one_or_none()

    async def latest(self, db_session: AsyncSession) -> SigningKey | None:
        """Return the key with the most recent window start."""
        statement = select(SigningKey).order_by(SigningKey.valid_from.desc()).limit(1)
        result = await db_session.execute(statement)
        return result.scalar_one_or_none()

    async def lock_rotation(self, db_session: AsyncSession) -> None:
        """Serialize key minting until the surrounding transaction ends."""
        await db_session.execute(select(func.pg_advisory_xact_lock(ROTATION_LOCK_ID)))

    async def list_open(self, db_session: AsyncSession, now: datetime) -> list[SigningKey]:
        """Return keys whose window has started and not yet closed, newest first."""
        statement = (
            select(SigningKey)
            .where(SigningKey.valid_from <= now, SigningKey.valid_until > now)
            .order_by(SigningKey.valid_from.desc())
        )
        return list((await db_session.execute(statement)).scalars().all())
