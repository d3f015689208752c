"""Time-windowed signing key ORM model."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Index, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from handshake.db.base import Base, TimestampMixin


class SigningKey(Base, TimestampMixin):
    """RS256 keypair valid for one rotation window, private half encrypted at rest."""

    __tablename__ = "signing_keys"
    __table_args__ = (
        UniqueConstraint("kid", name="uq_signing_keys_kid"),
        Index("ix_signing_keys_valid_from_valid_until", "valid_from", "valid_until"),
    )

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    kid: Mapped[str] = mapped_column(String(128), nullable=False)
    public_key: Mapped[str] = mapped_column(String, nullable=False)
    private_key: Mapped[str] = mapped_column(String, nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def covers(self, moment: datetime) -> bool:
        """Return True when the key window contains the given instant."""
        return self.valid_from <= moment < self.valid_until
