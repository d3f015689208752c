"""Stage 1 challenge ORM model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from handshake.db.base import Base, TimestampMixin


class ChallengeStatus(str, Enum):
    """Lifecycle statuses for callback challenges."""

    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"


class Challenge(Base, TimestampMixin):
    """HMAC challenge delivered to an applicant callback endpoint."""

    __tablename__ = "challenges"
    __table_args__ = (Index("ix_challenges_status_expires_at", "status", "expires_at"),)

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    applicant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), ForeignKey("applicants.id", ondelete="CASCADE"), nullable=False
    )
    nonce: Mapped[str] = mapped_column(String(64), nullable=False)
    signing_secret: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[ChallengeStatus] = mapped_column(
        SAEnum(
            ChallengeStatus,
            name="challenge_status",
            values_callable=lambda enum_type: [item.value for item in enum_type],
        ),
        nullable=False,
        default=ChallengeStatus.PENDING,
    )
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
