"""Applicant ORM model and the ordered handshake stages."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, Index, String, Text, func
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from handshake.db.base import Base, TimestampMixin


class ApplicantStage(str, Enum):
    """Handshake stages in their strict protocol order."""

    INIT = "Init"
    CHALLENGE_PENDING = "ChallengePending"
    REGISTERED = "Registered"
    PROFILE_DRAFT = "ProfileDraft"
    PROFILE_LOCKED = "ProfileLocked"
    UPLOADING = "Uploading"
    STREAMING = "Streaming"
    TOKEN_PENDING = "TokenPending"
    ACCEPTED = "Accepted"


STAGE_ORDER: tuple[ApplicantStage, ...] = tuple(ApplicantStage)


def _stage_values(enum_cls: type[ApplicantStage]) -> list[str]:
    """Store enum values instead of enum member names."""
    return [member.value for member in enum_cls]


class Applicant(Base, TimestampMixin):
    """Per-applicant protocol record; the stage column is owned by the orchestrator."""

    __tablename__ = "applicants"
    __table_args__ = (
        Index("ix_applicants_callback_url_cooldown_until", "callback_url", "cooldown_until"),
    )

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    registration_key_hash: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True
    )
    stage: Mapped[ApplicantStage] = mapped_column(
        SAEnum(
            ApplicantStage,
            name="applicant_stage",
            values_callable=_stage_values,
            validate_strings=True,
        ),
        nullable=False,
        default=ApplicantStage.INIT,
    )
    callback_url: Mapped[str] = mapped_column(Text, nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    terminal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failed_stage: Mapped[ApplicantStage | None] = mapped_column(
        SAEnum(
            ApplicantStage,
            name="applicant_stage",
            values_callable=_stage_values,
            validate_strings=True,
        ),
        nullable=True,
    )
    failure_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cooldown_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
