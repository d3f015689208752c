"""Resumable upload session ORM model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from handshake.db.base import Base, TimestampMixin


class UploadStatus(str, Enum):
    """Lifecycle statuses for upload sessions."""

    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class UploadSession(Base, TimestampMixin):
    """Contiguous, checksummed transfer of the applicant resume archive."""

    __tablename__ = "upload_sessions"
    __table_args__ = (
        Index("ix_upload_sessions_status_last_chunk_at", "status", "last_chunk_at"),
        Index("ix_upload_sessions_applicant_id_status", "applicant_id", "status"),
    )

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    applicant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), ForeignKey("applicants.id", ondelete="CASCADE"), nullable=False
    )
    resource_name: Mapped[str] = mapped_column(String(64), nullable=False, default="resume.zip")
    declared_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    declared_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    offset: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[UploadStatus] = mapped_column(
        SAEnum(
            UploadStatus,
            name="upload_status",
            values_callable=lambda enum_type: [item.value for item in enum_type],
        ),
        nullable=False,
        default=UploadStatus.IN_PROGRESS,
    )
    failure_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_chunk_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    url_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
