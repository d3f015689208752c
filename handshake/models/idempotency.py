"""Idempotency record ORM model."""

from __future__ import annotations

from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import ForeignKey, Integer, LargeBinary, String, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from handshake.db.base import Base, TimestampMixin


class IdempotencyStatus(str, Enum):
    """Whether the claimed operation has produced its response yet."""

    PENDING = "pending"
    COMPLETED = "completed"


class IdempotencyRecord(Base, TimestampMixin):
    """Stored response for one (applicant, idempotency key) pair."""

    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("applicant_id", "idempotency_key", name="uq_idempotency_records_key"),
    )

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    applicant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), ForeignKey("applicants.id", ondelete="CASCADE"), nullable=False
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    request_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[IdempotencyStatus] = mapped_column(
        SAEnum(
            IdempotencyStatus,
            name="idempotency_status",
            values_callable=lambda enum_type: [item.value for item in enum_type],
        ),
        nullable=False,
        default=IdempotencyStatus.PENDING,
    )
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
