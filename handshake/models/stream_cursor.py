"""Per-applicant event stream cursor ORM model."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from handshake.db.base import Base, TimestampMixin


class StreamCursor(Base, TimestampMixin):
    """Progress of the bounded event feed, independent of any open connection."""

    __tablename__ = "stream_cursors"

    applicant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("applicants.id", ondelete="CASCADE"),
        primary_key=True,
    )
    next_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_acked_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    budget_emitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def emitted_seq(self) -> int:
        """Highest sequence number emitted so far."""
        return self.next_seq - 1
