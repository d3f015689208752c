"""Versioned profile field ORM model."""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from handshake.db.base import Base, TimestampMixin


class ProfileField(Base, TimestampMixin):
    """One named profile value guarded by an integer version token."""

    __tablename__ = "profile_fields"
    __table_args__ = (
        UniqueConstraint("applicant_id", "name", name="uq_profile_fields_applicant_name"),
    )

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    applicant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), ForeignKey("applicants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    @property
    def etag(self) -> str:
        """Quoted entity tag derived from the version."""
        return f'"{self.version}"'
