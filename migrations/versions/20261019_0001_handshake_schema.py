"""Initial applicant handshake schema."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

APPLICANT_STAGES = (
    "Init",
    "ChallengePending",
    "Registered",
    "ProfileDraft",
    "ProfileLocked",
    "Uploading",
    "Streaming",
    "TokenPending",
    "Accepted",
)

applicant_stage = postgresql.ENUM(*APPLICANT_STAGES, name="applicant_stage", create_type=False)
challenge_status = postgresql.ENUM(
    "pending", "verified", "expired", name="challenge_status", create_type=False
)
idempotency_status = postgresql.ENUM(
    "pending", "completed", name="idempotency_status", create_type=False
)
upload_status = postgresql.ENUM(
    "in_progress", "complete", "failed", name="upload_status", create_type=False
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    ]


def _applicant_fk(table_name: str) -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(
        ["applicant_id"],
        ["applicants.id"],
        name=f"fk_{table_name}_applicant_id_applicants",
        ondelete="CASCADE",
    )


def upgrade() -> None:
    """Create applicant, stage artifact, signing key and audit tables."""
    bind = op.get_bind()
    for enum_type in (applicant_stage, challenge_status, idempotency_status, upload_status):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "applicants",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("registration_key_hash", sa.String(length=64), nullable=True),
        sa.Column("stage", applicant_stage, nullable=False),
        sa.Column("callback_url", sa.Text(), nullable=False),
        sa.Column(
            "last_activity_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("terminal", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("failed_stage", applicant_stage, nullable=True),
        sa.Column("failure_reason", sa.String(length=64), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cooldown_until", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_applicants"),
        sa.UniqueConstraint("registration_key_hash", name="uq_applicants_registration_key_hash"),
    )
    op.create_index(
        "ix_applicants_callback_url_cooldown_until",
        "applicants",
        ["callback_url", "cooldown_until"],
        unique=False,
    )

    op.create_table(
        "challenges",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("applicant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("nonce", sa.String(length=64), nullable=False),
        sa.Column("signing_secret", sa.String(length=128), nullable=False),
        sa.Column("status", challenge_status, nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        _applicant_fk("challenges"),
        sa.PrimaryKeyConstraint("id", name="pk_challenges"),
    )
    op.create_index(
        "ix_challenges_status_expires_at", "challenges", ["status", "expires_at"], unique=False
    )

    op.create_table(
        "profile_fields",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("applicant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        _applicant_fk("profile_fields"),
        sa.PrimaryKeyConstraint("id", name="pk_profile_fields"),
        sa.UniqueConstraint("applicant_id", "name", name="uq_profile_fields_applicant_name"),
    )

    op.create_table(
        "idempotency_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("applicant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("request_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("status", idempotency_status, nullable=False),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.LargeBinary(), nullable=True),
        *_timestamps(),
        _applicant_fk("idempotency_records"),
        sa.PrimaryKeyConstraint("id", name="pk_idempotency_records"),
        sa.UniqueConstraint(
            "applicant_id", "idempotency_key", name="uq_idempotency_records_key"
        ),
    )

    op.create_table(
        "upload_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("applicant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("resource_name", sa.String(length=64), nullable=False),
        sa.Column("declared_size", sa.BigInteger(), nullable=False),
        sa.Column("declared_sha256", sa.String(length=64), nullable=False),
        sa.Column("offset", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", upload_status, nullable=False),
        sa.Column("failure_reason", sa.String(length=64), nullable=True),
        sa.Column("last_chunk_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("url_expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        _applicant_fk("upload_sessions"),
        sa.PrimaryKeyConstraint("id", name="pk_upload_sessions"),
    )
    op.create_index(
        "ix_upload_sessions_status_last_chunk_at",
        "upload_sessions",
        ["status", "last_chunk_at"],
        unique=False,
    )
    op.create_index(
        "ix_upload_sessions_applicant_id_status",
        "upload_sessions",
        ["applicant_id", "status"],
        unique=False,
    )

    op.create_table(
        "stream_cursors",
        sa.Column("applicant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("next_seq", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_acked_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("generation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("connected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("budget_emitted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        _applicant_fk("stream_cursors"),
        sa.PrimaryKeyConstraint("applicant_id", name="pk_stream_cursors"),
    )

    op.create_table(
        "signing_keys",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kid", sa.String(length=128), nullable=False),
        sa.Column("public_key", sa.String(), nullable=False),
        sa.Column("private_key", sa.String(), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_signing_keys"),
        sa.UniqueConstraint("kid", name="uq_signing_keys_kid"),
    )
    op.create_index(
        "ix_signing_keys_valid_from_valid_until",
        "signing_keys",
        ["valid_from", "valid_until"],
        unique=False,
    )

    op.create_table(
        "audit_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("applicant_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=True),
        sa.Column("ip_address", postgresql.INET(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("correlation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id", name="pk_audit_events"),
    )
    op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"], unique=False)
    op.create_index(
        "ix_audit_events_applicant_id_created_at",
        "audit_events",
        ["applicant_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_audit_events_event_type_created_at",
        "audit_events",
        ["event_type", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    """Drop every handshake table and enum type."""
    op.drop_index("ix_audit_events_event_type_created_at", table_name="audit_events")
    op.drop_index("ix_audit_events_applicant_id_created_at", table_name="audit_events")
    op.drop_index("ix_audit_events_created_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_signing_keys_valid_from_valid_until", table_name="signing_keys")
    op.drop_table("signing_keys")
    op.drop_table("stream_cursors")
    op.drop_index("ix_upload_sessions_applicant_id_status", table_name="upload_sessions")
    op.drop_index("ix_upload_sessions_status_last_chunk_at", table_name="upload_sessions")
    op.drop_table("upload_sessions")
    op.drop_table("idempotency_records")
    op.drop_table("profile_fields")
    op.drop_index("ix_challenges_status_expires_at", table_name="challenges")
    op.drop_table("challenges")
    op.drop_index("ix_applicants_callback_url_cooldown_until", table_name="applicants")
    op.drop_table("applicants")

    bind = op.get_bind()
    for enum_type in (upload_status, idempotency_status, challenge_status, applicant_stage):
        enum_type.drop(bind, checkfirst=True)
