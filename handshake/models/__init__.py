"""ORM model exports."""

from handshake.models.applicant import STAGE_ORDER, Applicant, ApplicantStage
from handshake.models.audit_event import AuditEvent
from handshake.models.challenge import Challenge, ChallengeStatus
from handshake.models.idempotency import IdempotencyRecord, IdempotencyStatus
from handshake.models.profile import ProfileField
from handshake.models.signing_key import SigningKey
from handshake.models.stream_cursor import StreamCursor
from handshake.models.upload import UploadSession, UploadStatus

__all__ = [
    "STAGE_ORDER",
    "Applicant",
    "ApplicantStage",
    "AuditEvent",
    "Challenge",
    "ChallengeStatus",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "ProfileField",
    "SigningKey",
    "StreamCursor",
    "UploadSession",
    "UploadStatus",
]
