"""Repository exports."""

from handshake.repositories.applicants import ApplicantRepository
from handshake.repositories.challenges import ChallengeRepository
from handshake.repositories.idempotency import IdempotencyRepository
from handshake.repositories.profiles import ProfileRepository
from handshake.repositories.signing_keys import SigningKeyRepository
from handshake.repositories.stream_cursors import StreamCursorRepository
from handshake.repositories.uploads import UploadRepository

__all__ = [
    "ApplicantRepository",
    "ChallengeRepository",
    "IdempotencyRepository",
    "ProfileRepository",
    "SigningKeyRepository",
    "StreamCursorRepository",
    "UploadRepository",
]
