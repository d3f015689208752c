"""Handshake error taxonomy mapped to HTTP status codes and machine-readable kinds."""

from __future__ import annotations

from typing import Any


class HandshakeError(Exception):
    """Base class for every failure surfaced to an applicant."""

    code = "handshake_error"
    status_code = 400

    def __init__(
        self,
        detail: str,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra or {}
        self.headers = headers or {}


class InvalidRequest(HandshakeError):
    """Raised when a request body fails validation after the rate limit was charged."""

    code = "invalid_request"
    status_code = 422


class InvalidCallback(HandshakeError):
    code = "invalid_callback"
    status_code = 400


class ChallengeExpired(HandshakeError):
    code = "challenge_expired"
    status_code = 404


class SignatureInvalid(HandshakeError):
    code = "signature_invalid"
    status_code = 401


class InvalidRegistrationKey(HandshakeError):
    code = "invalid_registration_key"
    status_code = 401


class IdempotencyConflict(HandshakeError):
    code = "idempotency_conflict"
    status_code = 409


class FieldNotFound(HandshakeError):
    code = "field_not_found"
    status_code = 404


class PreconditionFailed(HandshakeError):
    """Raised when the supplied version token does not match the stored one."""

    code = "precondition_failed"
    status_code = 412


class RateLimited(HandshakeError):
    code = "rate_limited"
    status_code = 429


class UploadUrlInvalid(HandshakeError):
    code = "upload_url_invalid"
    status_code = 401


class UploadNotFound(HandshakeError):
    code = "upload_not_found"
    status_code = 404


class UploadTooLarge(HandshakeError):
    code = "upload_too_large"
    status_code = 413


class InvalidContentRange(HandshakeError):
    code = "invalid_content_range"
    status_code = 400


class OffsetMismatch(HandshakeError):
    """Raised when a chunk does not start at the session high-water mark."""

    code = "offset_mismatch"
    status_code = 409


class ChecksumMismatch(HandshakeError):
    code = "checksum_mismatch"
    status_code = 409


class UploadStalled(HandshakeError):
    code = "upload_stalled"
    status_code = 408


class StreamStalled(HandshakeError):
    code = "stream_stalled"
    status_code = 408


class AckMissing(HandshakeError):
    code = "ack_missing"
    status_code = 408


class AckOutOfRange(HandshakeError):
    code = "ack_out_of_range"
    status_code = 409


class StaleKey(HandshakeError):
    """Raised when a token references a signing key whose window has closed."""

    code = "stale_key"
    status_code = 401


class TokenExpired(HandshakeError):
    code = "token_expired"
    status_code = 401


class TokenInvalid(HandshakeError):
    code = "token_invalid"
    status_code = 401


class StageMismatch(HandshakeError):
    """Raised when a request targets a stage the applicant is not in."""

    code = "stage_mismatch"
    status_code = 409


class StageCooldown(HandshakeError):
    """Raised while a failed stage is cooling down before it may be retried."""

    code = "stage_cooldown"
    status_code = 409


ERROR_CODES = {
    error_cls.code
    for error_cls in (
        InvalidRequest,
        InvalidCallback,
        ChallengeExpired,
        SignatureInvalid,
        InvalidRegistrationKey,
        IdempotencyConflict,
        FieldNotFound,
        PreconditionFailed,
        RateLimited,
        UploadUrlInvalid,
        UploadNotFound,
        UploadTooLarge,
        InvalidContentRange,
        OffsetMismatch,
        ChecksumMismatch,
        UploadStalled,
        StreamStalled,
        AckMissing,
        AckOutOfRange,
        StaleKey,
        TokenExpired,
        TokenInvalid,
        StageMismatch,
        StageCooldown,
    )
}
