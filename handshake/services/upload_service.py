"""Stage 4: resumable, checksummed upload of the applicant resume archive."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.config import get_settings
from handshake.core.locks import KeyedLocks
from handshake.core.spool import UploadSpool
from handshake.core.upload_urls import UploadUrlSigner
from handshake.errors import (
    ChecksumMismatch,
    InvalidContentRange,
    OffsetMismatch,
    UploadNotFound,
    UploadStalled,
    UploadTooLarge,
)
from handshake.models.applicant import ApplicantStage
from handshake.models.upload import UploadSession, UploadStatus
from handshake.repositories import UploadRepository
from handshake.services.orchestrator import StageOrchestrator, get_orchestrator

logger = structlog.get_logger(__name__)

_RANGE_PATTERN = re.compile(r"^bytes (\d+)-(\d+)/(\d+)$")
_QUERY_PATTERN = re.compile(r"^bytes \*/(\d+|\*)$")


@dataclass(frozen=True)
class ContentRange:
    """Parsed `Content-Range`; `start is None` means an offset query."""

    start: int | None
    end: int | None
    total: int | None


def parse_content_range(header: str | None, body_length: int) -> ContentRange:
    """Parse `bytes start-end/total`, `bytes */total`, or an absent header (whole body)."""
    if header is None or not header.strip():
        if body_length == 0:
            raise InvalidContentRange("Empty upload body without Content-Range.")
        return ContentRange(start=0, end=body_length - 1, total=body_length)

    value = header.strip()
    query = _QUERY_PATTERN.match(value)
    if query is not None:
        if body_length:
            raise InvalidContentRange("Offset queries must not carry a body.")
        total = None if query.group(1) == "*" else int(query.group(1))
        return ContentRange(start=None, end=None, total=total)

    match = _RANGE_PATTERN.match(value)
    if match is None:
        raise InvalidContentRange("Content-Range header is malformed.")
    start, end, total = (int(group) for group in match.groups())
    if end < start or end >= total:
        raise InvalidContentRange("Content-Range bounds are inconsistent.")
    if end - start + 1 != body_length:
        raise InvalidContentRange("Content-Range length does not match the body.")
    return ContentRange(start=start, end=end, total=total)


def range_header(offset: int) -> dict[str, str]:
    """`Range` header acknowledging the contiguous bytes received so far."""
    if offset <= 0:
        return {}
    return {"Range": f"bytes=0-{offset - 1}"}


@dataclass(frozen=True)
class UploadTarget:
    """Pre-signed upload target handed to the applicant."""

    session_id: UUID
    upload_url: str
    offset: int
    size: int
    expires_at: datetime
    links: list[dict[str, str]]


@dataclass(frozen=True)
class ChunkOutcome:
    """Session state after a `PUT`."""

    session_id: UUID
    offset: int
    size: int
    sha256: str
    complete: bool
    links: list[dict[str, str]]


class UploadService:
    """Issue upload targets and accept contiguous chunks into an on-disk spool."""

    def __init__(
        self,
        orchestrator: StageOrchestrator,
        signer: UploadUrlSigner,
        spool: UploadSpool,
        max_size_bytes: int,
        url_ttl_seconds: int,
        stall_seconds: int,
        uploads: UploadRepository | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._signer = signer
        self._spool = spool
        self._max_size = max_size_bytes
        self._url_ttl = timedelta(seconds=url_ttl_seconds)
        self._stall = timedelta(seconds=stall_seconds)
        self._uploads = uploads or UploadRepository()
        self._locks = locks or KeyedLocks()

    async def issue_target(
        self,
        db_session: AsyncSession,
        registration_key: str | None,
        size: int,
        sha256: str,
    ) -> UploadTarget:
        """Create or resume the live session and return its pre-signed URL."""
        if size > self._max_size:
            raise UploadTooLarge(
                "Declared upload size exceeds the limit.",
                extra={"maxSizeBytes": self._max_size},
            )
        applicant = await self._orchestrator.authenticate(db_session, registration_key)
        applicant = await self._orchestrator.require_stage(
            db_session, applicant, ApplicantStage.PROFILE_LOCKED, ApplicantStage.UPLOADING
        )
        digest = sha256.lower()
        now = self._orchestrator.now()
        url_expires_at = now + self._url_ttl

        try:
            upload = await self._uploads.get_live_session(db_session, applicant.id)
            if upload is not None and now - upload.last_chunk_at >= self._stall:
                await self._fail_upload(db_session, upload, "upload_stalled")
                await db_session.commit()
                raise UploadStalled("Upload stalled; the stage restarts after its cooldown.")
            if upload is not None and not self._same_declaration(upload, size, digest):
                await self._uploads.mark_status(
                    db_session, upload.id, UploadStatus.FAILED, "superseded"
                )
                self._spool.discard(upload.id)
                upload = None
            if upload is not None:
                await self._uploads.extend_url(db_session, upload.id, url_expires_at)
            else:
                upload = await self._uploads.create_session(
                    db_session,
                    applicant_id=applicant.id,
                    declared_size=size,
                    declared_sha256=digest,
                    now=now,
                    url_expires_at=url_expires_at,
                )
                logger.info(
                    "upload_session_created",
                    applicant_id=str(applicant.id),
                    session_id=str(upload.id),
                    size=size,
                )
            if applicant.stage == ApplicantStage.PROFILE_LOCKED:
                await self._orchestrator.advance_on_success(
                    db_session, applicant.id, ApplicantStage.PROFILE_LOCKED
                )
        except UploadStalled:
            raise
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()

        return UploadTarget(
            session_id=upload.id,
            upload_url=self._signer.build_url(upload.id, url_expires_at),
            offset=upload.offset,
            size=upload.declared_size,
            expires_at=url_expires_at,
            links=self._orchestrator.next_links(ApplicantStage.UPLOADING),
        )

    async def put(
        self,
        db_session: AsyncSession,
        session_id: UUID,
        expires: int,
        signature: str,
        content_range: str | None,
        body: bytes,
    ) -> ChunkOutcome:
        """Answer an offset query or append one contiguous chunk."""
        now = self._orchestrator.now()
        self._signer.verify(session_id, expires, signature, now)

        async with self._locks.get(str(session_id)):
            upload = await self._uploads.get_session(db_session, session_id)
            if upload is None:
                raise UploadNotFound("Upload session does not exist.")
            structlog.contextvars.bind_contextvars(applicant_id=str(upload.applicant_id))
            if upload.status == UploadStatus.COMPLETE:
                return self._outcome(upload, complete=True)
            if upload.status == UploadStatus.FAILED:
                raise UploadNotFound(
                    "Upload session is no longer active.",
                    extra={"failureReason": upload.failure_reason},
                )
            if now - upload.last_chunk_at >= self._stall:
                await self._fail_upload(db_session, upload, "upload_stalled")
                await db_session.commit()
                raise UploadStalled("Upload stalled; the stage restarts after its cooldown.")

            parsed = parse_content_range(content_range, len(body))
            if parsed.total is not None and parsed.total != upload.declared_size:
                raise InvalidContentRange(
                    "Content-Range total does not match the declared size.",
                    extra={"size": upload.declared_size},
                )
            if parsed.start is None:
                return self._outcome(upload, complete=False)
            if parsed.start != upload.offset:
                raise OffsetMismatch(
                    "Chunk does not start at the current offset.",
                    extra={"offset": upload.offset},
                    headers=range_header(upload.offset),
                )
            return await self._append(db_session, upload, parsed, body, now)

    async def fail_stalled(self, db_session: AsyncSession, now: datetime) -> list[UUID]:
        """Fail sessions with no chunk inside the stall window, and their stage."""
        failed: list[UUID] = []
        for upload in await self._uploads.list_stalled(db_session, now - self._stall):
            if await self._fail_upload(db_session, upload, "upload_stalled"):
                failed.append(upload.id)
        return failed

    async def _append(
        self,
        db_session: AsyncSession,
        upload: UploadSession,
        parsed: ContentRange,
        body: bytes,
        now: datetime,
    ) -> ChunkOutcome:
        assert parsed.start is not None and parsed.end is not None
        new_offset = parsed.end + 1
        await asyncio.to_thread(self._spool.write_at, upload.id, parsed.start, body)

        try:
            advanced = await self._uploads.advance_offset(
                db_session, upload.id, parsed.start, new_offset, now
            )
            if not advanced:
                raise OffsetMismatch(
                    "Chunk does not start at the current offset.",
                    extra={"offset": upload.offset},
                    headers=range_header(upload.offset),
                )
            upload.offset = new_offset
            if new_offset < upload.declared_size:
                await db_session.commit()
                return self._outcome(upload, complete=False)

            actual = await asyncio.to_thread(self._spool.sha256, upload.id)
            if actual != upload.declared_sha256:
                await self._fail_upload(db_session, upload, "checksum_mismatch")
                await db_session.commit()
                raise ChecksumMismatch(
                    "Uploaded bytes do not match the declared SHA-256.",
                    extra={"expected": upload.declared_sha256, "actual": actual},
                )

            await self._uploads.mark_status(db_session, upload.id, UploadStatus.COMPLETE)
            await self._orchestrator.advance_on_success(
                db_session, upload.applicant_id, ApplicantStage.UPLOADING
            )
        except ChecksumMismatch:
            raise
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        self._spool.discard(upload.id)
        logger.info(
            "upload_completed",
            applicant_id=str(upload.applicant_id),
            session_id=str(upload.id),
            size=upload.declared_size,
        )
        return self._outcome(upload, complete=True)

    async def _fail_upload(
        self, db_session: AsyncSession, upload: UploadSession, reason: str
    ) -> bool:
        """Fail the session and the `Uploading` stage, starting its cooldown."""
        failed = await self._fail_session(db_session, upload, reason)
        if failed:
            await self._orchestrator.fail(
                db_session, upload.applicant_id, ApplicantStage.UPLOADING, reason
            )
        return failed

    async def _fail_session(
        self, db_session: AsyncSession, upload: UploadSession, reason: str
    ) -> bool:
        failed = await self._uploads.mark_status(
            db_session, upload.id, UploadStatus.FAILED, reason
        )
        self._spool.discard(upload.id)
        if failed:
            logger.warning(
                "upload_failed",
                applicant_id=str(upload.applicant_id),
                session_id=str(upload.id),
                reason=reason,
            )
        return failed

    @staticmethod
    def _same_declaration(upload: UploadSession, size: int, digest: str) -> bool:
        return upload.declared_size == size and upload.declared_sha256 == digest

    def _outcome(self, upload: UploadSession, complete: bool) -> ChunkOutcome:
        stage = ApplicantStage.STREAMING if complete else ApplicantStage.UPLOADING
        return ChunkOutcome(
            session_id=upload.id,
            offset=upload.declared_size if complete else upload.offset,
            size=upload.declared_size,
            sha256=upload.declared_sha256,
            complete=complete,
            links=self._orchestrator.next_links(stage),
        )


@lru_cache
def get_upload_service() -> UploadService:
    """Create and cache the upload service from settings."""
    settings = get_settings()
    return UploadService(
        orchestrator=get_orchestrator(),
        signer=UploadUrlSigner(
            secret=settings.upload.url_signing_secret.get_secret_value(),
            base_url=settings.app.public_base_url,
        ),
        spool=UploadSpool(settings.upload.spool_dir),
        max_size_bytes=settings.upload.max_size_bytes,
        url_ttl_seconds=settings.upload.url_ttl_seconds,
        stall_seconds=settings.upload.stall_seconds,
    )
