"""Unit tests for resumable uploads, pre-signed URLs and the on-disk spool."""

from __future__ import annotations

import hashlib
from datetime import timedelta
from pathlib import Path
from urllib.parse import parse_qs, urlsplit
from uuid import UUID, uuid4

import pytest
from fakes import START, Harness

from handshake.core.spool import UploadSpool
from handshake.core.upload_urls import UploadUrlSigner
from handshake.errors import (
    ChecksumMismatch,
    InvalidContentRange,
    OffsetMismatch,
    StageCooldown,
    UploadNotFound,
    UploadStalled,
    UploadTooLarge,
    UploadUrlInvalid,
)
from handshake.models.applicant import ApplicantStage
from handshake.models.upload import UploadStatus
from handshake.services.upload_service import (
    ContentRange,
    UploadService,
    parse_content_range,
    range_header,
)

ARCHIVE = bytes(range(256)) * 4
ARCHIVE_SHA256 = hashlib.sha256(ARCHIVE).hexdigest()


def _service(harness: Harness) -> UploadService:
    return UploadService(
        orchestrator=harness.orchestrator,
        signer=UploadUrlSigner(secret="upload-secret", base_url="https://handshake.test/"),
        spool=harness.spool,
        max_size_bytes=4096,
        url_ttl_seconds=3600,
        stall_seconds=60,
        uploads=harness.uploads,  # type: ignore[arg-type]
    )


def _url_params(upload_url: str) -> tuple[UUID, int, str]:
    parts = urlsplit(upload_url)
    query = parse_qs(parts.query)
    session_id = UUID(parts.path.rsplit("/", 1)[-1])
    return session_id, int(query["expires"][0]), query["signature"][0]


async def _target(harness: Harness, service: UploadService, sha256: str = ARCHIVE_SHA256):
    _, raw_key = await harness.applicant_in(ApplicantStage.PROFILE_LOCKED)
    target = await service.issue_target(harness.session(), raw_key, len(ARCHIVE), sha256)
    return raw_key, target, _url_params(target.upload_url)


@pytest.mark.parametrize(
    ("header", "length", "expected"),
    [
        ("bytes 0-9/100", 10, ContentRange(0, 9, 100)),
        ("bytes 90-99/100", 10, ContentRange(90, 99, 100)),
        ("bytes */100", 0, ContentRange(None, None, 100)),
        ("bytes */*", 0, ContentRange(None, None, None)),
        (None, 5, ContentRange(0, 4, 5)),
    ],
)
def test_parse_content_range(header: str | None, length: int, expected: ContentRange) -> None:
    assert parse_content_range(header, length) == expected


@pytest.mark.parametrize(
    ("header", "length"),
    [
        ("bytes 0-9/100", 9),
        ("bytes 9-0/100", 10),
        ("bytes 0-100/100", 101),
        ("items 0-9/100", 10),
        ("bytes */100", 3),
        (None, 0),
    ],
)
def test_parse_content_range_rejects_inconsistent_headers(header: str | None, length: int) -> None:
    with pytest.raises(InvalidContentRange):
        parse_content_range(header, length)


def test_range_header_acknowledges_received_prefix() -> None:
    assert range_header(0) == {}
    assert range_header(40) == {"Range": "bytes=0-39"}


def test_signer_rejects_tampering_and_expiry() -> None:
    signer = UploadUrlSigner(secret="upload-secret", base_url="https://handshake.test")
    session_id = uuid4()
    expires_at = START + timedelta(minutes=5)
    _, expires, signature = _url_params(signer.build_url(session_id, expires_at))

    signer.verify(session_id, expires, signature, START)
    with pytest.raises(UploadUrlInvalid):
        signer.verify(uuid4(), expires, signature, START)
    with pytest.raises(UploadUrlInvalid):
        signer.verify(session_id, expires + 60, signature, START)
    with pytest.raises(UploadUrlInvalid):
        signer.verify(session_id, expires, signature, expires_at)


def test_spool_truncates_past_the_write_offset(tmp_path: Path) -> None:
    spool = UploadSpool(tmp_path)
    session_id = uuid4()

    spool.write_at(session_id, 0, b"abcdef")
    spool.write_at(session_id, 3, b"XY")

    assert spool.path_for(session_id).read_bytes() == b"abcXY"
    assert spool.size(session_id) == 5
    assert spool.sha256(session_id) == hashlib.sha256(b"abcXY").hexdigest()
    spool.discard(session_id)
    spool.discard(session_id)
    assert spool.size(session_id) == 0


async def test_issue_target_enters_uploading(harness: Harness) -> None:
    service = _service(harness)

    _, target, (session_id, _, _) = await _target(harness, service)

    assert target.upload_url.startswith(f"https://handshake.test/uploads/{session_id}?")
    assert target.offset == 0
    assert target.size == len(ARCHIVE)
    applicant = next(iter(harness.store.tables.applicants.values()))
    assert applicant.stage == ApplicantStage.UPLOADING


async def test_issue_target_rejects_oversized_declaration(harness: Harness) -> None:
    service = _service(harness)
    _, raw_key = await harness.applicant_in(ApplicantStage.PROFILE_LOCKED)

    with pytest.raises(UploadTooLarge) as exc_info:
        await service.issue_target(harness.session(), raw_key, 4097, ARCHIVE_SHA256)

    assert exc_info.value.extra == {"maxSizeBytes": 4096}


async def test_chunks_resume_from_the_high_water_mark(harness: Harness) -> None:
    """Partial uploads report their offset; out-of-order chunks are refused."""
    service = _service(harness)
    raw_key, _, (session_id, expires, signature) = await _target(harness, service)
    total = len(ARCHIVE)

    first = await service.put(
        harness.session(), session_id, expires, signature, f"bytes 0-399/{total}", ARCHIVE[:400]
    )
    assert (first.offset, first.complete) == (400, False)

    with pytest.raises(OffsetMismatch) as exc_info:
        await service.put(
            harness.session(),
            session_id,
            expires,
            signature,
            f"bytes 600-{total - 1}/{total}",
            ARCHIVE[600:],
        )
    assert exc_info.value.extra == {"offset": 400}
    assert exc_info.value.headers == {"Range": "bytes=0-399"}

    offset_query = await service.put(
        harness.session(), session_id, expires, signature, f"bytes */{total}", b""
    )
    assert offset_query.offset == 400

    resumed = await service.issue_target(harness.session(), raw_key, total, ARCHIVE_SHA256)
    assert resumed.session_id == session_id
    assert resumed.offset == 400

    done = await service.put(
        harness.session(),
        session_id,
        expires,
        signature,
        f"bytes 400-{total - 1}/{total}",
        ARCHIVE[400:],
    )
    assert done.complete
    assert done.offset == total
    assert harness.store.tables.uploads[session_id].status == UploadStatus.COMPLETE
    applicant = next(iter(harness.store.tables.applicants.values()))
    assert applicant.stage == ApplicantStage.STREAMING
    assert not harness.spool.path_for(session_id).exists()


async def test_put_after_completion_is_idempotent(harness: Harness) -> None:
    service = _service(harness)
    _, _, (session_id, expires, signature) = await _target(harness, service)
    await service.put(harness.session(), session_id, expires, signature, None, ARCHIVE)

    again = await service.put(harness.session(), session_id, expires, signature, None, ARCHIVE)

    assert again.complete
    assert again.links[0]["href"] == "/events"


async def test_checksum_mismatch_discards_the_session(harness: Harness) -> None:
    service = _service(harness)
    raw_key, _, (session_id, expires, signature) = await _target(harness, service, "a" * 64)

    with pytest.raises(ChecksumMismatch) as exc_info:
        await service.put(harness.session(), session_id, expires, signature, None, ARCHIVE)

    assert exc_info.value.extra == {"expected": "a" * 64, "actual": ARCHIVE_SHA256}
    assert harness.store.tables.uploads[session_id].status == UploadStatus.FAILED
    assert harness.store.tables.uploads[session_id].failure_reason == "checksum_mismatch"
    with pytest.raises(UploadNotFound):
        await service.put(harness.session(), session_id, expires, signature, None, ARCHIVE)

    applicant = next(iter(harness.store.tables.applicants.values()))
    assert applicant.failed_stage == ApplicantStage.UPLOADING
    assert applicant.failure_reason == "checksum_mismatch"
    with pytest.raises(StageCooldown):
        await service.issue_target(harness.session(), raw_key, len(ARCHIVE), ARCHIVE_SHA256)

    harness.clock.advance(86400)
    fresh = await service.issue_target(harness.session(), raw_key, len(ARCHIVE), ARCHIVE_SHA256)
    assert fresh.session_id != session_id
    assert fresh.offset == 0
    applicant = next(iter(harness.store.tables.applicants.values()))
    assert applicant.stage == ApplicantStage.UPLOADING
    assert applicant.failed_stage is None


async def test_total_must_match_declared_size(harness: Harness) -> None:
    service = _service(harness)
    _, _, (session_id, expires, signature) = await _target(harness, service)

    with pytest.raises(InvalidContentRange):
        await service.put(
            harness.session(), session_id, expires, signature, "bytes 0-9/2048", ARCHIVE[:10]
        )


async def test_stalled_session_must_restart(harness: Harness) -> None:
    service = _service(harness)
    _, _, (session_id, expires, signature) = await _target(harness, service)
    total = len(ARCHIVE)
    await service.put(
        harness.session(), session_id, expires, signature, f"bytes 0-99/{total}", ARCHIVE[:100]
    )
    harness.clock.advance(60)

    with pytest.raises(UploadStalled):
        await service.put(
            harness.session(),
            session_id,
            expires,
            signature,
            f"bytes 100-199/{total}",
            ARCHIVE[100:200],
        )

    assert harness.store.tables.uploads[session_id].failure_reason == "upload_stalled"
    assert not harness.spool.path_for(session_id).exists()
    applicant = next(iter(harness.store.tables.applicants.values()))
    assert applicant.failed_stage == ApplicantStage.UPLOADING
    assert applicant.failure_reason == "upload_stalled"


async def test_fail_stalled_sweeps_idle_sessions(harness: Harness) -> None:
    service = _service(harness)
    _, _, (session_id, _, _) = await _target(harness, service)
    harness.clock.advance(59)
    session = harness.session()

    assert await service.fail_stalled(session, harness.clock()) == []
    harness.clock.advance(1)
    assert await service.fail_stalled(session, harness.clock()) == [session_id]
    assert harness.store.tables.uploads[session_id].status == UploadStatus.FAILED
    applicant = next(iter(harness.store.tables.applicants.values()))
    assert applicant.failed_stage == ApplicantStage.UPLOADING


async def test_resuming_after_url_expiry_keeps_progress(harness: Harness) -> None:
    """An active upload outliving its URL gets a fresh URL for the same session."""
    service = _service(harness)
    raw_key, _, (session_id, expires, signature) = await _target(harness, service)
    total = len(ARCHIVE)
    for index in range(71):
        harness.clock.advance(50)
        start = index * 10
        await service.put(
            harness.session(),
            session_id,
            expires,
            signature,
            f"bytes {start}-{start + 9}/{total}",
            ARCHIVE[start : start + 10],
        )
    harness.clock.advance(55)

    with pytest.raises(UploadUrlInvalid):
        await service.put(
            harness.session(), session_id, expires, signature, f"bytes */{total}", b""
        )
    resumed = await service.issue_target(harness.session(), raw_key, total, ARCHIVE_SHA256)

    assert resumed.session_id == session_id
    assert resumed.offset == 710
    assert resumed.expires_at == harness.clock() + timedelta(seconds=3600)
    _, new_expires, new_signature = _url_params(resumed.upload_url)
    done = await service.put(
        harness.session(),
        session_id,
        new_expires,
        new_signature,
        f"bytes 710-{total - 1}/{total}",
        ARCHIVE[710:],
    )
    assert done.complete


async def test_changed_declaration_supersedes_the_live_session(harness: Harness) -> None:
    service = _service(harness)
    raw_key, _, (session_id, expires, signature) = await _target(harness, service)
    await service.put(
        harness.session(),
        session_id,
        expires,
        signature,
        f"bytes 0-9/{len(ARCHIVE)}",
        ARCHIVE[:10],
    )

    replaced = await service.issue_target(harness.session(), raw_key, 512, ARCHIVE_SHA256)

    assert replaced.session_id != session_id
    assert replaced.offset == 0
    assert harness.store.tables.uploads[session_id].failure_reason == "superseded"
    applicant = next(iter(harness.store.tables.applicants.values()))
    assert applicant.failed_stage is None
