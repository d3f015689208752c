"""API-level tests driving every stage through the routers with in-memory backends."""

from __future__ import annotations

import asyncio
import hashlib
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import httpx
import pytest
from fakes import FakeAuditService, FakeSession, FakeTokenBucketRedis, Harness, RecordingSleep
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from handshake.core.callbacks import SIGNATURE_HEADER, CallbackClient, sign_body
from handshake.core.rate_limit import TokenBucketRateLimiter
from handshake.core.replay_buffer import ReplayBuffer
from handshake.core.signing_keys import SigningKeyService
from handshake.core.upload_urls import UploadUrlSigner
from handshake.dependencies import get_database_session, get_trusted_proxies
from handshake.error_handlers import register_exception_handlers
from handshake.routers import acceptance, events, handshake, profile, uploads
from handshake.services.acceptance_service import AcceptanceService, get_acceptance_service
from handshake.services.audit_service import get_audit_service
from handshake.services.challenge_service import (
    ChallengeService,
    compute_response_signature,
    get_challenge_service,
)
from handshake.services.event_stream_service import (
    EventStreamService,
    get_event_stream_service,
)
from handshake.services.idempotency_service import IdempotencyService
from handshake.services.orchestrator import get_orchestrator
from handshake.services.profile_service import ProfileService, get_profile_service
from handshake.services.upload_service import UploadService, get_upload_service

WEBHOOK_SECRET = "webhook-secret"
EVENT_BUDGET = 20
ARCHIVE = b"resume archive bytes " * 50
ARCHIVE_SHA256 = hashlib.sha256(ARCHIVE).hexdigest()


@dataclass
class Api:
    client: AsyncClient
    harness: Harness
    audit: FakeAuditService
    callbacks: list[httpx.Request]
    challenges: ChallengeService


@pytest.fixture
async def api(harness: Harness) -> AsyncIterator[Api]:
    """Application wired to in-memory repositories and a mocked callback endpoint."""
    callbacks: list[httpx.Request] = []

    def _callback_endpoint(request: httpx.Request) -> httpx.Response:
        callbacks.append(request)
        return httpx.Response(204)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_callback_endpoint))
    orchestrator = harness.orchestrator
    challenges = ChallengeService(
        orchestrator=orchestrator,
        callback_client=CallbackClient(WEBHOOK_SECRET, http_client=http_client),
        ttl_seconds=300,
        challenges=harness.challenges,  # type: ignore[arg-type]
        applicants=harness.applicants,  # type: ignore[arg-type]
        session_factory=harness.session_factory,  # type: ignore[arg-type]
        sleep=RecordingSleep(harness.clock),
    )
    profiles = ProfileService(
        orchestrator=orchestrator,
        idempotency=IdempotencyService(harness.idempotency),  # type: ignore[arg-type]
        rate_limiter=TokenBucketRateLimiter(FakeTokenBucketRedis(), 1, 0.2),
        profiles=harness.profiles,  # type: ignore[arg-type]
    )
    uploads_service = UploadService(
        orchestrator=orchestrator,
        signer=UploadUrlSigner("upload-secret", "https://handshake.test"),
        spool=harness.spool,
        max_size_bytes=1024 * 1024,
        url_ttl_seconds=3600,
        stall_seconds=60,
        uploads=harness.uploads,  # type: ignore[arg-type]
    )
    streams = EventStreamService(
        orchestrator=orchestrator,
        replay_buffer=ReplayBuffer(maxsize=1000, ttl_seconds=60),
        event_budget=EVENT_BUDGET,
        batch_size=10,
        cursors=harness.cursors,  # type: ignore[arg-type]
        session_factory=harness.session_factory,  # type: ignore[arg-type]
        sleep=RecordingSleep(),
        monotonic=lambda: 0.0,
    )
    acceptance_service = AcceptanceService(
        orchestrator=orchestrator,
        signing_keys=SigningKeyService(
            encryption_key="signing-secret",
            window_seconds=600,
            overlap_seconds=120,
            repository=harness.signing_keys,  # type: ignore[arg-type]
        ),
        token_ttl_seconds=300,
        session_factory=harness.session_factory,  # type: ignore[arg-type]
    )
    audit = FakeAuditService()

    app = FastAPI()
    register_exception_handlers(
        app, environment="development", audit_service=audit  # type: ignore[arg-type]
    )
    for module in (handshake, profile, uploads, events, acceptance):
        app.include_router(module.router)

    async def _session() -> AsyncIterator[FakeSession]:
        yield harness.session()

    app.dependency_overrides.update(
        {
            get_database_session: _session,
            get_orchestrator: lambda: orchestrator,
            get_challenge_service: lambda: challenges,
            get_profile_service: lambda: profiles,
            get_upload_service: lambda: uploads_service,
            get_event_stream_service: lambda: streams,
            get_acceptance_service: lambda: acceptance_service,
            get_audit_service: lambda: audit,
            get_trusted_proxies: lambda: (),
        }
    )

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        yield Api(client, harness, audit, callbacks, challenges)
    await challenges.aclose()
    await streams.aclose()
    await http_client.aclose()


async def _registered(api: Api) -> tuple[str, dict[str, Any]]:
    """Run Stage 1 and return the registration key with the delivered callback body."""
    init = await api.client.post("/init", json={"callbackUrl": "https://applicant.example/cb"})
    assert init.status_code == 201
    for _ in range(50):
        if api.callbacks:
            break
        await asyncio.sleep(0)
    delivered = json.loads(api.callbacks[-1].content)
    signature = compute_response_signature(
        delivered["payload"]["signingSecret"],
        init.json()["challengeId"],
        delivered["nonce"],
    )
    verify = await api.client.post(
        "/challenge/verify",
        json={"challengeId": delivered["challengeId"], "nonce": delivered["nonce"]},
        headers={SIGNATURE_HEADER: f"sha256={signature}"},
    )
    assert verify.status_code == 200
    return verify.json()["registrationKey"], delivered


async def test_callback_delivery_and_idempotent_profile_draft(api: Api) -> None:
    """The challenge reaches the callback signed and profile retries replay byte for byte."""
    raw_key, delivered = await _registered(api)
    callback = api.callbacks[0]
    assert callback.url == "https://applicant.example/cb"
    assert callback.headers[SIGNATURE_HEADER] == sign_body(WEBHOOK_SECRET, callback.content)
    assert delivered["payload"]["respondTo"] == "/challenge/verify"
    headers = {"X-Registration-Key": raw_key}

    fields = {"name": "Ada Lovelace", "email": "ada@example.com"}
    first = await api.client.post(
        "/profile", json=fields, headers={**headers, "Idempotency-Key": "draft-1"}
    )
    replay = await api.client.post(
        "/profile", json=fields, headers={**headers, "Idempotency-Key": "draft-1"}
    )
    assert first.status_code == replay.status_code == 201
    assert first.content == replay.content
    assert first.headers["idempotent-replayed"] == "false"
    assert replay.headers["idempotent-replayed"] == "true"

    stale = await api.client.patch(
        "/profile/email", json={"value": "x"}, headers={**headers, "If-Match": '"7"'}
    )
    assert stale.status_code == 412
    assert stale.json()["currentVersion"] == 1
    upload_target = await api.client.post(
        "/upload", json={"size": len(ARCHIVE), "sha256": ARCHIVE_SHA256}, headers=headers
    )
    assert upload_target.status_code == 409
    assert upload_target.json()["code"] == "stage_mismatch"


async def test_full_handshake_reaches_accepted(api: Api) -> None:
    """Walk every remaining stage in order and end in the terminal state."""
    raw_key, _ = await _registered(api)
    headers = {"X-Registration-Key": raw_key}
    await api.client.post(
        "/profile", json={"email": "ada@example.com"}, headers={**headers, "Idempotency-Key": "k"}
    )

    locked = await api.client.patch(
        "/profile/email",
        json={"value": "ada@lovelace.dev"},
        headers={**headers, "If-Match": '"1"'},
    )
    assert locked.status_code == 200
    assert locked.headers["etag"] == '"2"'
    assert locked.json()["stage"] == "ProfileLocked"

    target = await api.client.post(
        "/upload", json={"size": len(ARCHIVE), "sha256": ARCHIVE_SHA256}, headers=headers
    )
    assert target.status_code == 201
    url = urlsplit(target.json()["uploadUrl"])
    put_path = f"{url.path}?{url.query}"
    total = len(ARCHIVE)

    partial = await api.client.put(
        put_path, content=ARCHIVE[:100], headers={"Content-Range": f"bytes 0-99/{total}"}
    )
    assert partial.status_code == 308
    assert partial.headers["range"] == "bytes=0-99"
    assert partial.json()["offset"] == 100

    complete = await api.client.put(
        put_path,
        content=ARCHIVE[100:],
        headers={"Content-Range": f"bytes 100-{total - 1}/{total}"},
    )
    assert complete.status_code == 201
    assert complete.json()["stage"] == "Streaming"

    stream = await api.client.get("/events", headers=headers)
    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    ids = [
        int(line[4:]) for line in stream.text.splitlines() if line.startswith("id: ")
    ]
    assert ids == list(range(1, EVENT_BUDGET + 1))
    assert "event: ack-required" in stream.text

    ack = await api.client.post("/ack", json={"lastEventId": EVENT_BUDGET}, headers=headers)
    assert ack.status_code == 200
    assert ack.json()["stage"] == "TokenPending"

    token = await api.client.post("/token", headers=headers)
    assert token.status_code == 200
    jwks = await api.client.get("/.well-known/jwks.json")
    assert [key["kid"] for key in jwks.json()["keys"]] == [token.json()["kid"]]

    accepted = await api.client.post(
        "/accept", headers={**headers, "Authorization": f"Bearer {token.json()['token']}"}
    )
    assert accepted.status_code == 200
    assert accepted.json()["terminal"] is True

    status = await api.client.get("/status", headers=headers)
    assert status.json()["stage"] == "Accepted"
    assert status.json()["terminal"] is True
    event_types = [record["event_type"] for record in api.audit.records]
    assert event_types == [
        "applicant.initiated",
        "challenge.verified",
        "profile.drafted",
        "profile.locked",
        "upload.completed",
        "stream.completed",
        "token.issued",
        "applicant.accepted",
    ]


async def test_rejections_are_audited_against_the_applicant(api: Api) -> None:
    raw_key, _ = await _registered(api)

    response = await api.client.post(
        "/ack", json={"lastEventId": 1}, headers={"X-Registration-Key": raw_key}
    )

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "stage_mismatch"
    assert body["currentStage"] == "Registered"
    assert body["expectedStages"] == ["Streaming"]
    rejection = api.audit.records[-1]
    assert rejection["event_type"] == "request_rejected"
    assert rejection["failure_reason"] == "stage_mismatch"
    assert rejection["applicant_id"] == str(next(iter(api.harness.store.tables.applicants)))


async def test_unknown_registration_key_is_unauthorized(api: Api) -> None:
    response = await api.client.get("/status", headers={"X-Registration-Key": "rk_nope"})

    assert response.status_code == 401
    assert response.json()["code"] == "invalid_registration_key"


async def test_init_rejects_plain_http_callbacks(api: Api) -> None:
    response = await api.client.post("/init", json={"callbackUrl": "http://applicant.example"})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_callback"
    assert api.harness.store.tables.applicants == {}


async def test_profile_requires_idempotency_key(api: Api) -> None:
    raw_key, _ = await _registered(api)

    response = await api.client.post(
        "/profile", json={"email": "a@b.c"}, headers={"X-Registration-Key": raw_key}
    )

    assert response.status_code == 422
    assert response.json()["code"] == "invalid_request"


async def _drafted(api: Api) -> dict[str, str]:
    raw_key, _ = await _registered(api)
    headers = {"X-Registration-Key": raw_key}
    drafted = await api.client.post(
        "/profile", json={"email": "ada@example.com"}, headers={**headers, "Idempotency-Key": "d"}
    )
    assert drafted.status_code == 201
    return headers


@pytest.mark.parametrize(
    "malformed",
    [{"json": {}}, {"json": {"value": 7}}, {"content": b"{not json"}],
)
async def test_malformed_patch_spends_the_rate_limit_token(
    api: Api, malformed: dict[str, Any]
) -> None:
    headers = await _drafted(api)

    rejected = await api.client.patch(
        "/profile/email", headers={**headers, "If-Match": '"1"'}, **malformed
    )
    retried = await api.client.patch(
        "/profile/email", json={"value": "x"}, headers={**headers, "If-Match": '"1"'}
    )

    assert rejected.status_code == 422
    assert rejected.json()["code"] == "invalid_request"
    assert retried.status_code == 429
    assert retried.headers["retry-after"] == "5"
    failure_reasons = [record.get("failure_reason") for record in api.audit.records]
    assert failure_reasons[-2:] == ["invalid_request", "rate_limited"]
    assert api.audit.records[-2]["applicant_id"] == str(
        next(iter(api.harness.store.tables.applicants))
    )


async def test_forwarded_for_from_an_untrusted_peer_is_ignored(api: Api) -> None:
    """Rotating X-Forwarded-For does not mint a fresh bucket per request."""
    headers = await _drafted(api)

    codes = []
    for hop in range(3):
        response = await api.client.patch(
            "/profile/email",
            json={"value": "x"},
            headers={**headers, "If-Match": '"9"', "X-Forwarded-For": f"203.0.113.{hop}"},
        )
        codes.append(response.status_code)

    assert codes == [412, 429, 429]
