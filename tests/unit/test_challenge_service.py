"""Unit tests for challenge issuance, delivery retries and response verification."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fakes import FakeCallbackClient, Harness, RecordingSleep

from handshake.errors import ChallengeExpired, SignatureInvalid
from handshake.models.applicant import ApplicantStage
from handshake.models.challenge import ChallengeStatus
from handshake.services import challenge_service as challenge_module
from handshake.services.challenge_service import ChallengeService, compute_response_signature


def _service(
    harness: Harness,
    client: FakeCallbackClient | None = None,
    ttl_seconds: int = 300,
    max_backoff_seconds: float = 30.0,
) -> tuple[ChallengeService, RecordingSleep]:
    sleep = RecordingSleep(harness.clock)
    service = ChallengeService(
        orchestrator=harness.orchestrator,
        callback_client=client or FakeCallbackClient(),  # type: ignore[arg-type]
        ttl_seconds=ttl_seconds,
        initial_backoff_seconds=1.0,
        max_backoff_seconds=max_backoff_seconds,
        challenges=harness.challenges,  # type: ignore[arg-type]
        applicants=harness.applicants,  # type: ignore[arg-type]
        session_factory=harness.session_factory,  # type: ignore[arg-type]
        sleep=sleep,
    )
    return service, sleep


async def test_initiate_creates_applicant_in_challenge_pending(harness: Harness) -> None:
    service, _ = _service(harness)

    issued = await service.initiate(harness.session(), "https://applicant.example/cb")

    applicant = harness.store.tables.applicants[issued.applicant_id]
    challenge = harness.store.tables.challenges[issued.challenge_id]
    assert applicant.stage == ApplicantStage.CHALLENGE_PENDING
    assert challenge.nonce == issued.nonce
    assert issued.links[0] == {"rel": "next", "href": "/challenge/verify", "method": "POST"}


async def test_payload_carries_signing_material(harness: Harness) -> None:
    service, _ = _service(harness)
    issued = await service.initiate(harness.session(), "https://applicant.example/cb")
    challenge = harness.store.tables.challenges[issued.challenge_id]

    payload = service.build_payload(challenge)  # type: ignore[arg-type]

    assert payload["challengeId"] == str(challenge.id)
    assert payload["payload"]["signingSecret"] == challenge.signing_secret
    assert payload["payload"]["signingInput"] == f"{challenge.id}.{challenge.nonce}"


async def test_verify_mints_registration_key_once(harness: Harness) -> None:
    """A correct response registers the applicant; replaying it is rejected."""
    service, _ = _service(harness)
    issued = await service.initiate(harness.session(), "https://applicant.example/cb")
    challenge = harness.store.tables.challenges[issued.challenge_id]
    signature = compute_response_signature(challenge.signing_secret, challenge.id, issued.nonce)

    verified = await service.verify(
        harness.session(), issued.challenge_id, issued.nonce, f"sha256={signature}"
    )

    assert verified.stage == ApplicantStage.REGISTERED
    assert verified.registration_key.startswith("rk_")
    resolved = await harness.orchestrator.authenticate(
        harness.session(), verified.registration_key
    )
    assert resolved.stage == ApplicantStage.REGISTERED
    assert harness.store.tables.challenges[challenge.id].status == ChallengeStatus.VERIFIED

    with pytest.raises(ChallengeExpired):
        await service.verify(harness.session(), issued.challenge_id, issued.nonce, signature)


async def test_verify_rejects_bad_signature_and_keeps_challenge_open(harness: Harness) -> None:
    service, _ = _service(harness)
    issued = await service.initiate(harness.session(), "https://applicant.example/cb")

    with pytest.raises(SignatureInvalid):
        await service.verify(harness.session(), issued.challenge_id, issued.nonce, "0" * 64)
    with pytest.raises(SignatureInvalid):
        await service.verify(harness.session(), issued.challenge_id, issued.nonce, None)

    assert (
        harness.store.tables.challenges[issued.challenge_id].status == ChallengeStatus.PENDING
    )


async def test_verify_rejects_wrong_nonce(harness: Harness) -> None:
    service, _ = _service(harness)
    issued = await service.initiate(harness.session(), "https://applicant.example/cb")
    challenge = harness.store.tables.challenges[issued.challenge_id]
    signature = compute_response_signature(challenge.signing_secret, challenge.id, issued.nonce)

    with pytest.raises(SignatureInvalid):
        await service.verify(harness.session(), issued.challenge_id, "other-nonce", signature)


async def test_verify_after_expiry_fails_the_stage(harness: Harness) -> None:
    service, _ = _service(harness, ttl_seconds=60)
    issued = await service.initiate(harness.session(), "https://applicant.example/cb")
    challenge = harness.store.tables.challenges[issued.challenge_id]
    signature = compute_response_signature(challenge.signing_secret, challenge.id, issued.nonce)
    harness.clock.advance(60)

    with pytest.raises(ChallengeExpired):
        await service.verify(harness.session(), issued.challenge_id, issued.nonce, signature)

    applicant = harness.store.tables.applicants[issued.applicant_id]
    assert applicant.failed_stage == ApplicantStage.CHALLENGE_PENDING
    assert applicant.failure_reason == "challenge_expired"
    assert harness.store.tables.challenges[challenge.id].status == ChallengeStatus.EXPIRED


async def test_deliver_retries_with_exponential_backoff(harness: Harness) -> None:
    client = FakeCallbackClient(failures=2)
    service, sleep = _service(harness, client)
    issued = await service.initiate(harness.session(), "https://applicant.example/cb")

    delivered = await service.deliver(issued.challenge_id)

    assert delivered is True
    assert sleep.calls == [1.0, 2.0]
    assert len(client.deliveries) == 3
    assert client.deliveries[0][0] == "https://applicant.example/cb"
    challenge = harness.store.tables.challenges[issued.challenge_id]
    assert challenge.delivery_attempts == 3
    assert challenge.delivered_at is not None


async def test_deliver_gives_up_at_expiry(harness: Harness) -> None:
    """Backoff is capped and the final wait never overshoots the expiry."""
    client = FakeCallbackClient(failures=100)
    service, sleep = _service(harness, client, ttl_seconds=10, max_backoff_seconds=4.0)
    issued = await service.initiate(harness.session(), "https://applicant.example/cb")

    delivered = await service.deliver(issued.challenge_id)

    assert delivered is False
    assert sleep.calls == [1.0, 2.0, 4.0, 3.0]
    applicant = harness.store.tables.applicants[issued.applicant_id]
    assert applicant.failed_stage == ApplicantStage.CHALLENGE_PENDING
    assert applicant.failure_reason == "challenge_undeliverable"


async def test_deliver_skips_challenges_no_longer_pending(harness: Harness) -> None:
    client = FakeCallbackClient()
    service, _ = _service(harness, client)
    issued = await service.initiate(harness.session(), "https://applicant.example/cb")
    harness.store.tables.challenges[issued.challenge_id].status = ChallengeStatus.VERIFIED
    harness.store.checkpoint()

    assert await service.deliver(issued.challenge_id) is False
    assert client.deliveries == []


async def test_aclose_closes_callback_client(harness: Harness) -> None:
    client = FakeCallbackClient()
    service, _ = _service(harness, client)

    await service.aclose()

    assert client.closed is True


class _BrokenCallbackClient(FakeCallbackClient):
    async def deliver(self, callback_url: str, payload: dict[str, Any]) -> Any:
        raise RuntimeError("database unavailable")


class _CaptureLogger:
    def __init__(self) -> None:
        self.errors: list[tuple[str, dict[str, Any]]] = []

    def error(self, event: str, **kwargs: Any) -> None:
        self.errors.append((event, kwargs))


async def test_background_delivery_crash_is_logged(
    harness: Harness, monkeypatch: pytest.MonkeyPatch
) -> None:
    capture = _CaptureLogger()
    service, _ = _service(harness, _BrokenCallbackClient())
    issued = await service.initiate(harness.session(), "https://applicant.example/cb")
    monkeypatch.setattr(challenge_module, "logger", capture)

    task = service.schedule_delivery(issued.challenge_id)
    await asyncio.wait([task])
    await asyncio.sleep(0)

    assert [event for event, _ in capture.errors] == ["challenge_delivery_crashed"]
    assert capture.errors[0][1]["error"] == "database unavailable"
    await service.aclose()
