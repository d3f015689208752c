"""Unit tests for the idempotency guard."""

from __future__ import annotations

from uuid import uuid4

import pytest
from fakes import Harness

from handshake.errors import IdempotencyConflict, StageMismatch
from handshake.services.idempotency_service import IdempotencyService, request_fingerprint


def test_request_fingerprint_ignores_key_order() -> None:
    first = request_fingerprint("post", "/profile", {"a": "1", "b": "2"})
    second = request_fingerprint("POST", "/profile", {"b": "2", "a": "1"})

    assert first == second
    assert first != request_fingerprint("POST", "/profile", {"a": "1", "b": "3"})


async def test_execute_runs_once_and_replays_byte_identical(harness: Harness) -> None:
    service = IdempotencyService(harness.idempotency)  # type: ignore[arg-type]
    applicant_id = uuid4()
    calls = 0

    async def operation() -> tuple[int, bytes]:
        nonlocal calls
        calls += 1
        return 201, b'{"created":true}'

    first = await service.execute(harness.session(), applicant_id, "key-1", "fp", operation)
    second = await service.execute(harness.session(), applicant_id, "key-1", "fp", operation)

    assert calls == 1
    assert (first.status_code, first.body, first.replayed) == (201, b'{"created":true}', False)
    assert (second.status_code, second.body, second.replayed) == (201, b'{"created":true}', True)


async def test_execute_rejects_reused_key_with_different_payload(harness: Harness) -> None:
    service = IdempotencyService(harness.idempotency)  # type: ignore[arg-type]
    applicant_id = uuid4()

    async def operation() -> tuple[int, bytes]:
        return 201, b"{}"

    await service.execute(harness.session(), applicant_id, "key-1", "fp-a", operation)

    with pytest.raises(IdempotencyConflict):
        await service.execute(harness.session(), applicant_id, "key-1", "fp-b", operation)


async def test_keys_are_scoped_per_applicant(harness: Harness) -> None:
    service = IdempotencyService(harness.idempotency)  # type: ignore[arg-type]

    async def operation() -> tuple[int, bytes]:
        return 201, b"{}"

    first = await service.execute(harness.session(), uuid4(), "shared", "fp", operation)
    second = await service.execute(harness.session(), uuid4(), "shared", "fp", operation)

    assert not first.replayed
    assert not second.replayed


async def test_failed_operation_releases_the_key(harness: Harness) -> None:
    """An error rolls back the claim so the same key may be retried."""
    service = IdempotencyService(harness.idempotency)  # type: ignore[arg-type]
    applicant_id = uuid4()
    session = harness.session()

    async def failing() -> tuple[int, bytes]:
        raise StageMismatch("Request is not valid in stage Init.")

    async def succeeding() -> tuple[int, bytes]:
        return 201, b"{}"

    with pytest.raises(StageMismatch):
        await service.execute(session, applicant_id, "key-1", "fp", failing)

    assert session.rollback_calls == 1
    assert harness.store.tables.idempotency == {}
    result = await service.execute(harness.session(), applicant_id, "key-1", "fp", succeeding)
    assert not result.replayed
