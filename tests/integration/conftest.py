"""Shared integration-test fixtures using Postgres and Redis testcontainers."""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any
from uuid import UUID

import httpx
import pytest
from alembic import command
from alembic.config import Config
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from docker.errors import DockerException


def _clear_dependency_caches() -> None:
    """Clear all singleton/lru-cache dependencies between test phases."""
    from handshake.config import get_settings
    from handshake.core.rate_limit import get_profile_rate_limiter, get_rate_limit_redis_client
    from handshake.core.signing_keys import get_signing_key_service
    from handshake.db.session import get_engine, get_session_factory
    from handshake.dependencies import get_trusted_proxies
    from handshake.services.acceptance_service import get_acceptance_service
    from handshake.services.audit_service import get_audit_service
    from handshake.services.challenge_service import get_challenge_service
    from handshake.services.event_stream_service import get_event_stream_service
    from handshake.services.idempotency_service import get_idempotency_service
    from handshake.services.orchestrator import get_orchestrator
    from handshake.services.profile_service import get_profile_service
    from handshake.services.sweeper import get_sweeper
    from handshake.services.upload_service import get_upload_service

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    get_rate_limit_redis_client.cache_clear()
    get_profile_rate_limiter.cache_clear()
    get_signing_key_service.cache_clear()
    get_orchestrator.cache_clear()
    get_audit_service.cache_clear()
    get_challenge_service.cache_clear()
    get_idempotency_service.cache_clear()
    get_profile_service.cache_clear()
    get_upload_service.cache_clear()
    get_event_stream_service.cache_clear()
    get_acceptance_service.cache_clear()
    get_sweeper.cache_clear()
    get_trusted_proxies.cache_clear()


async def _close_async_client(client: Any) -> None:
    """Close async client instances regardless of redis-py close API version."""
    close = getattr(client, "aclose", None)
    if callable(close):
        await close()
        return

    close = getattr(client, "close", None)
    if callable(close):
        result = close()
        if hasattr(result, "__await__"):
            await result


async def _dispose_async_singletons() -> None:
    """Dispose loop-bound async resources before changing event loops."""
    from handshake.core.rate_limit import get_rate_limit_redis_client
    from handshake.db.session import dispose_engine, get_engine
    from handshake.services.challenge_service import get_challenge_service
    from handshake.services.event_stream_service import get_event_stream_service

    if get_challenge_service.cache_info().currsize:
        await get_challenge_service().aclose()
    if get_event_stream_service.cache_info().currsize:
        await get_event_stream_service().aclose()
    if get_rate_limit_redis_client.cache_info().currsize:
        await _close_async_client(get_rate_limit_redis_client())
    if get_engine.cache_info().currsize:
        await dispose_engine()


def _redis_connection_url(redis: RedisContainer) -> str:
    """Return a redis:// URL across testcontainers versions."""
    get_url = getattr(redis, "get_connection_url", None)
    if callable(get_url):
        redis_url = get_url()
    else:
        host = redis.get_container_host_ip()
        port = redis.get_exposed_port(6379)
        redis_url = f"redis://{host}:{port}"
    if not redis_url.endswith("/0"):
        redis_url = f"{redis_url}/0"
    return redis_url


def _postgres_async_url(postgres: PostgresContainer) -> str:
    """Return a postgresql+asyncpg URL across testcontainers versions."""
    try:
        # testcontainers>=4 supports explicitly disabling default psycopg2 driver.
        postgres_url = postgres.get_connection_url(driver=None)
    except TypeError:
        postgres_url = postgres.get_connection_url()

    if postgres_url.startswith("postgresql+"):
        postgres_url = "postgresql://" + postgres_url.split("://", 1)[1]

    return postgres_url.replace("postgresql://", "postgresql+asyncpg://", 1)


def _set_env_values(env_values: dict[str, str]) -> tuple[dict[str, str], Callable[[], None]]:
    """Apply env vars and return a restore callback."""
    original: dict[str, str] = {}
    missing: set[str] = set()
    for key, value in env_values.items():
        current = os.environ.get(key)
        if current is None:
            missing.add(key)
            original[key] = ""
        else:
            original[key] = current
        os.environ[key] = value

    def _restore() -> None:
        for key in env_values:
            if key in missing:
                os.environ.pop(key, None)
            else:
                os.environ[key] = original[key]

    return original, _restore


@pytest.fixture(scope="session")
def integration_env(tmp_path_factory: pytest.TempPathFactory) -> Iterator[dict[str, str]]:
    """Start Postgres/Redis containers and configure app settings for integration tests."""
    try:
        postgres = PostgresContainer("postgres:16")
        redis = RedisContainer("redis:7")
        postgres.start()
        redis.start()
    except DockerException as exc:
        if os.environ.get("CI", "").lower() in {"1", "true", "yes"}:
            pytest.fail(
                f"Docker daemon unavailable in CI for testcontainers integration tests: {exc}"
            )
        pytest.skip(f"Docker daemon unavailable for testcontainers-backed integration tests: {exc}")

    database_url = _postgres_async_url(postgres)
    redis_url = _redis_connection_url(redis)

    env_values = {
        "APP__ENVIRONMENT": "development",
        "APP__SERVICE": "handshake-service",
        "APP__LOG_LEVEL": "INFO",
        "APP__PUBLIC_BASE_URL": "http://testserver",
        "APP__SWEEPER_ENABLED": "false",
        "DATABASE__URL": database_url,
        "REDIS__URL": redis_url,
        "CHALLENGE__WEBHOOK_SECRET": "integration-webhook-secret",
        "UPLOAD__URL_SIGNING_SECRET": "integration-upload-secret",
        "UPLOAD__SPOOL_DIR": str(tmp_path_factory.mktemp("spool")),
        "SIGNING_KEYS__ENCRYPTION_KEY": "integration-signing-key-secret",
        "STREAM__EVENT_BUDGET": "100",
        "STREAM__EVENTS_PER_SECOND": "1000",
        "STREAM__KEEPALIVE_SECONDS": "0.2",
        "RATE_LIMIT__PROFILE_BUCKET_CAPACITY": "2",
    }

    _, restore_env = _set_env_values(env_values)
    _clear_dependency_caches()

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, "head")

    try:
        yield {"database_url": database_url, "redis_url": redis_url}
    finally:
        try:
            _clear_dependency_caches()
        finally:
            restore_env()
            postgres.stop()
            redis.stop()


@pytest.fixture(scope="function")
async def db_session_factory(
    integration_env: dict[str, str],
    reset_state: None,
) -> async_sessionmaker[AsyncSession]:
    """Expose async session factory bound to integration Postgres."""
    del integration_env, reset_state
    from handshake.db.session import get_session_factory

    return get_session_factory()


@pytest.fixture(scope="function")
async def db_session(
    db_session_factory: async_sessionmaker[AsyncSession],
) -> Iterator[AsyncSession]:
    """Yield a write-capable async DB session for test seeding and assertions."""
    async with db_session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
async def reset_state(
    integration_env: dict[str, str],
) -> Iterator[None]:
    """Clear DB tables and flush Redis; isolate async singletons per event loop."""
    del integration_env
    from handshake.core.rate_limit import get_rate_limit_redis_client
    from handshake.db.session import get_session_factory
    from handshake.models.applicant import Applicant
    from handshake.models.audit_event import AuditEvent
    from handshake.models.challenge import Challenge
    from handshake.models.idempotency import IdempotencyRecord
    from handshake.models.profile import ProfileField
    from handshake.models.signing_key import SigningKey
    from handshake.models.stream_cursor import StreamCursor
    from handshake.models.upload import UploadSession

    await _dispose_async_singletons()
    _clear_dependency_caches()

    session_factory = get_session_factory()
    async with session_factory() as session:
        for model in (
            AuditEvent,
            StreamCursor,
            UploadSession,
            IdempotencyRecord,
            ProfileField,
            Challenge,
            SigningKey,
            Applicant,
        ):
            await session.execute(delete(model))
        await session.commit()

    redis_client = get_rate_limit_redis_client()
    await redis_client.flushdb()
    try:
        yield
    finally:
        await _dispose_async_singletons()
        _clear_dependency_caches()


@pytest.fixture(scope="function")
def app_factory(integration_env: dict[str, str]) -> Callable[[], Any]:
    """Build isolated FastAPI app instances for integration tests."""
    del integration_env
    from handshake.main import create_app

    def _factory() -> Any:
        return create_app()

    return _factory


class CallbackInbox:
    """Applicant callback endpoint served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.bodies: list[dict[str, Any]] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        return httpx.Response(204)

    async def next_body(self) -> dict[str, Any]:
        for _ in range(100):
            if self.bodies:
                return self.bodies.pop(0)
            await asyncio.sleep(0.02)
        raise AssertionError("challenge was never delivered")


@pytest.fixture(scope="function")
async def handshake_client(
    app_factory: Callable[[], Any],
    db_session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[tuple[AsyncClient, CallbackInbox]]:
    """Full application whose challenge deliveries land in an in-process inbox."""
    del db_session_factory
    from handshake.core.callbacks import CallbackClient
    from handshake.services.challenge_service import ChallengeService, get_challenge_service
    from handshake.services.orchestrator import get_orchestrator

    inbox = CallbackInbox()
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(inbox.handle))
    challenge_service = ChallengeService(
        orchestrator=get_orchestrator(),
        callback_client=CallbackClient("integration-webhook-secret", http_client=http_client),
        ttl_seconds=300,
    )
    app = app_factory()
    app.dependency_overrides[get_challenge_service] = lambda: challenge_service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as client:
        yield client, inbox
    await challenge_service.aclose()
    await http_client.aclose()


@pytest.fixture(scope="function")
def register_applicant() -> Callable[[AsyncClient, CallbackInbox], Any]:
    """Run Stage 1 over HTTP and return `(applicant_id, registration_key)`."""
    from handshake.core.callbacks import SIGNATURE_HEADER
    from handshake.services.challenge_service import compute_response_signature

    async def _register(client: AsyncClient, inbox: CallbackInbox) -> tuple[UUID, str]:
        init = await client.post("/init", json={"callbackUrl": "https://applicant.example/cb"})
        assert init.status_code == 201
        delivered = await inbox.next_body()
        signature = compute_response_signature(
            delivered["payload"]["signingSecret"],
            delivered["challengeId"],
            delivered["nonce"],
        )
        verify = await client.post(
            "/challenge/verify",
            json={"challengeId": delivered["challengeId"], "nonce": delivered["nonce"]},
            headers={SIGNATURE_HEADER: f"sha256={signature}"},
        )
        assert verify.status_code == 200
        return UUID(init.json()["applicantId"]), verify.json()["registrationKey"]

    return _register
