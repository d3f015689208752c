"""Periodic detection of expired challenges, stalled uploads and stalled streams."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import lru_cache
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from handshake.config import get_settings
from handshake.core.signing_keys import SigningKeyService, get_signing_key_service
from handshake.db.session import session_scope
from handshake.repositories import ChallengeRepository
from handshake.services.challenge_service import ChallengeService, get_challenge_service
from handshake.services.event_stream_service import (
    EventStreamService,
    get_event_stream_service,
)
from handshake.services.upload_service import UploadService, get_upload_service

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    """What one sweep changed."""

    expired_challenges: list[UUID] = field(default_factory=list)
    stalled_uploads: list[UUID] = field(default_factory=list)
    failed_streams: list[UUID] = field(default_factory=list)
    signing_kid: str | None = None


class Sweeper:
    """Apply time-based failures that no request may ever trigger lazily."""

    def __init__(
        self,
        challenges: ChallengeService,
        uploads: UploadService,
        streams: EventStreamService,
        signing_keys: SigningKeyService,
        interval_seconds: float,
        challenge_repository: ChallengeRepository | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._challenges = challenges
        self._uploads = uploads
        self._streams = streams
        self._signing_keys = signing_keys
        self._interval = interval_seconds
        self._challenge_repository = challenge_repository or ChallengeRepository()
        self._session_factory = session_factory
        self._now = now or (lambda: datetime.now(UTC))
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def sweep_once(self) -> SweepReport:
        """Run every check once, each in its own transaction."""
        report = SweepReport()
        now = self._now()

        async with session_scope(self._session_factory) as db_session:
            for challenge in await self._challenge_repository.list_expired_pending(
                db_session, now
            ):
                if await self._challenges.expire(db_session, challenge, "challenge_expired"):
                    report.expired_challenges.append(challenge.id)
            await db_session.commit()

        async with session_scope(self._session_factory) as db_session:
            report.stalled_uploads = await self._uploads.fail_stalled(db_session, now)
            await db_session.commit()

        async with session_scope(self._session_factory) as db_session:
            report.failed_streams = await self._streams.fail_stalled(db_session, now)
            await db_session.commit()

        async with session_scope(self._session_factory) as db_session:
            material = await self._signing_keys.ensure_current(db_session, now)
            await db_session.commit()
            report.signing_kid = material.kid

        if report.expired_challenges or report.stalled_uploads or report.failed_streams:
            logger.info(
                "sweep_completed",
                expired_challenges=len(report.expired_challenges),
                stalled_uploads=len(report.stalled_uploads),
                failed_streams=len(report.failed_streams),
            )
        return report

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run(), name="handshake-sweeper")

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.error("sweep_failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except TimeoutError:
                continue


@lru_cache
def get_sweeper() -> Sweeper:
    """Create and cache the sweeper from settings."""
    settings = get_settings()
    return Sweeper(
        challenges=get_challenge_service(),
        uploads=get_upload_service(),
        streams=get_event_stream_service(),
        signing_keys=get_signing_key_service(),
        interval_seconds=settings.app.sweep_interval_seconds,
    )
