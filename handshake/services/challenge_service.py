"""Stage 1: callback challenge issuance, delivery, and signature verification."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from handshake.config import get_settings
from handshake.core.callbacks import CallbackClient, CallbackDeliveryError
from handshake.db.session import session_scope
from handshake.errors import ChallengeExpired, SignatureInvalid
from handshake.models.applicant import ApplicantStage
from handshake.models.challenge import Challenge, ChallengeStatus
from handshake.repositories import ApplicantRepository, ChallengeRepository
from handshake.services.orchestrator import StageOrchestrator, get_orchestrator

logger = structlog.get_logger(__name__)

_SIGNATURE_PREFIX = "sha256="


@dataclass(frozen=True)
class IssuedChallenge:
    """Result of `POST /init`."""

    applicant_id: UUID
    challenge_id: UUID
    nonce: str
    expires_at: datetime
    links: list[dict[str, str]]


@dataclass(frozen=True)
class VerifiedChallenge:
    """Result of a successful challenge response."""

    applicant_id: UUID
    registration_key: str
    stage: ApplicantStage
    links: list[dict[str, str]]


def signing_input(challenge_id: UUID, nonce: str) -> str:
    """Exact string the applicant signs with its challenge secret."""
    return f"{challenge_id}.{nonce}"


def compute_response_signature(signing_secret: str, challenge_id: UUID, nonce: str) -> str:
    """HMAC-SHA256 hex digest expected in the applicant's `X-Signature` header."""
    message = signing_input(challenge_id, nonce).encode("utf-8")
    return hmac.new(signing_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class ChallengeService:
    """Issue challenges, push them to callback endpoints, and verify responses."""

    def __init__(
        self,
        orchestrator: StageOrchestrator,
        callback_client: CallbackClient,
        ttl_seconds: int,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        challenges: ChallengeRepository | None = None,
        applicants: ApplicantRepository | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._orchestrator = orchestrator
        self._callback_client = callback_client
        self._ttl = timedelta(seconds=ttl_seconds)
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._challenges = challenges or ChallengeRepository()
        self._applicants = applicants or ApplicantRepository()
        self._session_factory = session_factory
        self._sleep = sleep
        self._deliveries: set[asyncio.Task[bool]] = set()

    async def initiate(self, db_session: AsyncSession, callback_url: str) -> IssuedChallenge:
        """Create the applicant, issue its challenge, and enter `ChallengePending`."""
        try:
            applicant = await self._orchestrator.create_applicant(db_session, callback_url)
            challenge = await self.issue(db_session, applicant.id)
            await self._orchestrator.advance_on_success(
                db_session, applicant.id, ApplicantStage.INIT
            )
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()

        return IssuedChallenge(
            applicant_id=applicant.id,
            challenge_id=challenge.id,
            nonce=challenge.nonce,
            expires_at=challenge.expires_at,
            links=self._orchestrator.next_links(ApplicantStage.CHALLENGE_PENDING),
        )

    async def issue(self, db_session: AsyncSession, applicant_id: UUID) -> Challenge:
        """Persist a fresh nonce and per-applicant signing secret."""
        now = self._orchestrator.now()
        challenge = await self._challenges.create(
            db_session,
            applicant_id=applicant_id,
            nonce=secrets.token_urlsafe(24),
            signing_secret=secrets.token_urlsafe(32),
            issued_at=now,
            expires_at=now + self._ttl,
        )
        logger.info(
            "challenge_issued",
            applicant_id=str(applicant_id),
            challenge_id=str(challenge.id),
            expires_at=challenge.expires_at.isoformat(),
        )
        return challenge

    def build_payload(self, challenge: Challenge) -> dict[str, Any]:
        """Body POSTed to the applicant callback endpoint."""
        return {
            "challengeId": str(challenge.id),
            "nonce": challenge.nonce,
            "payload": {
                "signingSecret": challenge.signing_secret,
                "signingInput": signing_input(challenge.id, challenge.nonce),
                "respondTo": "/challenge/verify",
                "expiresAt": challenge.expires_at.isoformat(),
            },
        }

    def schedule_delivery(self, challenge_id: UUID) -> asyncio.Task[bool]:
        """Deliver in the background; the task is tracked until it finishes."""
        task = asyncio.create_task(self.deliver(challenge_id), name=f"challenge-{challenge_id}")
        self._deliveries.add(task)
        task.add_done_callback(self._delivery_finished)
        return task

    def _delivery_finished(self, task: asyncio.Task[bool]) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "challenge_delivery_crashed",
                task=task.get_name(),
                error=str(exc),
                exc_info=exc,
            )

    async def deliver(self, challenge_id: UUID) -> bool:
        """Retry delivery with exponential backoff until success or challenge expiry."""
        backoff = self._initial_backoff
        while True:
            async with session_scope(self._session_factory) as db_session:
                challenge = await self._challenges.get(db_session, challenge_id)
                if challenge is None or challenge.status != ChallengeStatus.PENDING:
                    return False
                applicant = await self._applicants.get(db_session, challenge.applicant_id)
                if applicant is None:
                    return False

                now = self._orchestrator.now()
                if now >= challenge.expires_at:
                    await self.expire(db_session, challenge, reason="challenge_undeliverable")
                    await db_session.commit()
                    return False

                try:
                    await self._callback_client.deliver(
                        applicant.callback_url, self.build_payload(challenge)
                    )
                except CallbackDeliveryError as exc:
                    await self._challenges.record_delivery_attempt(db_session, challenge.id, None)
                    await db_session.commit()
                    logger.warning(
                        "challenge_delivery_failed",
                        challenge_id=str(challenge_id),
                        applicant_id=str(applicant.id),
                        status_code=exc.status_code,
                        error=exc.detail,
                        retry_in_seconds=backoff,
                    )
                    remaining = (challenge.expires_at - now).total_seconds()
                else:
                    await self._challenges.record_delivery_attempt(db_session, challenge.id, now)
                    await db_session.commit()
                    logger.info(
                        "challenge_delivered",
                        challenge_id=str(challenge_id),
                        applicant_id=str(applicant.id),
                    )
                    return True

            await self._sleep(max(0.0, min(backoff, remaining)))
            backoff = min(backoff * 2, self._max_backoff)

    async def expire(self, db_session: AsyncSession, challenge: Challenge, reason: str) -> bool:
        """Mark a pending challenge expired and fail the applicant's Stage 1."""
        expired = await self._challenges.transition(
            db_session, challenge.id, ChallengeStatus.PENDING, ChallengeStatus.EXPIRED
        )
        if expired:
            logger.info(
                "challenge_expired",
                challenge_id=str(challenge.id),
                applicant_id=str(challenge.applicant_id),
                reason=reason,
            )
            await self._orchestrator.fail(
                db_session, challenge.applicant_id, ApplicantStage.CHALLENGE_PENDING, reason
            )
        return expired

    async def verify(
        self,
        db_session: AsyncSession,
        challenge_id: UUID,
        nonce: str,
        signature: str | None,
    ) -> VerifiedChallenge:
        """Check the response HMAC, consume the challenge, and mint the registration key."""
        challenge = await self._challenges.get(db_session, challenge_id)
        if challenge is None or challenge.status != ChallengeStatus.PENDING:
            raise ChallengeExpired("Challenge is unknown, expired, or already used.")
        if self._orchestrator.now() >= challenge.expires_at:
            try:
                await self.expire(db_session, challenge, reason="challenge_expired")
            except Exception:
                await db_session.rollback()
                raise
            await db_session.commit()
            raise ChallengeExpired("Challenge has expired.")

        if not hmac.compare_digest(nonce.encode("utf-8"), challenge.nonce.encode("utf-8")):
            raise SignatureInvalid("Response does not match the issued challenge.")
        presented = (signature or "").strip()
        if presented.startswith(_SIGNATURE_PREFIX):
            presented = presented[len(_SIGNATURE_PREFIX) :]
        expected = compute_response_signature(
            challenge.signing_secret, challenge.id, challenge.nonce
        )
        if not hmac.compare_digest(presented.lower().encode("utf-8"), expected.encode("utf-8")):
            raise SignatureInvalid("Challenge signature is invalid.")

        applicant = await self._orchestrator.get(db_session, challenge.applicant_id)
        if applicant is None:
            raise ChallengeExpired("Challenge is unknown, expired, or already used.")
        await self._orchestrator.require_stage(
            db_session, applicant, ApplicantStage.CHALLENGE_PENDING
        )

        key_core = self._orchestrator.key_core
        raw_key = key_core.generate_raw_key()
        try:
            consumed = await self._challenges.transition(
                db_session, challenge.id, ChallengeStatus.PENDING, ChallengeStatus.VERIFIED
            )
            if not consumed:
                raise ChallengeExpired("Challenge is unknown, expired, or already used.")
            await self._applicants.set_registration_key_hash(
                db_session, applicant.id, key_core.hash_key(raw_key)
            )
            await self._orchestrator.advance_on_success(
                db_session, applicant.id, ApplicantStage.CHALLENGE_PENDING
            )
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        logger.info("challenge_verified", applicant_id=str(applicant.id))

        return VerifiedChallenge(
            applicant_id=applicant.id,
            registration_key=raw_key,
            stage=ApplicantStage.REGISTERED,
            links=self._orchestrator.next_links(ApplicantStage.REGISTERED),
        )

    async def aclose(self) -> None:
        """Cancel outstanding deliveries and close the callback client."""
        for task in list(self._deliveries):
            task.cancel()
        if self._deliveries:
            await asyncio.gather(*self._deliveries, return_exceptions=True)
        await self._callback_client.aclose()


@lru_cache
def get_challenge_service() -> ChallengeService:
    """Create and cache the challenge service from settings."""
    settings = get_settings()
    return ChallengeService(
        orchestrator=get_orchestrator(),
        callback_client=CallbackClient(
            webhook_secret=settings.challenge.webhook_secret.get_secret_value(),
            timeout=settings.challenge.delivery_timeout_seconds,
        ),
        ttl_seconds=settings.challenge.ttl_seconds,
        initial_backoff_seconds=settings.challenge.delivery_initial_backoff_seconds,
        max_backoff_seconds=settings.challenge.delivery_max_backoff_seconds,
    )
