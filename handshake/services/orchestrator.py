"""Stage orchestration: identity, stage gating, transitions, failures and cooldowns."""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any
from urllib.parse import urlsplit
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.config import get_settings
from handshake.core.registration_keys import RegistrationKeyCore
from handshake.core.spool import UploadSpool
from handshake.errors import (
    InvalidCallback,
    InvalidRegistrationKey,
    StageCooldown,
    StageMismatch,
)
from handshake.models.applicant import STAGE_ORDER, Applicant, ApplicantStage
from handshake.repositories import (
    ApplicantRepository,
    ChallengeRepository,
    StreamCursorRepository,
    UploadRepository,
)

logger = structlog.get_logger(__name__)

# Where a failed stage is retried from once its cooldown has elapsed.
RESET_TARGETS: dict[ApplicantStage, ApplicantStage] = {
    ApplicantStage.CHALLENGE_PENDING: ApplicantStage.INIT,
    ApplicantStage.UPLOADING: ApplicantStage.PROFILE_LOCKED,
}

_NEXT_REQUESTS: dict[ApplicantStage, tuple[tuple[str, str], ...]] = {
    ApplicantStage.INIT: (("POST", "/init"),),
    ApplicantStage.CHALLENGE_PENDING: (("POST", "/challenge/verify"),),
    ApplicantStage.REGISTERED: (("POST", "/profile"),),
    ApplicantStage.PROFILE_DRAFT: (("PATCH", "/profile/{field}"),),
    ApplicantStage.PROFILE_LOCKED: (("POST", "/upload"),),
    ApplicantStage.UPLOADING: (("POST", "/upload"),),
    ApplicantStage.STREAMING: (("GET", "/events"), ("POST", "/ack")),
    ApplicantStage.TOKEN_PENDING: (("POST", "/token"), ("POST", "/accept")),
    ApplicantStage.ACCEPTED: (),
}


def next_stage(stage: ApplicantStage) -> ApplicantStage:
    """Return the stage following `stage`."""
    index = STAGE_ORDER.index(stage)
    if index + 1 >= len(STAGE_ORDER):
        raise ValueError(f"{stage.value} is terminal.")
    return STAGE_ORDER[index + 1]


def validate_callback_url(callback_url: str) -> str:
    """Accept only absolute HTTPS URLs with a host."""
    candidate = callback_url.strip()
    try:
        parts = urlsplit(candidate)
    except ValueError as exc:
        raise InvalidCallback("Callback URL is malformed.") from exc
    if parts.scheme != "https" or not parts.hostname:
        raise InvalidCallback("Callback URL must be an absolute https URL.")
    if parts.username or parts.password:
        raise InvalidCallback("Callback URL must not embed credentials.")
    return candidate


class StageOrchestrator:
    """Own the applicant stage column.

    Methods flush but never commit; callers run them inside their own unit of
    work so a transition lands together with the artifacts that justify it.
    """

    def __init__(
        self,
        cooldown_seconds: int,
        spool: UploadSpool,
        applicants: ApplicantRepository | None = None,
        challenges: ChallengeRepository | None = None,
        uploads: UploadRepository | None = None,
        cursors: StreamCursorRepository | None = None,
        key_core: RegistrationKeyCore | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._spool = spool
        self._applicants = applicants or ApplicantRepository()
        self._challenges = challenges or ChallengeRepository()
        self._uploads = uploads or UploadRepository()
        self._cursors = cursors or StreamCursorRepository()
        self._key_core = key_core or RegistrationKeyCore()
        self._now = now or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        """Current time as seen by every stage component."""
        return self._now()

    @property
    def key_core(self) -> RegistrationKeyCore:
        return self._key_core

    async def create_applicant(self, db_session: AsyncSession, callback_url: str) -> Applicant:
        """Validate the callback endpoint and insert an applicant in `Init`."""
        url = validate_callback_url(callback_url)
        now = self._now()
        cooling = await self._applicants.find_cooling_down(db_session, url, now)
        if cooling is not None and cooling.cooldown_until is not None:
            raise self._cooldown_error(cooling, now)
        applicant = await self._applicants.create(db_session, callback_url=url, now=now)
        logger.info("applicant_created", applicant_id=str(applicant.id))
        return applicant

    async def get(self, db_session: AsyncSession, applicant_id: UUID) -> Applicant | None:
        """Fetch an applicant by id."""
        return await self._applicants.get(db_session, applicant_id)

    async def advance_on_success(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        from_stage: ApplicantStage,
    ) -> bool:
        """Advance one stage; False when the applicant already left `from_stage`."""
        to_stage = next_stage(from_stage)
        advanced = await self._applicants.compare_and_set_stage(
            db_session,
            applicant_id,
            from_stage,
            to_stage,
            self._now(),
            terminal=to_stage == ApplicantStage.ACCEPTED,
        )
        if advanced:
            logger.info(
                "stage_advanced",
                applicant_id=str(applicant_id),
                from_stage=from_stage.value,
                to_stage=to_stage.value,
            )
        return advanced

    async def fail(
        self,
        db_session: AsyncSession,
        applicant_id: UUID,
        stage: ApplicantStage,
        reason: str,
    ) -> bool:
        """Record a stage failure and start its cooldown."""
        now = self._now()
        failed = await self._applicants.record_failure(
            db_session,
            applicant_id,
            stage,
            reason,
            now,
            cooldown_until=now + self._cooldown,
        )
        if failed:
            logger.warning(
                "stage_failed",
                applicant_id=str(applicant_id),
                stage=stage.value,
                reason=reason,
            )
        return failed

    async def authenticate(self, db_session: AsyncSession, raw_key: str | None) -> Applicant:
        """Resolve the applicant owning a registration key."""
        if not raw_key or not self._key_core.is_valid_format(raw_key.strip()):
            raise InvalidRegistrationKey("Registration key is missing or malformed.")
        key_hash = self._key_core.hash_key(raw_key.strip())
        applicant = await self._applicants.get_by_registration_key_hash(db_session, key_hash)
        if applicant is None or applicant.registration_key_hash is None:
            raise InvalidRegistrationKey("Registration key is not recognised.")
        if not self._key_core.hash_matches(applicant.registration_key_hash, raw_key.strip()):
            raise InvalidRegistrationKey("Registration key is not recognised.")
        structlog.contextvars.bind_contextvars(applicant_id=str(applicant.id))
        return applicant

    async def require_stage(
        self,
        db_session: AsyncSession,
        applicant: Applicant,
        *stages: ApplicantStage,
    ) -> Applicant:
        """Gate a request on the applicant's stage, lifting elapsed cooldowns first."""
        if applicant.failed_stage is not None:
            applicant = await self._resolve_failure(db_session, applicant)
        if applicant.stage not in stages:
            raise StageMismatch(
                f"Request is not valid in stage {applicant.stage.value}.",
                extra={
                    "currentStage": applicant.stage.value,
                    "expectedStages": [stage.value for stage in stages],
                },
            )
        return applicant

    def next_links(self, stage: ApplicantStage) -> list[dict[str, str]]:
        """Hypermedia links for an applicant in `stage`."""
        links = [
            {"rel": "next", "href": href, "method": method}
            for method, href in _NEXT_REQUESTS[stage]
        ]
        links.append({"rel": "status", "href": "/status", "method": "GET"})
        return links

    async def _resolve_failure(self, db_session: AsyncSession, applicant: Applicant) -> Applicant:
        failed_stage = applicant.failed_stage
        assert failed_stage is not None
        now = self._now()
        if applicant.cooldown_until is not None and now < applicant.cooldown_until:
            raise self._cooldown_error(applicant, now)

        await self._discard_artifacts(db_session, applicant.id, failed_stage)
        reset_stage = RESET_TARGETS.get(failed_stage, failed_stage)
        await self._applicants.clear_failure(
            db_session, applicant.id, failed_stage, reset_stage, now
        )
        logger.info(
            "stage_reset",
            applicant_id=str(applicant.id),
            failed_stage=failed_stage.value,
            reset_stage=reset_stage.value,
        )
        refreshed = await self._applicants.get(db_session, applicant.id)
        return refreshed or applicant

    async def _discard_artifacts(
        self, db_session: AsyncSession, applicant_id: UUID, stage: ApplicantStage
    ) -> None:
        if stage == ApplicantStage.CHALLENGE_PENDING:
            await self._challenges.expire_for_applicant(db_session, applicant_id)
        elif stage == ApplicantStage.UPLOADING:
            for session_id in await self._uploads.fail_live_sessions(
                db_session, applicant_id, "stage_reset"
            ):
                self._spool.discard(session_id)
        elif stage == ApplicantStage.STREAMING:
            await self._cursors.delete(db_session, applicant_id)

    @staticmethod
    def _cooldown_error(applicant: Applicant, now: datetime) -> StageCooldown:
        assert applicant.cooldown_until is not None
        retry_after = max(1, math.ceil((applicant.cooldown_until - now).total_seconds()))
        extra: dict[str, Any] = {
            "retryAfterSeconds": retry_after,
            "failedStage": applicant.failed_stage.value if applicant.failed_stage else None,
            "failureReason": applicant.failure_reason,
        }
        return StageCooldown(
            "Stage failed recently; retry after the cooldown.",
            extra=extra,
            headers={"Retry-After": str(retry_after)},
        )


@lru_cache
def get_orchestrator() -> StageOrchestrator:
    """Create and cache the stage orchestrator."""
    settings = get_settings()
    return StageOrchestrator(
        cooldown_seconds=settings.cooldown.stage_failure_seconds,
        spool=UploadSpool(settings.upload.spool_dir),
    )
