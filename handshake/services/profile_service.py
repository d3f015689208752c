"""Stage 2 draft creation and Stage 3 conditional, rate-limited field updates."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.core.rate_limit import TokenBucketRateLimiter, get_profile_rate_limiter
from handshake.errors import FieldNotFound, InvalidRequest, PreconditionFailed
from handshake.models.applicant import ApplicantStage
from handshake.models.profile import ProfileField
from handshake.repositories import ProfileRepository
from handshake.schemas.profile import FieldUpdateRequest, ProfileFieldView, ProfileResponse
from handshake.services.idempotency_service import (
    IdempotencyService,
    StoredResponse,
    get_idempotency_service,
)
from handshake.services.orchestrator import StageOrchestrator, get_orchestrator

logger = structlog.get_logger(__name__)

_ETAG_PATTERN = re.compile(r'^(?:W/)?"(\d{1,18})"$|^(\d{1,18})$')


def parse_if_match(if_match: str | None) -> int:
    """Extract the expected version from an `If-Match` value such as `"3"`."""
    if if_match is None or not if_match.strip():
        raise PreconditionFailed("If-Match header is required.")
    match = _ETAG_PATTERN.match(if_match.strip())
    if match is None:
        raise PreconditionFailed("If-Match header is malformed.")
    return int(match.group(1) or match.group(2))


def parse_field_update(body: bytes) -> str:
    """Validate a `{"value": ...}` PATCH body and return the new value."""
    try:
        payload = FieldUpdateRequest.model_validate_json(body)
    except ValidationError as exc:
        error = exc.errors()[0]
        location = ".".join(str(part) for part in ("body", *error.get("loc", ())))
        raise InvalidRequest(
            f"Invalid request payload: {location}: {error.get('msg', 'invalid')}."
        ) from exc
    return payload.value


def _field_view(row: ProfileField) -> ProfileFieldView:
    return ProfileFieldView(name=row.name, value=row.value, version=row.version, etag=row.etag)


@dataclass(frozen=True)
class UpdatedField:
    """Result of a successful conditional write."""

    name: str
    value: str
    version: int
    etag: str
    stage: ApplicantStage
    links: list[dict[str, str]]


class ProfileService:
    """Profile draft lifecycle guarded by idempotency keys and version tokens."""

    def __init__(
        self,
        orchestrator: StageOrchestrator,
        idempotency: IdempotencyService,
        rate_limiter: TokenBucketRateLimiter,
        profiles: ProfileRepository | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._idempotency = idempotency
        self._rate_limiter = rate_limiter
        self._profiles = profiles or ProfileRepository()

    async def create_profile(
        self,
        db_session: AsyncSession,
        registration_key: str | None,
        idempotency_key: str,
        fields: dict[str, str],
        fingerprint: str,
    ) -> StoredResponse:
        """Open the draft exactly once per idempotency key."""
        applicant = await self._orchestrator.authenticate(db_session, registration_key)

        async def operation() -> tuple[int, bytes]:
            current = await self._orchestrator.require_stage(
                db_session, applicant, ApplicantStage.REGISTERED
            )
            rows = await self._profiles.create_fields(db_session, current.id, fields)
            await self._orchestrator.advance_on_success(
                db_session, current.id, ApplicantStage.REGISTERED
            )
            body = ProfileResponse(
                applicant_id=current.id,
                stage=ApplicantStage.PROFILE_DRAFT.value,
                fields=[_field_view(row) for row in rows],
                links=self._orchestrator.next_links(ApplicantStage.PROFILE_DRAFT),
            )
            logger.info(
                "profile_drafted",
                applicant_id=str(current.id),
                field_count=len(rows),
            )
            return 201, body.model_dump_json(by_alias=True).encode("utf-8")

        return await self._idempotency.execute(
            db_session,
            applicant_id=applicant.id,
            idempotency_key=idempotency_key,
            fingerprint=fingerprint,
            operation=operation,
        )

    async def get_profile(
        self, db_session: AsyncSession, registration_key: str | None
    ) -> ProfileResponse:
        """Return the stored fields with their current ETags."""
        applicant = await self._orchestrator.authenticate(db_session, registration_key)
        rows = await self._profiles.list_fields(db_session, applicant.id)
        return ProfileResponse(
            applicant_id=applicant.id,
            stage=applicant.stage.value,
            fields=[_field_view(row) for row in rows],
            links=self._orchestrator.next_links(applicant.stage),
        )

    async def conditional_update(
        self,
        db_session: AsyncSession,
        client_ip: str,
        registration_key: str | None,
        field_name: str,
        if_match: str | None,
        body: bytes,
    ) -> UpdatedField:
        """Write one field if its version still matches, then lock the profile.

        The rate-limit token is spent before the body is parsed, so malformed
        and stale attempts count against the caller like any other.
        """
        await self._rate_limiter.enforce(client_ip)

        applicant = await self._orchestrator.authenticate(db_session, registration_key)
        value = parse_field_update(body)
        applicant = await self._orchestrator.require_stage(
            db_session, applicant, ApplicantStage.PROFILE_DRAFT
        )
        expected_version = parse_if_match(if_match)

        try:
            new_version = await self._profiles.conditional_update(
                db_session, applicant.id, field_name, expected_version, value
            )
            if new_version is None:
                current = await self._profiles.get_field(db_session, applicant.id, field_name)
                if current is None:
                    raise FieldNotFound(f"Profile field {field_name!r} does not exist.")
                raise PreconditionFailed(
                    "Profile field version does not match.",
                    extra={"currentVersion": current.version, "etag": current.etag},
                    headers={"ETag": current.etag},
                )
            await self._orchestrator.advance_on_success(
                db_session, applicant.id, ApplicantStage.PROFILE_DRAFT
            )
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        logger.info(
            "profile_field_updated",
            applicant_id=str(applicant.id),
            field=field_name,
            version=new_version,
        )
        return UpdatedField(
            name=field_name,
            value=value,
            version=new_version,
            etag=f'"{new_version}"',
            stage=ApplicantStage.PROFILE_LOCKED,
            links=self._orchestrator.next_links(ApplicantStage.PROFILE_LOCKED),
        )


@lru_cache
def get_profile_service() -> ProfileService:
    """Create and cache the profile service."""
    return ProfileService(
        orchestrator=get_orchestrator(),
        idempotency=get_idempotency_service(),
        rate_limiter=get_profile_rate_limiter(),
    )
