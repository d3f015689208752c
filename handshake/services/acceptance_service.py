"""Stage 6: acceptance token issuance and verification against rotating keys."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from handshake.config import get_settings
from handshake.core.jwt import AcceptanceTokenCodec
from handshake.core.key_cache import VerificationKeyCache
from handshake.core.signing_keys import (
    PublicSigningKey,
    SigningKeyService,
    get_signing_key_service,
)
from handshake.db.session import session_scope
from handshake.errors import StaleKey, TokenInvalid
from handshake.models.applicant import ApplicantStage
from handshake.services.orchestrator import StageOrchestrator, get_orchestrator

logger = structlog.get_logger(__name__)


def parse_bearer(authorization: str | None) -> str:
    """Extract the token from an `Authorization: Bearer` header."""
    if not authorization:
        raise TokenInvalid("Authorization bearer token is required.")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise TokenInvalid("Authorization header must use the Bearer scheme.")
    return token.strip()


@dataclass(frozen=True)
class IssuedToken:
    token: str
    kid: str
    expires_at: datetime
    links: list[dict[str, str]]


@dataclass(frozen=True)
class AcceptOutcome:
    applicant_id: UUID
    stage: ApplicantStage
    links: list[dict[str, str]]


class AcceptanceService:
    """Mint acceptance tokens and admit applicants presenting a valid one."""

    def __init__(
        self,
        orchestrator: StageOrchestrator,
        signing_keys: SigningKeyService,
        token_ttl_seconds: int,
        cache_refresh_seconds: int = 60,
        codec: AcceptanceTokenCodec | None = None,
        key_cache: VerificationKeyCache | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._signing_keys = signing_keys
        self._token_ttl_seconds = token_ttl_seconds
        self._codec = codec or AcceptanceTokenCodec()
        self._session_factory = session_factory
        self._key_cache = key_cache or VerificationKeyCache(
            fetch=self._load_public_key,
            refresh_seconds=cache_refresh_seconds,
            now=orchestrator.now,
        )

    async def issue_token(
        self, db_session: AsyncSession, registration_key: str | None
    ) -> IssuedToken:
        """Sign an acceptance token with the newest open key."""
        applicant = await self._orchestrator.authenticate(db_session, registration_key)
        applicant = await self._orchestrator.require_stage(
            db_session, applicant, ApplicantStage.TOKEN_PENDING
        )
        now = self._orchestrator.now()
        try:
            material = await self._signing_keys.ensure_current(db_session, now)
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()

        expires_at = min(
            datetime.fromtimestamp(int(now.timestamp()) + self._token_ttl_seconds, now.tzinfo),
            material.valid_until,
        )
        token = self._codec.issue(
            subject=str(applicant.id),
            private_key_pem=material.private_key_pem,
            kid=material.kid,
            issued_at=now,
            expires_at=expires_at,
        )
        logger.info(
            "acceptance_token_issued",
            applicant_id=str(applicant.id),
            kid=material.kid,
            expires_at=expires_at.isoformat(),
        )
        return IssuedToken(
            token=token,
            kid=material.kid,
            expires_at=expires_at,
            links=self._orchestrator.next_links(ApplicantStage.TOKEN_PENDING),
        )

    async def verify(self, token: str) -> dict[str, Any]:
        """Verify a token against the key named by its `kid` header."""
        header = self._codec.read_header(token)
        key = await self._key_cache.get(header.kid, header.issued_at)
        if key is None:
            raise TokenInvalid("Token was signed by an unknown key.")

        now = self._orchestrator.now()
        if now >= key.valid_until:
            raise StaleKey("Signing key window has closed.", extra={"kid": key.kid})
        if not key.valid_from <= header.issued_at < key.valid_until:
            raise StaleKey(
                "Token was issued outside its signing key window.", extra={"kid": key.kid}
            )
        return self._codec.verify(token, key.public_key_pem, now)

    async def accept(
        self,
        db_session: AsyncSession,
        registration_key: str | None,
        authorization: str | None,
    ) -> AcceptOutcome:
        """Advance to the terminal stage when the token belongs to the applicant."""
        applicant = await self._orchestrator.authenticate(db_session, registration_key)
        applicant = await self._orchestrator.require_stage(
            db_session, applicant, ApplicantStage.TOKEN_PENDING
        )
        claims = await self.verify(parse_bearer(authorization))
        if str(claims.get("sub", "")) != str(applicant.id):
            raise TokenInvalid("Token subject does not match the applicant.")

        try:
            await self._orchestrator.advance_on_success(
                db_session, applicant.id, ApplicantStage.TOKEN_PENDING
            )
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        logger.info("applicant_accepted", applicant_id=str(applicant.id), jti=claims.get("jti"))
        return AcceptOutcome(
            applicant_id=applicant.id,
            stage=ApplicantStage.ACCEPTED,
            links=self._orchestrator.next_links(ApplicantStage.ACCEPTED),
        )

    async def jwks(self, db_session: AsyncSession) -> dict[str, list[dict[str, str]]]:
        """Public keys whose windows are currently open."""
        return await self._signing_keys.get_jwks_payload(db_session, self._orchestrator.now())

    async def _load_public_key(self, kid: str) -> PublicSigningKey | None:
        async with session_scope(self._session_factory) as db_session:
            return await self._signing_keys.get_public_key(db_session, kid)


@lru_cache
def get_acceptance_service() -> AcceptanceService:
    """Create and cache the acceptance service from settings."""
    settings = get_settings()
    return AcceptanceService(
        orchestrator=get_orchestrator(),
        signing_keys=get_signing_key_service(),
        token_ttl_seconds=settings.signing_keys.token_ttl_seconds,
        cache_refresh_seconds=settings.signing_keys.cache_refresh_seconds,
    )
