"""Time-windowed signing key management and rotation primitives."""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache

import structlog
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession

from handshake.config import get_settings
from handshake.core.jwt import AcceptanceTokenCodec
from handshake.models.signing_key import SigningKey
from handshake.repositories.signing_keys import SigningKeyRepository

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SigningKeyMaterial:
    """Decrypted signing-key material used for token issuance."""

    kid: str
    public_key_pem: str
    private_key_pem: str
    valid_from: datetime
    valid_until: datetime


@dataclass(frozen=True)
class PublicSigningKey:
    """Verification half of one signing key and its validity window."""

    kid: str
    public_key_pem: str
    valid_from: datetime
    valid_until: datetime


class SigningKeyService:
    """Mint, rotate and publish signing keys with encrypted private-key persistence.

    Each key is valid for `window_seconds`. A successor is minted once the
    newest key enters its final `overlap_seconds`, so two windows overlap and
    tokens signed just before a rotation stay verifiable until their key's
    window closes.
    """

    _ENCRYPTION_PREFIX = "v1:"

    def __init__(
        self,
        encryption_key: str,
        window_seconds: int,
        overlap_seconds: int,
        repository: SigningKeyRepository | None = None,
    ) -> None:
        if overlap_seconds >= window_seconds:
            raise ValueError("Signing key overlap must be shorter than the window.")
        self._fernet = Fernet(self._build_fernet_key(encryption_key))
        self._window = timedelta(seconds=window_seconds)
        self._overlap = timedelta(seconds=overlap_seconds)
        self._repository = repository or SigningKeyRepository()

    async def ensure_current(self, db_session: AsyncSession, now: datetime) -> SigningKeyMaterial:
        """Return the newest key covering `now`, minting a successor when due.

        Concurrent callers that both find rotation due queue on an advisory lock,
        and only the first mints; the rest re-read and reuse its key.
        """
        latest = await self._repository.latest(db_session)
        if self._rotation_due(latest, now):
            await self._repository.lock_rotation(db_session)
            latest = await self._repository.latest(db_session)
            if self._rotation_due(latest, now):
                latest = await self._mint(db_session, now)
        assert latest is not None
        return self._material_from_row(latest)

    def _rotation_due(self, latest: SigningKey | None, now: datetime) -> bool:
        return latest is None or not latest.covers(now) or now >= latest.valid_until - self._overlap

    async def rotate(self, db_session: AsyncSession, now: datetime) -> SigningKeyMaterial:
        """Mint a new key immediately; earlier keys keep their windows."""
        return self._material_from_row(await self._mint(db_session, now))

    async def get_public_key(self, db_session: AsyncSession, kid: str) -> PublicSigningKey | None:
        """Fetch the public half of one key, open or not."""
        row = await self._repository.get_by_kid(db_session, kid)
        if row is None:
            return None
        return self._public_from_row(row)

    async def list_open_keys(
        self, db_session: AsyncSession, now: datetime
    ) -> list[PublicSigningKey]:
        """Return the public halves of all keys whose window contains `now`."""
        rows = await self._repository.list_open(db_session, now)
        return [self._public_from_row(row) for row in rows]

    async def get_jwks_payload(
        self, db_session: AsyncSession, now: datetime
    ) -> dict[str, list[dict[str, str]]]:
        """Return JWKS payload for all open keys."""
        keys = await self.list_open_keys(db_session, now)
        return {
            "keys": [
                AcceptanceTokenCodec.build_public_jwk(key.public_key_pem, kid=key.kid)
                for key in keys
            ]
        }

    async def _mint(self, db_session: AsyncSession, now: datetime) -> SigningKey:
        private_pem, public_pem = AcceptanceTokenCodec.generate_rsa_keypair()
        kid = AcceptanceTokenCodec.calculate_kid(public_pem)
        # Token `iat` claims have whole-second precision.
        valid_from = now.replace(microsecond=0)
        row = await self._repository.create(
            db_session,
            kid=kid,
            public_key=public_pem,
            private_key=self._encrypt_private_key(private_pem),
            valid_from=valid_from,
            valid_until=valid_from + self._window,
        )
        logger.info(
            "signing_key_rotated",
            kid=kid,
            valid_from=row.valid_from.isoformat(),
            valid_until=row.valid_until.isoformat(),
        )
        return row

    def _material_from_row(self, row: SigningKey) -> SigningKeyMaterial:
        """Convert persisted signing-key row into decrypted material."""
        return SigningKeyMaterial(
            kid=row.kid,
            public_key_pem=row.public_key,
            private_key_pem=self._decrypt_private_key(row.private_key),
            valid_from=row.valid_from,
            valid_until=row.valid_until,
        )

    @staticmethod
    def _public_from_row(row: SigningKey) -> PublicSigningKey:
        return PublicSigningKey(
            kid=row.kid,
            public_key_pem=row.public_key,
            valid_from=row.valid_from,
            valid_until=row.valid_until,
        )

    def _encrypt_private_key(self, private_key_pem: str) -> str:
        """Encrypt private key material before persistence."""
        encrypted = self._fernet.encrypt(private_key_pem.encode("utf-8")).decode("utf-8")
        return f"{self._ENCRYPTION_PREFIX}{encrypted}"

    def _decrypt_private_key(self, stored_value: str) -> str:
        """Decrypt persisted private key material."""
        if not stored_value.startswith(self._ENCRYPTION_PREFIX):
            raise ValueError("Signing key material is not encrypted.")
        token = stored_value[len(self._ENCRYPTION_PREFIX) :]
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Unable to decrypt signing key material.") from exc

    @staticmethod
    def _build_fernet_key(encryption_key: str) -> bytes:
        """Build a valid fernet key from an arbitrary secret."""
        digest = hashlib.sha256(encryption_key.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest)


@lru_cache
def get_signing_key_service() -> SigningKeyService:
    """Create and cache signing-key service from settings."""
    settings = get_settings()
    return SigningKeyService(
        encryption_key=settings.signing_keys.encryption_key.get_secret_value(),
        window_seconds=settings.signing_keys.window_seconds,
        overlap_seconds=settings.signing_keys.overlap_seconds,
    )
