"""In-process verification key cache with single-flight refresh per kid."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from handshake.core.locks import KeyedLocks
from handshake.core.signing_keys import PublicSigningKey

KeyFetcher = Callable[[str], Awaitable[PublicSigningKey | None]]


@dataclass(frozen=True)
class CachedKey:
    """Public key plus the moment it was loaded."""

    key: PublicSigningKey
    fetched_at: datetime

    def covers(self, moment: datetime) -> bool:
        """Return True when the key window contains `moment`."""
        return self.key.valid_from <= moment < self.key.valid_until


class VerificationKeyCache:
    """Cache public keys by kid and refresh them on demand."""

    def __init__(
        self,
        fetch: KeyFetcher,
        refresh_seconds: int = 60,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        """Create cache with configurable refresh interval."""
        self._fetch = fetch
        self._refresh = timedelta(seconds=refresh_seconds)
        self._now = now or (lambda: datetime.now(UTC))
        self._entries: dict[str, CachedKey] = {}
        self._locks = KeyedLocks()
        self.fetch_count = 0

    async def get(self, kid: str, issued_at: datetime) -> PublicSigningKey | None:
        """Return the key for `kid`, refreshing when absent, stale, or not covering `issued_at`."""
        entry = self._entries.get(kid)
        if entry is not None and self._usable(entry, issued_at):
            return entry.key

        async with self._locks.get(kid):
            entry = self._entries.get(kid)
            if entry is not None and self._usable(entry, issued_at):
                return entry.key
            self.fetch_count += 1
            fetched = await self._fetch(kid)
            if fetched is None:
                self._entries.pop(kid, None)
                return None
            self._entries[kid] = CachedKey(key=fetched, fetched_at=self._now())
            return fetched

    def invalidate(self, kid: str | None = None) -> None:
        """Drop one cached kid, or all of them."""
        if kid is None:
            self._entries.clear()
        else:
            self._entries.pop(kid, None)

    def _usable(self, entry: CachedKey, issued_at: datetime) -> bool:
        return entry.covers(issued_at) and self._now() < entry.fetched_at + self._refresh
