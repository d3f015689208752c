"""Pre-signed, time-limited upload URL signing."""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from urllib.parse import urlencode
from uuid import UUID

from handshake.errors import UploadUrlInvalid


class UploadUrlSigner:
    """HMAC-sign `(session id, expiry)` pairs into `PUT` targets."""

    def __init__(self, secret: str, base_url: str) -> None:
        self._secret = secret.encode("utf-8")
        self._base_url = base_url.rstrip("/")

    def build_url(self, session_id: UUID, expires_at: datetime) -> str:
        """Return the absolute pre-signed URL for the session."""
        expires = int(expires_at.timestamp())
        query = urlencode({"expires": expires, "signature": self._sign(session_id, expires)})
        return f"{self._base_url}/uploads/{session_id}?{query}"

    def verify(self, session_id: UUID, expires: int, signature: str, now: datetime) -> None:
        """Reject tampered or expired targets."""
        expected = self._sign(session_id, expires)
        if not hmac.compare_digest(expected, signature):
            raise UploadUrlInvalid("Upload URL signature is invalid.")
        if int(now.timestamp()) >= expires:
            raise UploadUrlInvalid("Upload URL has expired.")

    def _sign(self, session_id: UUID, expires: int) -> str:
        message = f"{session_id}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()
