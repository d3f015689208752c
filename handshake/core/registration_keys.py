"""Registration key generation, hashing, and comparison primitives."""

from __future__ import annotations

import hmac
import secrets
from hashlib import sha256


class RegistrationKeyCore:
    """Opaque credential minted once per applicant after the challenge succeeds."""

    _PREFIX = "rk_"

    def generate_raw_key(self) -> str:
        """Generate a registration key with the `rk_` prefix."""
        return f"{self._PREFIX}{secrets.token_urlsafe(32)}"

    def hash_key(self, raw_key: str) -> str:
        """Hash a raw key with SHA-256; only the digest is persisted."""
        return sha256(raw_key.encode("utf-8")).hexdigest()

    def is_valid_format(self, raw_key: str) -> bool:
        """Validate the key prefix and minimum length."""
        if len(raw_key) <= len(self._PREFIX):
            return False
        return hmac.compare_digest(raw_key[: len(self._PREFIX)], self._PREFIX)

    def hash_matches(self, expected_hash: str, raw_key: str) -> bool:
        """Constant-time compare between a stored hash and a presented key."""
        return hmac.compare_digest(expected_hash, self.hash_key(raw_key))
