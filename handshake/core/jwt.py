"""Acceptance token issuance, verification, and JWKS serialization."""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from jose import jwt
from jose.exceptions import JWTError

from handshake.errors import TokenExpired, TokenInvalid

JWT_ALGORITHM = "RS256"
ACCEPTANCE_TOKEN_TYPE = "acceptance"


@dataclass(frozen=True)
class UnverifiedHeader:
    """Routing information read from a token before its signature is checked."""

    kid: str
    issued_at: datetime


class AcceptanceTokenCodec:
    """Issue and verify RS256 acceptance tokens signed by rotating keys."""

    def issue(
        self,
        subject: str,
        private_key_pem: str,
        kid: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> str:
        """Issue a signed JWT with the required claims and a `kid` header."""
        payload = {
            "jti": str(uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "sub": subject,
            "type": ACCEPTANCE_TOKEN_TYPE,
        }
        return jwt.encode(payload, private_key_pem, algorithm=JWT_ALGORITHM, headers={"kid": kid})

    def read_header(self, token: str) -> UnverifiedHeader:
        """Extract `kid` and `iat` without verifying the signature."""
        try:
            header = jwt.get_unverified_header(token)
            claims = jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenInvalid("Invalid token.") from exc

        algorithm = str(header.get("alg", ""))
        if not hmac.compare_digest(algorithm, JWT_ALGORITHM):
            raise TokenInvalid("Invalid token algorithm.")
        kid = header.get("kid")
        if not isinstance(kid, str) or not kid.strip():
            raise TokenInvalid("Token is missing a key id.")
        issued_at = claims.get("iat")
        if not isinstance(issued_at, int):
            raise TokenInvalid("Token is missing an issue time.")
        return UnverifiedHeader(kid=kid, issued_at=datetime.fromtimestamp(issued_at, UTC))

    def verify(self, token: str, public_key_pem: str, now: datetime) -> dict[str, Any]:
        """Verify signature and claims; expiry is judged against `now`."""
        try:
            payload = jwt.decode(
                token,
                public_key_pem,
                algorithms=[JWT_ALGORITHM],
                options={
                    "verify_aud": False,
                    "verify_exp": False,
                    "require_jti": True,
                    "require_iat": True,
                    "require_exp": True,
                    "require_sub": True,
                },
            )
        except JWTError as exc:
            raise TokenInvalid("Invalid token.") from exc

        if int(now.timestamp()) >= int(payload["exp"]):
            raise TokenExpired("Token has expired.")
        token_type = str(payload.get("type", ""))
        if not hmac.compare_digest(token_type, ACCEPTANCE_TOKEN_TYPE):
            raise TokenInvalid("Invalid token type.")
        return payload

    @classmethod
    def build_public_jwk(cls, public_key_pem: str, kid: str) -> dict[str, str]:
        """Build RSA JWK document from a PEM encoded public key."""
        key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        if not isinstance(key, RSAPublicKey):
            raise ValueError("Signing public key must be RSA.")

        public_numbers = key.public_numbers()
        return {
            "kty": "RSA",
            "use": "sig",
            "alg": JWT_ALGORITHM,
            "kid": kid,
            "n": cls._base64url_uint(public_numbers.n),
            "e": cls._base64url_uint(public_numbers.e),
        }

    @staticmethod
    def _base64url_uint(value: int) -> str:
        """Encode an integer to base64url without padding."""
        value_bytes = value.to_bytes((value.bit_length() + 7) // 8, "big")
        return base64.urlsafe_b64encode(value_bytes).rstrip(b"=").decode("ascii")

    @staticmethod
    def calculate_kid(public_key_pem: str) -> str:
        """Derive a deterministic key ID from the public key."""
        digest = hashlib.sha256(public_key_pem.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest[:16]).rstrip(b"=").decode("ascii")

    @staticmethod
    def generate_rsa_keypair() -> tuple[str, str]:
        """Generate a fresh PEM-encoded RSA keypair."""
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        private_key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8")
        public_key_pem = (
            private_key.public_key()
            .public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            .decode("utf-8")
        )
        return private_key_pem, public_key_pem
