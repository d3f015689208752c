"""Async HTTP client delivering challenges to applicant-hosted callback endpoints."""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any

import httpx

DEFAULT_TIMEOUT = httpx.Timeout(connect=2.0, read=5.0, write=5.0, pool=5.0)
SIGNATURE_HEADER = "X-Signature"


class CallbackDeliveryError(Exception):
    """Raised when an applicant callback is unreachable or answers non-2xx."""

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


@dataclass(frozen=True)
class CallbackReceipt:
    """Successful delivery outcome."""

    status_code: int


def sign_body(secret: str, body: bytes) -> str:
    """Return the `sha256=<hex>` HMAC header value for a raw body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class CallbackClient:
    """POST signed JSON payloads to callback URLs."""

    def __init__(
        self,
        webhook_secret: str,
        timeout: httpx.Timeout | float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Create client with sane defaults and optional injected transport."""
        self._webhook_secret = webhook_secret
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout or DEFAULT_TIMEOUT,
            follow_redirects=False,
        )

    async def deliver(self, callback_url: str, payload: dict[str, Any]) -> CallbackReceipt:
        """Send the payload with an `X-Signature` header and require a 2xx answer."""
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_body(self._webhook_secret, body),
        }
        try:
            response = await self._client.post(callback_url, content=body, headers=headers)
        except httpx.RequestError as exc:
            raise CallbackDeliveryError("Callback endpoint unreachable.") from exc

        if not 200 <= response.status_code < 300:
            raise CallbackDeliveryError(
                f"Callback endpoint answered with status {response.status_code}.",
                response.status_code,
            )
        return CallbackReceipt(status_code=response.status_code)

    async def aclose(self) -> None:
        """Close underlying HTTP client if owned by this instance."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> CallbackClient:
        """Enter async context manager."""
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """Exit async context manager and close managed resources."""
        del exc_type, exc, tb
        await self.aclose()
