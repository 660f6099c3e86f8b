"""Shared plumbing for provider adapters."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Protocol

import httpx

from omnigate.errors import ExternalApiError
from omnigate.models import MediaUpload, SendResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0
MEDIA_TYPES = ("image", "video", "audio", "document", "sticker")


class ChannelAdapter(Protocol):
    """What the dispatcher needs from every provider."""

    def target_for(self, remote_identifier: str) -> str: ...

    async def send_text(self, target: str, text: str) -> SendResult: ...

    async def send_media(
        self,
        target: str,
        media_url: str,
        media_type: str,
        caption: str | None = None,
        upload: MediaUpload | None = None,
    ) -> SendResult: ...


class HttpAdapter:
    """Base for adapters that call a JSON HTTP API through a shared client."""

    provider = "http"

    def __init__(self, client: httpx.AsyncClient, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._client = client
        self._timeout = timeout

    async def _request(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Issue a request and return the decoded body.

        Raises:
            ExternalApiError: transport failure or a non-2xx answer.
        """
        try:
            resp = await self._client.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.HTTPError as exc:
            raise ExternalApiError(
                self.provider, f"{self.provider} request failed", detail=str(exc),
            ) from exc

        body = _decode(resp)
        if resp.status_code >= 400:
            raise ExternalApiError(
                self.provider,
                f"{self.provider} returned {resp.status_code}",
                status=resp.status_code,
                detail=_error_detail(body, resp),
            )
        return body


def _decode(resp: httpx.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"data": body}


def _error_detail(body: dict[str, Any], resp: httpx.Response) -> str:
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error)
    if error:
        return str(error)
    if body.get("message"):
        return str(body["message"])
    if body.get("description"):
        return str(body["description"])
    return resp.text[:500]


def verify_hub_signature(app_secret: str, headers: dict[str, str], body: bytes) -> bool:
    """Check the ``X-Hub-Signature-256`` HMAC Meta puts on Graph webhooks."""
    signature = headers.get("x-hub-signature-256", "")
    if not signature.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature[7:], expected)


def handle_verification(verify_token: str, params: dict[str, str]) -> tuple[int, str] | None:
    """Answer the Graph subscribe challenge.

    Returns (status, body), or None when the request is not a subscribe.
    """
    if params.get("hub.mode") != "subscribe":
        return None
    token = params.get("hub.verify_token", "")
    if verify_token and hmac.compare_digest(token, verify_token):
        return 200, params.get("hub.challenge", "")
    return 403, "Invalid verify token"
