"""Instagram and Facebook Messenger via the Graph Send API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from omnigate.channels.base import DEFAULT_TIMEOUT_SECONDS, HttpAdapter
from omnigate.errors import ExternalApiError
from omnigate.models import InboundMessage, MediaUpload, SendResult

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_API_BASE = "https://graph.facebook.com/v21.0"


def attachment_type(media_type: str) -> str:
    for kind in ("image", "video", "audio"):
        if media_type == kind or media_type.startswith(f"{kind}/"):
            return kind
    return "file"


class MetaAdapter(HttpAdapter):
    """Sends to a PSID (Messenger) or IGSID (Instagram) on behalf of a page."""

    provider = "meta"

    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        page_id: str | None = None,
        graph_base: str = DEFAULT_GRAPH_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(client, timeout)
        # Without a page id, /me resolves to the page when the token is a page token
        self._url = f"{graph_base.rstrip('/')}/{page_id or 'me'}/messages"
        self._token = access_token

    def target_for(self, remote_identifier: str) -> str:
        return remote_identifier

    async def _send(self, target: str, message: dict[str, Any]) -> SendResult:
        data = await self._request(
            "POST",
            self._url,
            params={"access_token": self._token},
            json={"recipient": {"id": target}, "message": message},
        )
        return SendResult(external_id=data.get("message_id"), raw=data)

    async def send_text(self, target: str, text: str) -> SendResult:
        return await self._send(target, {"text": text})

    async def send_media(
        self,
        target: str,
        media_url: str,
        media_type: str,
        caption: str | None = None,
        upload: MediaUpload | None = None,
    ) -> SendResult:
        result = await self._send(target, {
            "attachment": {
                "type": attachment_type(media_type),
                "payload": {"url": media_url, "is_reusable": True},
            },
        })
        if caption:
            # Attachments cannot carry text; the caption goes out as its own message
            try:
                await self.send_text(target, caption)
            except ExternalApiError as exc:
                logger.warning("Caption send to %s failed: %s", target, exc.details or exc.message)
        return result


def extract_messages(payload: dict[str, Any]) -> list[InboundMessage]:
    """Extract inbound messages from a Messenger/Instagram webhook, skipping echoes."""
    messages: list[InboundMessage] = []
    for entry in payload.get("entry", []):
        for event in entry.get("messaging", []):
            msg = event.get("message")
            sender = (event.get("sender") or {}).get("id")
            if not msg or not sender or msg.get("is_echo"):
                continue
            media_type = None
            media_url = None
            attachments = msg.get("attachments") or []
            if attachments:
                first = attachments[0]
                kind = first.get("type")
                media_type = "document" if kind == "file" else kind
                media_url = (first.get("payload") or {}).get("url")
            messages.append(InboundMessage(
                remote_identifier=str(sender),
                external_id=msg.get("mid"),
                text=msg.get("text", ""),
                media_type=media_type,
                media_url=media_url,
                contact_name=str(sender),
                raw=event,
            ))
    return messages
