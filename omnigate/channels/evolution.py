"""WhatsApp via the Evolution API bridge.

Outbound sends and instance management go through the operator-hosted
Evolution server (``apikey`` header). Inbound events arrive as Evolution
webhooks keyed by instance name.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from omnigate.channels.base import DEFAULT_TIMEOUT_SECONDS, HttpAdapter
from omnigate.errors import ChannelConfigError, ExternalApiError
from omnigate.models import InboundMessage, MediaUpload, SendResult, WebhookEventType

logger = logging.getLogger(__name__)

# Evolution message keys -> normalized media type
_MEDIA_KEYS = {
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
    "stickerMessage": "sticker",
}

# Evolution lifecycle events forwarded to user webhooks
EVOLUTION_EVENT_MAP: dict[str, WebhookEventType] = {
    "connection.update": WebhookEventType.WHATSAPP_CONNECTION_UPDATE,
    "qrcode.updated": WebhookEventType.CHANNEL_QR_UPDATED,
    "presence.update": WebhookEventType.WHATSAPP_PRESENCE_UPDATE,
    "groups.update": WebhookEventType.WHATSAPP_GROUPS_UPDATE,
}

DEFAULT_WEBHOOK_EVENTS = ["MESSAGES_UPSERT", "CONNECTION_UPDATE", "QRCODE_UPDATED"]


class EvolutionAdapter(HttpAdapter):
    """Sends through one Evolution instance."""

    provider = "evolution"

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        instance_id: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if not base_url:
            raise ChannelConfigError(
                "Evolution API is not configured", "set EVOLUTION_API_URL and EVOLUTION_API_KEY",
            )
        super().__init__(client, timeout)
        self._base_url = base_url.rstrip("/")
        self._headers = {"apikey": api_key}
        self.instance_id = instance_id

    def target_for(self, remote_identifier: str) -> str:
        # Group and linked-device JIDs must keep their suffix
        if remote_identifier.endswith(("@g.us", "@lid")):
            return remote_identifier
        return remote_identifier.split("@", 1)[0]

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST", f"{self._base_url}{path}/{self.instance_id}", json=body, headers=self._headers,
        )

    async def send_text(self, target: str, text: str) -> SendResult:
        data = await self._post("/message/sendText", {"number": target, "text": text})
        return _result(data)

    async def send_media(
        self,
        target: str,
        media_url: str,
        media_type: str,
        caption: str | None = None,
        upload: MediaUpload | None = None,
    ) -> SendResult:
        media_type = evolution_media_type(media_type)
        if media_type == "audio":
            return await self.send_audio(target, media_url)
        if media_type == "sticker":
            data = await self._post("/message/sendSticker", {"number": target, "sticker": media_url})
            return _result(data)

        body: dict[str, Any] = {"number": target, "mediatype": media_type, "media": media_url}
        if caption:
            body["caption"] = caption
        if media_type == "document":
            body["fileName"] = media_url.rstrip("/").rsplit("/", 1)[-1] or "document"
        data = await self._post("/message/sendMedia", body)
        return _result(data)

    async def send_audio(self, target: str, audio_url: str) -> SendResult:
        """Send as a voice note, falling back to a plain audio attachment."""
        try:
            data = await self._post("/message/sendWhatsAppAudio", {"number": target, "audio": audio_url})
        except ExternalApiError as exc:
            logger.info("Voice-note send failed (%s), retrying as media", exc.message)
            data = await self._post(
                "/message/sendMedia",
                {"number": target, "mediatype": "audio", "media": audio_url},
            )
        return _result(data)

    # --- Instance management ---

    async def connection_state(self) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"{self._base_url}/instance/connectionState/{self.instance_id}",
            headers=self._headers,
        )

    async def connect(self) -> dict[str, Any]:
        """Start pairing; the answer carries the QR code while unpaired."""
        return await self._request(
            "GET", f"{self._base_url}/instance/connect/{self.instance_id}", headers=self._headers,
        )

    async def logout(self) -> dict[str, Any]:
        return await self._request(
            "DELETE", f"{self._base_url}/instance/logout/{self.instance_id}", headers=self._headers,
        )

    async def delete_instance(self) -> dict[str, Any]:
        """Log out (best effort) and delete the instance; a missing instance is fine."""
        try:
            await self.logout()
        except ExternalApiError as exc:
            logger.info("Logout before delete failed for %s: %s", self.instance_id, exc.message)
        try:
            return await self._request(
                "DELETE",
                f"{self._base_url}/instance/delete/{self.instance_id}",
                headers=self._headers,
            )
        except ExternalApiError as exc:
            if exc.status == 404:
                return {"success": True, "message": "Instance does not exist"}
            raise

    async def set_webhook(
        self, url: str, events: list[str] | None = None,
    ) -> dict[str, Any]:
        return await self._post("/webhook/set", {
            "url": url,
            "webhook_by_events": False,
            "webhook_base64": True,
            "events": events or DEFAULT_WEBHOOK_EVENTS,
        })


def evolution_media_type(media_type: str) -> str:
    """Map a media type or mime type to an Evolution ``mediatype``."""
    if media_type == "sticker":
        return "sticker"
    for kind in ("image", "video", "audio"):
        if media_type == kind or media_type.startswith(f"{kind}/"):
            return kind
    return "document"


def _result(data: dict[str, Any]) -> SendResult:
    key = data.get("key") or {}
    external_id = key.get("id")
    return SendResult(external_id=str(external_id) if external_id else None, raw=data)


def event_name(payload: dict[str, Any]) -> str:
    """Normalize ``MESSAGES_UPSERT`` and ``messages.upsert`` to the dotted form."""
    return str(payload.get("event", "")).lower().replace("_", ".")


def extract_messages(payload: dict[str, Any]) -> list[InboundMessage]:
    """Extract inbound messages from an Evolution ``messages.upsert`` webhook.

    Own messages (``fromMe``) and group chats are skipped; the former were
    already stored when sent.
    """
    if event_name(payload) != "messages.upsert":
        return []
    data = payload.get("data")
    items = data if isinstance(data, list) else [data] if isinstance(data, dict) else []

    messages: list[InboundMessage] = []
    for item in items:
        key = item.get("key") or {}
        if key.get("fromMe"):
            continue
        remote_jid = key.get("remoteJid") or item.get("remoteJid")
        if not remote_jid or remote_jid.endswith("@g.us"):
            continue

        body = item.get("message") or {}
        media_type = next((t for k, t in _MEDIA_KEYS.items() if k in body), None)
        media = body.get(f"{media_type}Message", {}) if media_type else {}
        text = (
            body.get("conversation")
            or (body.get("extendedTextMessage") or {}).get("text")
            or media.get("caption")
            or ""
        )
        phone = remote_jid.split("@", 1)[0]
        messages.append(InboundMessage(
            remote_identifier=remote_jid,
            external_id=key.get("id"),
            text=text,
            media_type=media_type,
            media_url=media.get("url"),
            contact_name=item.get("pushName") or phone,
            phone=phone,
            raw=item,
        ))
    return messages
