"""WhatsApp Business Cloud API (Graph) adapter and inbound extraction."""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from omnigate.channels.base import DEFAULT_TIMEOUT_SECONDS, HttpAdapter
from omnigate.channels.meta import DEFAULT_GRAPH_API_BASE
from omnigate.errors import ExternalApiError
from omnigate.models import InboundMessage, MediaUpload, SendResult

logger = logging.getLogger(__name__)

SUPPORTED_AUDIO_MIME = frozenset({"audio/aac", "audio/mp4", "audio/mpeg", "audio/amr", "audio/ogg"})
_AUDIO_EXTENSIONS = {"audio/ogg": "ogg", "audio/mp4": "m4a", "audio/mpeg": "mp3"}


def cloud_media_type(media_type: str) -> str:
    """Map a media type or mime type to one of Cloud's message types."""
    for kind in ("image", "video", "audio"):
        if media_type == kind or media_type.startswith(f"{kind}/"):
            return kind
    return "document"


def normalize_audio_mime(mime_type: str) -> str:
    """Cloud rejects e.g. ``audio/webm``; Opus in WebM is accepted labelled as OGG."""
    base = mime_type.split(";", 1)[0].strip().lower()
    return base if base in SUPPORTED_AUDIO_MIME else "audio/ogg"


class WhatsAppCloudAdapter(HttpAdapter):
    """Sends as one WhatsApp Business phone number."""

    provider = "whatsapp_cloud"

    def __init__(
        self,
        client: httpx.AsyncClient,
        phone_number_id: str,
        access_token: str,
        graph_base: str = DEFAULT_GRAPH_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(client, timeout)
        self._graph_base = graph_base.rstrip("/")
        self._phone_number_id = phone_number_id
        self._headers = {"Authorization": f"Bearer {access_token}"}

    def target_for(self, remote_identifier: str) -> str:
        return re.sub(r"\D", "", remote_identifier.split("@", 1)[0])

    async def _send(self, payload: dict[str, Any]) -> SendResult:
        data = await self._request(
            "POST",
            f"{self._graph_base}/{self._phone_number_id}/messages",
            json={"messaging_product": "whatsapp", **payload},
            headers=self._headers,
        )
        messages = data.get("messages") or [{}]
        external_id = messages[0].get("id")
        return SendResult(external_id=external_id, raw=data)

    async def send_text(self, target: str, text: str) -> SendResult:
        return await self._send({"to": target, "type": "text", "text": {"body": text}})

    async def send_media(
        self,
        target: str,
        media_url: str,
        media_type: str,
        caption: str | None = None,
        upload: MediaUpload | None = None,
    ) -> SendResult:
        kind = cloud_media_type(media_type)
        media: dict[str, Any] = {"link": media_url}
        if upload is not None:
            media_id = await self.upload_media(upload, kind)
            if media_id:
                media = {"id": media_id}
        if caption and kind != "audio":
            media["caption"] = caption
        return await self._send({"to": target, "type": kind, kind: media})

    async def upload_media(self, upload: MediaUpload, kind: str) -> str | None:
        """Upload a buffer to the media endpoint; None means fall back to the link."""
        mime_type = upload.mime_type
        filename = upload.filename
        if kind == "audio":
            mime_type = normalize_audio_mime(mime_type)
            filename = f"audio.{_AUDIO_EXTENSIONS.get(mime_type, 'ogg')}"
        try:
            data = await self._request(
                "POST",
                f"{self._graph_base}/{self._phone_number_id}/media",
                data={"messaging_product": "whatsapp", "type": mime_type},
                files={"file": (filename, upload.content, mime_type)},
                headers=self._headers,
            )
        except ExternalApiError as exc:
            logger.warning("Cloud media upload failed, sending link instead: %s", exc.details)
            return None
        media_id = data.get("id")
        if not media_id:
            logger.warning("Cloud media upload returned no id, sending link instead")
        return media_id


def extract_messages(payload: dict[str, Any]) -> list[InboundMessage]:
    """Extract inbound messages from a Cloud webhook, ignoring status updates."""
    messages: list[InboundMessage] = []
    for entry in payload.get("entry", []):
        for change in entry.get("changes", []):
            value = change.get("value", {})
            names = {
                c.get("wa_id"): (c.get("profile") or {}).get("name")
                for c in value.get("contacts", [])
            }
            for msg in value.get("messages", []):
                sender = msg.get("from", "")
                if not sender:
                    continue
                msg_type = msg.get("type", "text")
                text = (msg.get("text") or {}).get("body", "")
                media_type = None
                if msg_type != "text" and isinstance(msg.get(msg_type), dict):
                    media_type = msg_type
                    text = text or msg[msg_type].get("caption", "")
                messages.append(InboundMessage(
                    remote_identifier=f"{sender}@s.whatsapp.net",
                    external_id=msg.get("id"),
                    text=text,
                    media_type=media_type,
                    contact_name=names.get(sender) or sender,
                    phone=sender,
                    raw=msg,
                ))
    return messages
