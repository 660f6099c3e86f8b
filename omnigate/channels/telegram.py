"""Telegram Bot API adapter.

Handles outbound sends plus the inbound side: webhook secret verification
and message extraction from Bot API updates.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import httpx

from omnigate.channels.base import DEFAULT_TIMEOUT_SECONDS, HttpAdapter
from omnigate.errors import ExternalApiError
from omnigate.models import InboundMessage, MediaUpload, SendResult

logger = logging.getLogger(__name__)

DEFAULT_TELEGRAM_API_BASE = "https://api.telegram.org"

# media type -> (Bot API method, payload field)
_MEDIA_METHODS = {
    "image": ("sendPhoto", "photo"),
    "video": ("sendVideo", "video"),
    "audio": ("sendAudio", "audio"),
}
_INBOUND_MEDIA = {
    "photo": "image",
    "video": "video",
    "audio": "audio",
    "voice": "audio",
    "document": "document",
    "sticker": "sticker",
}


def webhook_secret(bot_token: str) -> str:
    """Secret token registered with setWebhook: SHA-256 of the bot token."""
    return hashlib.sha256(bot_token.encode()).hexdigest()


def verify_webhook(bot_token: str, headers: dict[str, str]) -> bool:
    """Verify the ``X-Telegram-Bot-Api-Secret-Token`` header in constant time."""
    secret = headers.get("x-telegram-bot-api-secret-token", "")
    if not secret:
        return False
    return hmac.compare_digest(secret, webhook_secret(bot_token))


class TelegramAdapter(HttpAdapter):
    """Sends as one bot."""

    provider = "telegram"

    def __init__(
        self,
        client: httpx.AsyncClient,
        bot_token: str,
        api_base: str = DEFAULT_TELEGRAM_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(client, timeout)
        self._api_url = f"{api_base.rstrip('/')}/bot{bot_token}"

    def target_for(self, remote_identifier: str) -> str:
        return remote_identifier

    async def _call(self, method: str, payload: dict[str, Any]) -> SendResult:
        data = await self._request("POST", f"{self._api_url}/{method}", json=payload)
        # The Bot API reports some failures as 200 with ok=false
        if not data.get("ok"):
            raise ExternalApiError(
                self.provider,
                f"telegram {method} failed",
                status=data.get("error_code"),
                detail=data.get("description"),
            )
        result = data.get("result") or {}
        message_id = result.get("message_id")
        return SendResult(
            external_id=str(message_id) if message_id is not None else None, raw=result,
        )

    async def send_text(self, target: str, text: str) -> SendResult:
        return await self._call("sendMessage", {"chat_id": target, "text": text})

    async def send_media(
        self,
        target: str,
        media_url: str,
        media_type: str,
        caption: str | None = None,
        upload: MediaUpload | None = None,
    ) -> SendResult:
        kind = media_type.split("/", 1)[0]
        method, field_name = _MEDIA_METHODS.get(kind, ("sendDocument", "document"))
        payload: dict[str, Any] = {"chat_id": target, field_name: media_url}
        if caption:
            payload["caption"] = caption
        return await self._call(method, payload)


def extract_message(update: dict[str, Any]) -> InboundMessage | None:
    """Extract the message from a Bot API update (``message`` or ``edited_message``).

    Returns None for updates that carry no chat message (callbacks, polls).
    """
    message = update.get("message") or update.get("edited_message")
    if not message:
        return None
    chat = message.get("chat") or {}
    if "id" not in chat:
        return None

    media_type = next((t for k, t in _INBOUND_MEDIA.items() if k in message), None)
    sender = message.get("from") or {}
    name = " ".join(
        part for part in (sender.get("first_name"), sender.get("last_name")) if part
    ) or sender.get("username") or chat.get("title")

    external_id = message.get("message_id")
    return InboundMessage(
        remote_identifier=str(chat["id"]),
        external_id=str(external_id) if external_id is not None else None,
        text=message.get("text") or message.get("caption") or "",
        media_type=media_type,
        contact_name=name,
        raw=update,
    )
