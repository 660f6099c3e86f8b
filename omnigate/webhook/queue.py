"""Asynchronous fan-out of internal events to user webhooks.

Producers call :meth:`WebhookDispatchQueue.enqueue` and return immediately.
A single drain task delivers queued events one at a time, posting each to
every matching webhook concurrently. Deliveries are logged, never retried.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from omnigate.models import UserWebhook, WebhookEventType
from omnigate.store.webhooks import WebhookStore
from omnigate.webhook.signing import sign_payload

logger = logging.getLogger(__name__)

USER_AGENT = "omnigate-webhook/1.0"
DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_LOGGED_BODY_CHARS = 1000
TEST_EVENT = "webhook.test"

_LIFTED_KEYS = ("channel", "conversation", "message", "contact")


@dataclass
class _QueueItem:
    user_id: str
    event: str
    data: dict[str, Any]
    channel_id: str | None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WebhookDispatchQueue:
    """FIFO of pending events with at most one drain task running."""

    def __init__(
        self,
        store: WebhookStore,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._timeout = timeout
        self._clock = clock
        self._queue: deque[_QueueItem] = deque()
        self.processing = False
        self._drain_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._queue)

    def enqueue(
        self,
        user_id: str,
        event: WebhookEventType | str,
        data: dict[str, Any],
        channel_id: str | None = None,
    ) -> None:
        """Queue an event and start draining if idle. Must run inside an event loop."""
        name = event.value if isinstance(event, WebhookEventType) else event
        self._queue.append(_QueueItem(user_id, name, data, channel_id))
        if not self.processing:
            self.processing = True
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._queue:
                item = self._queue.popleft()
                try:
                    await self._dispatch(item)
                except Exception:
                    logger.exception("Webhook dispatch failed for event %s", item.event)
        finally:
            self.processing = False

    async def join(self) -> None:
        """Wait until every queued event has been delivered."""
        while self._drain_task is not None and not self._drain_task.done():
            await self._drain_task

    async def close(self) -> None:
        await self.join()
        if self._owns_client:
            await self._client.aclose()

    def build_payload(self, event: str, data: dict[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event": event,
            "timestamp": self._clock().isoformat(),
            "data": data,
        }
        for key in _LIFTED_KEYS:
            if data.get(key):
                payload[key] = data[key]
        return payload

    async def _dispatch(self, item: _QueueItem) -> None:
        webhooks = self._store.find_active_by_event(item.user_id, item.event, item.channel_id)
        if not webhooks:
            return
        payload = self.build_payload(item.event, item.data)
        logger.info("Dispatching %s to %d webhook(s)", item.event, len(webhooks))
        await asyncio.gather(
            *(self.deliver(webhook, payload) for webhook in webhooks),
            return_exceptions=True,
        )

    async def deliver(self, webhook: UserWebhook, payload: dict[str, Any]) -> dict[str, Any]:
        """POST one payload to one webhook and log the outcome.

        Returns ``{"success": bool, "status"?: int, "error"?: str}``.
        """
        body = json.dumps(payload, default=str, separators=(",", ":")).encode()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Event": payload["event"],
            "X-Webhook-Timestamp": payload["timestamp"],
            **webhook.headers,
        }
        if webhook.secret:
            headers["X-Webhook-Signature"] = sign_payload(body, webhook.secret)
            headers["X-Webhook-Secret"] = webhook.secret

        outcome: dict[str, Any]
        # The deadline covers the whole exchange, including a slow response body
        try:
            async with asyncio.timeout(self._timeout):
                resp = await self._client.post(
                    webhook.url, content=body, headers=headers, timeout=self._timeout,
                )
        except TimeoutError:
            logger.warning(
                "Webhook %s delivery timed out after %.1fs", webhook.id, self._timeout,
            )
            self._log(webhook, payload, error="timeout")
            return {"success": False, "error": "timeout"}
        except httpx.HTTPError as exc:
            error = str(exc) or type(exc).__name__
            logger.warning("Webhook %s delivery failed: %s", webhook.id, error)
            self._log(webhook, payload, error=error)
            return {"success": False, "error": error}

        error = None if resp.is_success else f"HTTP {resp.status_code}"
        if error:
            logger.warning(
                "Webhook %s returned %d: %s", webhook.id, resp.status_code, resp.text[:200],
            )
        self._log(
            webhook,
            payload,
            status=resp.status_code,
            body=resp.text[:MAX_LOGGED_BODY_CHARS],
            error=error,
        )
        outcome = {"success": resp.is_success, "status": resp.status_code}
        if error:
            outcome["error"] = error
        return outcome

    def _log(
        self,
        webhook: UserWebhook,
        payload: dict[str, Any],
        status: int | None = None,
        body: str | None = None,
        error: str | None = None,
    ) -> None:
        try:
            self._store.log_trigger(
                webhook.id, payload["event"], payload,
                response_status=status, response_body=body, error=error,
            )
        except sqlite3.Error as exc:
            logger.warning("Could not record delivery log for webhook %s: %s", webhook.id, exc)

    async def send_test(self, webhook: UserWebhook) -> dict[str, Any]:
        """Deliver a ``webhook.test`` event right away, bypassing the queue."""
        payload = self.build_payload(TEST_EVENT, {
            "message": "This is a test delivery",
            "webhook_id": webhook.id,
            "webhook_name": webhook.name,
        })
        return await self.deliver(webhook, payload)

    # --- Convenience producers ---

    def dispatch_message_received(
        self,
        user_id: str,
        channel_id: str,
        channel_type: str,
        conversation_id: str,
        message_id: str,
        content: str,
        channel_name: str | None = None,
        contact_name: str | None = None,
        contact_phone: str | None = None,
        media_type: str | None = None,
        media_url: str | None = None,
        raw: dict[str, Any] | None = None,
    ) -> None:
        self.enqueue(user_id, WebhookEventType.MESSAGE_RECEIVED, {
            "channel": {"id": channel_id, "type": channel_type, "name": channel_name},
            "conversation": {
                "id": conversation_id,
                "contact_name": contact_name,
                "contact_phone": contact_phone,
            },
            "message": {
                "id": message_id,
                "content": content,
                "direction": "in",
                "media_type": media_type,
                "media_url": media_url,
            },
            "raw": raw,
        }, channel_id)

    def dispatch_message_sent(
        self,
        user_id: str,
        channel_id: str,
        channel_type: str,
        conversation_id: str | None,
        message_id: str,
        content: str,
        contact_phone: str | None = None,
        media_type: str | None = None,
        media_url: str | None = None,
    ) -> None:
        self.enqueue(user_id, WebhookEventType.MESSAGE_SENT, {
            "channel": {"id": channel_id, "type": channel_type},
            "conversation": {"id": conversation_id, "contact_phone": contact_phone},
            "message": {
                "id": message_id,
                "content": content,
                "direction": "out",
                "media_type": media_type,
                "media_url": media_url,
            },
        }, channel_id)

    def dispatch_conversation_created(
        self,
        user_id: str,
        channel_id: str,
        conversation_id: str,
        contact_name: str | None = None,
        contact_phone: str | None = None,
    ) -> None:
        self.enqueue(user_id, WebhookEventType.CONVERSATION_CREATED, {
            "channel": {"id": channel_id},
            "conversation": {
                "id": conversation_id,
                "contact_name": contact_name,
                "contact_phone": contact_phone,
            },
        }, channel_id)

    def dispatch_contact_created(
        self,
        user_id: str,
        contact_id: str,
        name: str | None = None,
        phone: str | None = None,
        email: str | None = None,
        source: str | None = None,
    ) -> None:
        self.enqueue(user_id, WebhookEventType.CONTACT_CREATED, {
            "contact": {"id": contact_id, "name": name, "phone": phone, "email": email},
            "source": source,
        })

    def dispatch_channel_connected(
        self,
        user_id: str,
        channel_id: str,
        channel_type: str,
        channel_name: str | None = None,
    ) -> None:
        self.enqueue(user_id, WebhookEventType.CHANNEL_CONNECTED, {
            "channel": {"id": channel_id, "type": channel_type, "name": channel_name},
        }, channel_id)

    def dispatch_whatsapp_event(
        self,
        user_id: str,
        event: WebhookEventType,
        channel_id: str,
        instance_name: str | None = None,
        status: str | None = None,
        raw: dict[str, Any] | None = None,
    ) -> None:
        self.enqueue(user_id, event, {
            "channel": {"id": channel_id, "type": "whatsapp"},
            "instance_name": instance_name,
            "status": status,
            "raw": raw,
        }, channel_id)
