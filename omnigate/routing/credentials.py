"""Turn a stored channel credential blob into typed, sendable credentials.

Meta channels may be connected with a user token only; the page id needed for
``/{page_id}/messages`` is then discovered from the Graph API on first use and
written back to the channel.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from omnigate.audit.logger import AuditLogger
from omnigate.channels.meta import DEFAULT_GRAPH_API_BASE
from omnigate.errors import ChannelConfigError
from omnigate.models import (
    META_TYPES,
    AuditEvent,
    AuditEventType,
    Channel,
    ChannelType,
    CloudCredentials,
    Credentials,
    EvolutionCredentials,
    MetaCredentials,
    TelegramCredentials,
)
from omnigate.store.channels import ChannelStore

logger = logging.getLogger(__name__)


def _blob(channel: Channel) -> dict[str, Any]:
    raw = channel.credentials
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            raise ChannelConfigError(
                f"Channel {channel.id} credentials are not valid JSON", str(exc),
            ) from exc
    if not isinstance(raw, dict):
        raise ChannelConfigError(f"Channel {channel.id} credentials must be an object")
    return raw


def _require(channel: Channel, blob: dict[str, Any], *names: str) -> str:
    """First non-empty value among ``names``; the first name is the canonical field."""
    for name in names:
        value = blob.get(name)
        if value:
            return str(value)
    raise ChannelConfigError(
        f"Channel {channel.id} is missing credential '{names[0]}'",
        f"{channel.type.value} channels require {names[0]}",
    )


def parse_credentials(channel: Channel) -> Credentials:
    """Parse a channel's stored blob into its credential variant, without I/O."""
    blob = _blob(channel)
    if channel.type is ChannelType.WHATSAPP:
        return EvolutionCredentials(
            instance_id=_require(channel, blob, "instance_id", "instance_name"),
        )
    if channel.type is ChannelType.WHATSAPP_CLOUD:
        return CloudCredentials(
            phone_number_id=_require(channel, blob, "phone_number_id"),
            access_token=_require(channel, blob, "access_token"),
        )
    if channel.type in META_TYPES:
        creds = MetaCredentials(
            access_token=blob.get("access_token") or None,
            page_access_token=blob.get("page_access_token") or None,
            page_id=blob.get("page_id") or None,
        )
        if not creds.send_token:
            _require(channel, blob, "access_token", "page_access_token")
        return creds
    if channel.type is ChannelType.TELEGRAM:
        return TelegramCredentials(bot_token=_require(channel, blob, "bot_token", "token"))
    raise ChannelConfigError(f"Unsupported channel type {channel.type}")


class CredentialResolver:
    """Resolves credentials, discovering a Meta page id at most once per channel."""

    def __init__(
        self,
        channels: ChannelStore,
        client: httpx.AsyncClient,
        graph_base: str = DEFAULT_GRAPH_API_BASE,
        timeout: float = 15.0,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._channels = channels
        self._client = client
        self._graph_base = graph_base.rstrip("/")
        self._timeout = timeout
        self.audit_logger = audit_logger
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, channel_id: str) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[channel_id] = lock
        return lock

    async def resolve(self, channel: Channel) -> Credentials:
        creds = parse_credentials(channel)
        if not isinstance(creds, MetaCredentials) or creds.page_id:
            return creds

        async with self._lock_for(channel.id):
            # Another send may have discovered the page while we waited
            current = self._channels.get(channel.id) or channel
            creds = parse_credentials(current)
            if not isinstance(creds, MetaCredentials) or creds.page_id:
                return creds

            page_id = await self.discover_page_id(creds.send_token)
            self._audit(channel, page_id)
            if page_id is None:
                logger.warning(
                    "No page id found for channel %s; sending via /me/messages", channel.id,
                )
                return creds

            logger.info("Discovered page id %s for channel %s", page_id, channel.id)
            self._channels.update_credentials(channel.id, {"page_id": page_id})
            return creds.model_copy(update={"page_id": page_id})

    async def discover_page_id(self, token: str) -> str | None:
        """Find the page behind a Meta token, or None if nothing is reachable."""
        accounts = await self._graph_get("/me/accounts", token, fields="id,name")
        page_id = _first_id(accounts)
        if page_id:
            return page_id

        me = await self._graph_get("/me", token, fields="id,name,business")
        business_id = ((me or {}).get("business") or {}).get("id")
        if business_id:
            owned = await self._graph_get(
                f"/{business_id}/owned_pages", token, fields="id,name",
            )
            return _first_id(owned)
        return None

    async def _graph_get(self, path: str, token: str, **params: str) -> dict[str, Any] | None:
        try:
            resp = await self._client.get(
                f"{self._graph_base}{path}",
                params={**params, "access_token": token},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("Graph lookup %s failed: %s", path, exc)
            return None
        if resp.status_code >= 400:
            logger.warning("Graph lookup %s returned %d", path, resp.status_code)
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    def _audit(self, channel: Channel, page_id: str | None) -> None:
        if not self.audit_logger:
            return
        self.audit_logger.log(AuditEvent(
            event_type=AuditEventType.PAGE_DISCOVERY,
            user_id=channel.user_id,
            action=f"discover page for channel {channel.id}",
            result="success" if page_id else "failure",
            details={"channel_id": channel.id, "page_id": page_id},
        ))


def _first_id(body: dict[str, Any] | None) -> str | None:
    if not body:
        return None
    data = body.get("data") or []
    if data and data[0].get("id"):
        return str(data[0]["id"])
    return None
