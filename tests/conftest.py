"""Shared test fixtures for omnigate."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from omnigate.audit.logger import AuditLogger
from omnigate.models import (
    AuditEvent,
    AuditEventType,
    ChannelType,
    InboundMessage,
    UserWebhook,
)
from omnigate.store.channels import ChannelStore, LeadStore
from omnigate.store.conversations import ConversationStore, MessageStore
from omnigate.store.db import GatewayDB
from omnigate.store.webhooks import WebhookStore

USER_ID = "user-1"

# Canonical lowercase UUIDs used across tests
CONVERSATION_UUID = "a1b2c3d4-e5f6-4a7b-8c9d-0e1f2a3b4c5d"
LEAD_UUID = "11111111-2222-4333-8444-555555555555"


@pytest.fixture
def db():
    database = GatewayDB(":memory:")
    yield database
    database.close()


@pytest.fixture
def channel_store(db: GatewayDB) -> ChannelStore:
    return ChannelStore(db)


@pytest.fixture
def lead_store(db: GatewayDB) -> LeadStore:
    return LeadStore(db)


@pytest.fixture
def conversation_store(db: GatewayDB) -> ConversationStore:
    return ConversationStore(db)


@pytest.fixture
def message_store(db: GatewayDB) -> MessageStore:
    return MessageStore(db)


@pytest.fixture
def webhook_store(db: GatewayDB) -> WebhookStore:
    return WebhookStore(db)


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


# --- Factory functions for test data ---

DEFAULT_CREDENTIALS: dict[ChannelType, dict[str, str]] = {
    ChannelType.WHATSAPP: {"instance_id": "inst-1"},
    ChannelType.WHATSAPP_CLOUD: {"phone_number_id": "PNID", "access_token": "cloud-token"},
    ChannelType.INSTAGRAM: {"access_token": "ig-token", "page_id": "PAGE1"},
    ChannelType.FACEBOOK: {"access_token": "fb-token", "page_id": "PAGE2"},
    ChannelType.TELEGRAM: {"bot_token": "123:ABC"},
}


def make_channel(
    store: ChannelStore,
    channel_type: ChannelType = ChannelType.WHATSAPP,
    user_id: str = USER_ID,
    **kwargs: Any,
):
    """Create a channel with working default credentials for its type."""
    kwargs.setdefault("credentials", dict(DEFAULT_CREDENTIALS[channel_type]))
    kwargs.setdefault("name", f"{channel_type.value} channel")
    return store.create(user_id, channel_type, **kwargs)


def make_webhook(store: WebhookStore, user_id: str = USER_ID, **kwargs: Any) -> UserWebhook:
    """Create a webhook subscribed to message events by default."""
    defaults: dict[str, Any] = {
        "name": "CRM sync",
        "url": "https://hooks.example.com/in",
        "events": ["message.received", "message.sent", "conversation.created"],
    }
    defaults.update(kwargs)
    return store.create(user_id, **defaults)


def make_inbound(**kwargs: Any) -> InboundMessage:
    """Factory for InboundMessage with sensible defaults."""
    defaults: dict[str, Any] = {
        "remote_identifier": "258843210987@s.whatsapp.net",
        "external_id": "WAMID-1",
        "text": "Olá",
        "contact_name": "Maria",
        "phone": "258843210987",
    }
    defaults.update(kwargs)
    return InboundMessage(**defaults)


def make_audit_event(**kwargs: Any) -> AuditEvent:
    """Factory for AuditEvent with sensible defaults."""
    defaults: dict[str, Any] = {
        "event_type": AuditEventType.MESSAGE_SEND,
        "action": "send via whatsapp",
        "result": "success",
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)


class RecordingTransport:
    """``httpx.MockTransport`` handler that records requests and answers from a routing function."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]) -> None:
        self._respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._respond(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def json_bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) if r.content else {} for r in self.requests]

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def recording_transport(
    respond: Callable[[httpx.Request], httpx.Response] | None = None,
) -> RecordingTransport:
    return RecordingTransport(respond or (lambda request: httpx.Response(200, json={})))
