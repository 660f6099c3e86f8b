"""Shared Pydantic data models for omnigate."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    WHATSAPP_CLOUD = "whatsapp_cloud"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    TELEGRAM = "telegram"


WHATSAPP_TYPES = frozenset({ChannelType.WHATSAPP, ChannelType.WHATSAPP_CLOUD})
META_TYPES = frozenset({ChannelType.INSTAGRAM, ChannelType.FACEBOOK})


class ConversationStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    PENDING = "pending"
    SNOOZED = "snoozed"


class MessageDirection(str, Enum):
    IN = "in"
    OUT = "out"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    RECEIVED = "received"


class WebhookEventType(str, Enum):
    MESSAGE_RECEIVED = "message.received"
    MESSAGE_SENT = "message.sent"
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_DELETED = "message.deleted"
    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_UPDATED = "conversation.updated"
    CONVERSATION_RESOLVED = "conversation.resolved"
    CONVERSATION_REOPENED = "conversation.reopened"
    CONTACT_CREATED = "contact.created"
    CONTACT_UPDATED = "contact.updated"
    CHANNEL_CONNECTED = "channel.connected"
    CHANNEL_DISCONNECTED = "channel.disconnected"
    CHANNEL_QR_UPDATED = "channel.qr_updated"
    WHATSAPP_CONNECTION_UPDATE = "whatsapp.connection.update"
    WHATSAPP_PRESENCE_UPDATE = "whatsapp.presence.update"
    WHATSAPP_GROUPS_UPDATE = "whatsapp.groups.update"


# Display catalogue served by GET /user-webhooks/events
WEBHOOK_EVENT_CATALOGUE: dict[WebhookEventType, dict[str, str]] = {
    WebhookEventType.MESSAGE_RECEIVED: {
        "name": "Message received",
        "description": "A new message arrived from a contact",
        "category": "messages",
    },
    WebhookEventType.MESSAGE_SENT: {
        "name": "Message sent",
        "description": "A message was sent to a contact",
        "category": "messages",
    },
    WebhookEventType.MESSAGE_UPDATED: {
        "name": "Message updated",
        "description": "A message status changed (delivered, read)",
        "category": "messages",
    },
    WebhookEventType.MESSAGE_DELETED: {
        "name": "Message deleted",
        "description": "A message was deleted",
        "category": "messages",
    },
    WebhookEventType.CONVERSATION_CREATED: {
        "name": "Conversation created",
        "description": "A new conversation was started",
        "category": "conversations",
    },
    WebhookEventType.CONVERSATION_UPDATED: {
        "name": "Conversation updated",
        "description": "A conversation changed (status, tags, etc.)",
        "category": "conversations",
    },
    WebhookEventType.CONVERSATION_RESOLVED: {
        "name": "Conversation resolved",
        "description": "A conversation was resolved or closed",
        "category": "conversations",
    },
    WebhookEventType.CONVERSATION_REOPENED: {
        "name": "Conversation reopened",
        "description": "A closed conversation was reopened",
        "category": "conversations",
    },
    WebhookEventType.CONTACT_CREATED: {
        "name": "Contact created",
        "description": "A new contact or lead was created",
        "category": "contacts",
    },
    WebhookEventType.CONTACT_UPDATED: {
        "name": "Contact updated",
        "description": "Contact data was updated",
        "category": "contacts",
    },
    WebhookEventType.CHANNEL_CONNECTED: {
        "name": "Channel connected",
        "description": "A channel connected successfully",
        "category": "channels",
    },
    WebhookEventType.CHANNEL_DISCONNECTED: {
        "name": "Channel disconnected",
        "description": "A channel was disconnected",
        "category": "channels",
    },
    WebhookEventType.CHANNEL_QR_UPDATED: {
        "name": "QR code updated",
        "description": "The WhatsApp pairing QR code changed",
        "category": "channels",
    },
    WebhookEventType.WHATSAPP_CONNECTION_UPDATE: {
        "name": "Connection status",
        "description": "WhatsApp connection updates",
        "category": "whatsapp",
    },
    WebhookEventType.WHATSAPP_PRESENCE_UPDATE: {
        "name": "Presence updated",
        "description": "Presence changed (online, typing, etc.)",
        "category": "whatsapp",
    },
    WebhookEventType.WHATSAPP_GROUPS_UPDATE: {
        "name": "Group updated",
        "description": "WhatsApp group updates",
        "category": "whatsapp",
    },
}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# --- Channel credentials (closed union keyed by channel type) ---


class EvolutionCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    instance_id: str


class CloudCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    phone_number_id: str
    access_token: str


class MetaCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str | None = None
    page_access_token: str | None = None
    page_id: str | None = None

    @property
    def send_token(self) -> str:
        # page tokens work for every Graph token type, user tokens only for some
        return self.page_access_token or self.access_token or ""


class TelegramCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    bot_token: str


Credentials = EvolutionCredentials | CloudCredentials | MetaCredentials | TelegramCredentials


# --- CRM records ---


class Channel(BaseModel):
    id: str
    user_id: str
    type: ChannelType
    name: str = ""
    status: str = "active"
    # Stored blob as persisted; parsed into Credentials by the CredentialResolver
    credentials: dict[str, Any] | str = Field(default_factory=dict)


class Lead(BaseModel):
    id: str
    user_id: str
    name: str | None = None
    phone: str | None = None
    whatsapp: str | None = None
    email: str | None = None
    last_contact_at: str | None = None

    @property
    def contact_number(self) -> str | None:
        return self.whatsapp or self.phone


class Conversation(BaseModel):
    id: str
    user_id: str
    channel_id: str
    remote_identifier: str
    lead_id: str | None = None
    status: ConversationStatus = ConversationStatus.OPEN
    unread_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_message_at: str | None = None
    created_at: str = Field(default_factory=_now_iso)


class Message(BaseModel):
    id: str
    conversation_id: str | None
    user_id: str
    direction: MessageDirection
    channel: ChannelType
    content: str
    media_url: str | None = None
    media_type: str | None = None
    status: MessageStatus
    external_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    sent_at: str = Field(default_factory=_now_iso)


class UserWebhook(BaseModel):
    id: str
    user_id: str
    name: str
    url: str
    events: list[str]
    headers: dict[str, str] = Field(default_factory=dict)
    secret: str | None = None
    channel_ids: list[str] = Field(default_factory=list)
    is_active: bool = True
    trigger_count: int = 0
    last_triggered_at: str | None = None
    last_error: str | None = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)


class WebhookLog(BaseModel):
    id: int
    webhook_id: str
    event: str
    payload: dict[str, Any]
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    created_at: str


# --- Dispatch values ---


class SendResult(BaseModel):
    """Normalized outcome of one provider send call."""

    model_config = ConfigDict(frozen=True)

    external_id: str | None
    raw: dict[str, Any] = Field(default_factory=dict)


class MediaUpload(BaseModel):
    """A local media buffer the WhatsApp Cloud adapter can upload first."""

    model_config = ConfigDict(frozen=True)

    content: bytes
    mime_type: str
    filename: str = "file"


class OutboundContent(BaseModel):
    text: str | None = None
    media_url: str | None = None
    media_type: str | None = None
    upload: MediaUpload | None = None


class InboundMessage(BaseModel):
    """Provider-neutral inbound message extracted from a provider webhook."""

    remote_identifier: str
    external_id: str | None = None
    text: str = ""
    media_type: str | None = None
    media_url: str | None = None
    contact_name: str | None = None
    phone: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


# --- Audit Models ---


class AuditEventType(str, Enum):
    MESSAGE_SEND = "message_send"
    MESSAGE_RECEIVE = "message_receive"
    PAGE_DISCOVERY = "page_discovery"
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    WEBHOOK_SIGNATURE = "webhook_signature"


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    user_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "blocked"
    details: dict[str, object] | None = None
