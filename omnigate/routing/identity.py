"""Identifier classification and recipient resolution.

Callers address a recipient with whatever they have at hand: a stored
conversation id, a raw phone number, or a provider chat id (WhatsApp JID,
Instagram/Facebook PSID, Telegram chat id). This module turns that into one
canonical dispatch target.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from omnigate.errors import ChannelConfigError, RecipientNotFoundError
from omnigate.models import Channel, ChannelType, Conversation, Lead
from omnigate.store.channels import ChannelStore, LeadStore
from omnigate.store.conversations import ConversationStore

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE,
)
_PHONE_RE = re.compile(r"^\+?[\d\s().-]+$")

JID_USER_SUFFIX = "@s.whatsapp.net"
_JID_SUFFIXES = (JID_USER_SUFFIX, "@g.us", "@lid")


class IdentifierKind(str, Enum):
    UUID = "uuid"
    CHAT_ID = "chat_id"
    PHONE = "phone"
    UNKNOWN = "unknown"


def classify(raw: str) -> IdentifierKind:
    """Classify a raw identifier. The first matching rule wins."""
    value = raw.strip()
    if _UUID_RE.match(value):
        return IdentifierKind.UUID
    if "@" in value:
        return IdentifierKind.CHAT_ID
    if _PHONE_RE.match(value) and any(c.isdigit() for c in value):
        return IdentifierKind.PHONE
    return IdentifierKind.UNKNOWN


def normalize_phone(raw: str) -> str:
    return re.sub(r"\D", "", raw)


def normalize_to_jid(raw: str) -> str:
    """Canonical WhatsApp JID for a phone number or an existing JID."""
    value = raw.strip()
    if "@" in value:
        return value
    return f"{normalize_phone(value)}{JID_USER_SUFFIX}"


def extract_phone(jid: str) -> str:
    """Strip a WhatsApp JID suffix, leaving the bare number or group id."""
    for suffix in _JID_SUFFIXES:
        if jid.endswith(suffix):
            return jid[: -len(suffix)]
    return jid


# --- Lookup results ---


@dataclass(frozen=True)
class ConversationMatch:
    conversation: Conversation
    channel: Channel


@dataclass(frozen=True)
class LeadMatch:
    """A UUID that is not a conversation but names one of the user's leads."""

    lead: Lead
    remote_identifier: str


@dataclass(frozen=True)
class RemoteMatch:
    remote_identifier: str
    lead: Lead | None = None


@dataclass(frozen=True)
class NotFound:
    reason: str


LookupResult = ConversationMatch | LeadMatch | RemoteMatch | NotFound


@dataclass(frozen=True)
class DispatchContext:
    """Everything the dispatcher needs to send to one recipient."""

    channel: Channel
    remote_identifier: str
    conversation_id: str | None = None
    lead_id: str | None = None
    phone: str | None = None
    contact_name: str | None = None

    @property
    def channel_id(self) -> str:
        return self.channel.id

    @property
    def channel_type(self) -> ChannelType:
        return self.channel.type


class IdentityResolver:
    """Resolves raw identifiers against the user's conversations and leads."""

    def __init__(
        self,
        channels: ChannelStore,
        conversations: ConversationStore,
        leads: LeadStore,
    ) -> None:
        self._channels = channels
        self._conversations = conversations
        self._leads = leads

    def _match_remote(self, user_id: str, remote_identifier: str) -> ConversationMatch | None:
        conversation = self._conversations.find_by_remote(user_id, remote_identifier)
        if conversation is None:
            return None
        channel = self._channels.get_for_user(conversation.channel_id, user_id)
        if channel is None:
            logger.warning(
                "Conversation %s references missing channel %s",
                conversation.id, conversation.channel_id,
            )
            return None
        return ConversationMatch(conversation, channel)

    def lookup(self, user_id: str, raw: str) -> LookupResult:
        value = raw.strip()
        kind = classify(value)

        if kind is IdentifierKind.UUID:
            conversation = self._conversations.get_for_user(value, user_id)
            if conversation is not None:
                channel = self._channels.get_for_user(conversation.channel_id, user_id)
                if channel is None:
                    return NotFound(f"channel {conversation.channel_id} not found")
                return ConversationMatch(conversation, channel)

            lead = self._leads.get_for_user(value, user_id)
            if lead is not None and lead.contact_number:
                return LeadMatch(lead, normalize_to_jid(lead.contact_number))
            return NotFound(f"no conversation or lead with id {value}")

        if kind is IdentifierKind.CHAT_ID:
            # Raw JIDs, PSIDs and Telegram ids are stored as given
            match = self._match_remote(user_id, value)
            if match is not None:
                return match
            return RemoteMatch(value, self._leads.find_by_phone(user_id, extract_phone(value)))

        if kind is IdentifierKind.PHONE:
            jid = normalize_to_jid(value)
            # Numeric PSIDs and Telegram chat ids are stored unsuffixed
            for candidate in dict.fromkeys((jid, value, normalize_phone(value))):
                match = self._match_remote(user_id, candidate)
                if match is not None:
                    return match
            return RemoteMatch(jid, self._leads.find_by_phone(user_id, value))

        return NotFound(f"unrecognized identifier {value!r}")

    def resolve(self, user_id: str, raw: str) -> DispatchContext:
        """Resolve a raw identifier into a dispatch target.

        Raises:
            RecipientNotFoundError: nothing matches the identifier.
            ChannelConfigError: the target has no conversation and the user
                has no WhatsApp channel to start one on.
        """
        result = self.lookup(user_id, raw)

        if isinstance(result, NotFound):
            raise RecipientNotFoundError("Recipient not found", result.reason)

        if isinstance(result, ConversationMatch):
            conversation = result.conversation
            phone = None
            if result.channel.type in (ChannelType.WHATSAPP, ChannelType.WHATSAPP_CLOUD):
                phone = extract_phone(conversation.remote_identifier)
            return DispatchContext(
                channel=result.channel,
                remote_identifier=conversation.remote_identifier,
                conversation_id=conversation.id,
                lead_id=conversation.lead_id,
                phone=phone,
                contact_name=conversation.metadata.get("contact_name"),
            )

        channel = self._channels.find_default_whatsapp(user_id)
        if channel is None:
            raise ChannelConfigError(
                "No WhatsApp channel configured",
                "starting a conversation from a phone number needs a whatsapp channel",
            )
        lead = result.lead
        return DispatchContext(
            channel=channel,
            remote_identifier=result.remote_identifier,
            lead_id=lead.id if lead else None,
            phone=extract_phone(result.remote_identifier),
            contact_name=lead.name if lead else None,
        )
