"""Message dispatch: the send and receive pipelines.

Outbound stages:
1. Validate content (text or media required)
2. Resolve the identifier to a channel + remote identifier
3. Resolve credentials and build the provider adapter
4. Send through the provider
5. Persist conversation + message (best effort once the provider accepted it)
6. Enqueue webhook events and audit
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import TYPE_CHECKING

from omnigate.errors import ExternalApiError, ValidationError
from omnigate.models import (
    AuditEvent,
    AuditEventType,
    Channel,
    InboundMessage,
    Message,
    MessageDirection,
    MessageStatus,
    OutboundContent,
    SendResult,
)

if TYPE_CHECKING:
    from omnigate.audit.logger import AuditLogger
    from omnigate.channels.factory import AdapterFactory
    from omnigate.routing.credentials import CredentialResolver
    from omnigate.routing.identity import DispatchContext, IdentityResolver
    from omnigate.store.channels import LeadStore
    from omnigate.store.conversations import ConversationStore, MessageStore
    from omnigate.webhook.queue import WebhookDispatchQueue

logger = logging.getLogger(__name__)


class MessageDispatcher:
    """Routes outbound messages to providers and records inbound ones."""

    def __init__(
        self,
        identity: IdentityResolver,
        credentials: CredentialResolver,
        adapters: AdapterFactory,
        conversations: ConversationStore,
        messages: MessageStore,
        leads: LeadStore,
        events: WebhookDispatchQueue,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._identity = identity
        self._credentials = credentials
        self._adapters = adapters
        self._conversations = conversations
        self._messages = messages
        self._leads = leads
        self._events = events
        self._audit = audit_logger

    async def send(self, user_id: str, raw_identifier: str, content: OutboundContent) -> Message:
        """Send text or media to whatever ``raw_identifier`` names.

        Raises:
            ValidationError: no text and no media.
            RecipientNotFoundError: the identifier matches nothing.
            ChannelConfigError: the channel lacks a credential.
            ExternalApiError: the provider rejected the send.
        """
        text = (content.text or "").strip()
        if not text and not content.media_url:
            raise ValidationError("Message content or media is required")
        media_type = content.media_type or ("document" if content.media_url else None)

        ctx = self._identity.resolve(user_id, raw_identifier)
        creds = await self._credentials.resolve(ctx.channel)
        adapter = self._adapters.build(creds)
        target = adapter.target_for(ctx.remote_identifier)

        try:
            if content.media_url:
                result = await adapter.send_media(
                    target,
                    content.media_url,
                    media_type or "document",
                    caption=text or None,
                    upload=content.upload,
                )
            else:
                result = await adapter.send_text(target, text)
        except ExternalApiError as exc:
            logger.warning(
                "Send via %s to %s failed: %s", ctx.channel_type.value, target, exc.message,
            )
            self._audit_send(user_id, ctx, "failure", {"error": exc.message, "status": exc.status})
            raise

        logger.info(
            "Sent %s message via channel %s (external id %s)",
            media_type or "text", ctx.channel_id, result.external_id,
        )
        message = self._record_outbound(
            user_id, ctx, text or None, content.media_url, media_type, result,
        )
        self._audit_send(user_id, ctx, "success", {
            "message_id": message.id, "external_id": result.external_id,
        })
        return message

    def _record_outbound(
        self,
        user_id: str,
        ctx: DispatchContext,
        text: str | None,
        media_url: str | None,
        media_type: str | None,
        result: SendResult,
    ) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=ctx.conversation_id,
            user_id=user_id,
            direction=MessageDirection.OUT,
            channel=ctx.channel_type,
            content=text or f"[{media_type}]",
            media_url=media_url,
            media_type=media_type,
            status=MessageStatus.SENT,
            external_id=result.external_id,
            metadata={
                "remote_identifier": ctx.remote_identifier,
                "phone": ctx.phone,
                "channel_type": ctx.channel_type.value,
                "external_result": result.raw,
            },
        )

        # The provider already accepted the message; storage trouble must not fail the send
        created = False
        try:
            conversation, created = self._conversations.find_or_create(
                user_id,
                ctx.channel_id,
                ctx.remote_identifier,
                lead_id=ctx.lead_id,
                metadata={"contact_name": ctx.contact_name, "phone": ctx.phone},
            )
            message = message.model_copy(update={"conversation_id": conversation.id})
            self._messages.insert(message)
            self._conversations.touch(conversation.id, message.sent_at)
            lead_id = ctx.lead_id or conversation.lead_id
            if lead_id:
                self._leads.touch_last_contact(lead_id, message.sent_at)
        except sqlite3.Error as exc:
            logger.warning("Message %s sent but not persisted: %s", message.id, exc)

        if created and message.conversation_id:
            self._events.dispatch_conversation_created(
                user_id,
                ctx.channel_id,
                message.conversation_id,
                contact_name=ctx.contact_name,
                contact_phone=ctx.phone,
            )
        self._events.dispatch_message_sent(
            user_id,
            ctx.channel_id,
            ctx.channel_type.value,
            message.conversation_id,
            message.id,
            message.content,
            contact_phone=ctx.phone,
            media_type=media_type,
            media_url=media_url,
        )
        return message

    async def receive(self, channel: Channel, inbound: InboundMessage) -> Message | None:
        """Store an inbound message; None when it was already recorded."""
        lead = self._leads.find_by_phone(channel.user_id, inbound.phone) if inbound.phone else None
        conversation, created = self._conversations.find_or_create(
            channel.user_id,
            channel.id,
            inbound.remote_identifier,
            lead_id=lead.id if lead else None,
            metadata={"contact_name": inbound.contact_name, "phone": inbound.phone},
        )
        if inbound.external_id and self._messages.exists_external(
            conversation.id, inbound.external_id,
        ):
            logger.info("Skipping duplicate inbound message %s", inbound.external_id)
            return None

        message = self._messages.insert(Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation.id,
            user_id=channel.user_id,
            direction=MessageDirection.IN,
            channel=channel.type,
            content=inbound.text or f"[{inbound.media_type or 'media'}]",
            media_url=inbound.media_url,
            media_type=inbound.media_type,
            status=MessageStatus.RECEIVED,
            external_id=inbound.external_id,
            metadata={"remote_identifier": inbound.remote_identifier, "phone": inbound.phone},
        ))
        self._conversations.touch(conversation.id, message.sent_at, unread_increment=1)
        logger.info("Received message %s on channel %s", message.id, channel.id)

        contact_name = conversation.metadata.get("contact_name") or inbound.contact_name
        if created:
            self._events.dispatch_conversation_created(
                channel.user_id,
                channel.id,
                conversation.id,
                contact_name=contact_name,
                contact_phone=inbound.phone,
            )
        self._events.dispatch_message_received(
            channel.user_id,
            channel.id,
            channel.type.value,
            conversation.id,
            message.id,
            message.content,
            channel_name=channel.name or None,
            contact_name=contact_name,
            contact_phone=inbound.phone,
            media_type=inbound.media_type,
            media_url=inbound.media_url,
            raw=inbound.raw,
        )
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.MESSAGE_RECEIVE,
                user_id=channel.user_id,
                action=f"receive via {channel.type.value}",
                result="success",
                details={"channel_id": channel.id, "message_id": message.id},
            ))
        return message

    def _audit_send(
        self, user_id: str, ctx: DispatchContext, result: str, details: dict[str, object],
    ) -> None:
        if not self._audit:
            return
        self._audit.log(AuditEvent(
            event_type=AuditEventType.MESSAGE_SEND,
            user_id=user_id,
            action=f"send via {ctx.channel_type.value}",
            result=result,
            details={"channel_id": ctx.channel_id, **details},
        ))
