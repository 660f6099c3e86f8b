"""Inbound provider webhooks (Evolution, WhatsApp Cloud, Meta, Telegram).

These paths are public; each provider is authenticated by its own signature
scheme where one is configured.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from omnigate.channels import evolution, meta, telegram, whatsapp_cloud
from omnigate.channels.base import handle_verification, verify_hub_signature
from omnigate.errors import ChannelConfigError, NotFoundError, ValidationError
from omnigate.models import (
    META_TYPES,
    AuditEvent,
    AuditEventType,
    Channel,
    ChannelType,
    InboundMessage,
    TelegramCredentials,
    WebhookEventType,
)
from omnigate.routing.credentials import parse_credentials

if TYPE_CHECKING:
    from omnigate.service import Gateway

logger = logging.getLogger(__name__)

# Evolution connection states
_CONNECTED_STATES = {"open", "connected"}
_DISCONNECTED_STATES = {"close", "closed", "disconnected"}


def create_provider_router(gateway: Gateway) -> APIRouter:
    """Create the router receiving provider callbacks."""
    router = APIRouter(prefix="/webhook")
    config = gateway.config

    def _channel(channel_id: str, *types: ChannelType) -> Channel:
        channel = gateway.channels.get(channel_id)
        if channel is None or channel.type not in types:
            raise NotFoundError("Channel not found", channel_id)
        return channel

    async def _json(request: Request, body: bytes | None = None) -> dict[str, Any]:
        raw = body if body is not None else await request.body()
        try:
            payload = json.loads(raw or b"{}")
        except json.JSONDecodeError as exc:
            raise ValidationError("Invalid JSON payload", str(exc)) from exc
        if not isinstance(payload, dict):
            raise ValidationError("Invalid payload")
        return payload

    def _reject(request: Request, channel: Channel) -> JSONResponse:
        logger.warning("Rejected inbound webhook for channel %s: bad signature", channel.id)
        if gateway.audit_logger:
            gateway.audit_logger.log(AuditEvent(
                event_type=AuditEventType.WEBHOOK_SIGNATURE,
                source_ip=request.client.host if request.client else None,
                user_id=channel.user_id,
                action=f"POST {request.url.path}",
                result="blocked",
                details={"channel_id": channel.id},
            ))
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    async def _receive_all(channel: Channel, messages: list[InboundMessage]) -> JSONResponse:
        stored = 0
        for inbound in messages:
            if await gateway.dispatcher.receive(channel, inbound) is not None:
                stored += 1
        return JSONResponse({"status": "ok", "received": len(messages), "stored": stored})

    def _verify(request: Request) -> Response:
        answer = handle_verification(config.meta_verify_token, dict(request.query_params))
        if answer is None:
            return JSONResponse({"error": "Unsupported mode"}, status_code=400)
        status, content = answer
        if status != 200:
            return JSONResponse({"error": content}, status_code=status)
        return PlainTextResponse(content)

    @router.post("/evolution/{channel_id}")
    async def evolution_webhook(channel_id: str, request: Request) -> JSONResponse:
        channel = _channel(channel_id, ChannelType.WHATSAPP)
        payload = await _json(request)
        name = evolution.event_name(payload)

        if name == "messages.upsert":
            return await _receive_all(channel, evolution.extract_messages(payload))

        forwarded = evolution.EVOLUTION_EVENT_MAP.get(name)
        if forwarded is None:
            return JSONResponse({"status": "ignored", "event": name})

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        state = data.get("state") or data.get("status")
        gateway.events.dispatch_whatsapp_event(
            channel.user_id,
            forwarded,
            channel.id,
            instance_name=payload.get("instance"),
            status=state,
            raw=payload,
        )
        if forwarded is WebhookEventType.WHATSAPP_CONNECTION_UPDATE and state:
            if state in _CONNECTED_STATES:
                gateway.channels.update_status(channel.id, "connected")
                gateway.events.dispatch_channel_connected(
                    channel.user_id, channel.id, channel.type.value, channel.name or None,
                )
            elif state in _DISCONNECTED_STATES:
                gateway.channels.update_status(channel.id, "disconnected")
                gateway.events.enqueue(
                    channel.user_id,
                    WebhookEventType.CHANNEL_DISCONNECTED,
                    {"channel": {"id": channel.id, "type": channel.type.value}},
                    channel.id,
                )
        return JSONResponse({"status": "ok", "event": name})

    @router.get("/whatsapp-cloud/{channel_id}")
    async def whatsapp_cloud_verify(channel_id: str, request: Request) -> Response:
        _channel(channel_id, ChannelType.WHATSAPP_CLOUD)
        return _verify(request)

    @router.post("/whatsapp-cloud/{channel_id}")
    async def whatsapp_cloud_webhook(channel_id: str, request: Request) -> JSONResponse:
        channel = _channel(channel_id, ChannelType.WHATSAPP_CLOUD)
        body = await request.body()
        if config.meta_app_secret and not verify_hub_signature(
            config.meta_app_secret, dict(request.headers), body,
        ):
            return _reject(request, channel)
        payload = await _json(request, body)
        return await _receive_all(channel, whatsapp_cloud.extract_messages(payload))

    @router.get("/meta/{channel_id}")
    async def meta_verify(channel_id: str, request: Request) -> Response:
        _channel(channel_id, *META_TYPES)
        return _verify(request)

    @router.post("/meta/{channel_id}")
    async def meta_webhook(channel_id: str, request: Request) -> JSONResponse:
        channel = _channel(channel_id, *META_TYPES)
        body = await request.body()
        if config.meta_app_secret and not verify_hub_signature(
            config.meta_app_secret, dict(request.headers), body,
        ):
            return _reject(request, channel)
        payload = await _json(request, body)
        return await _receive_all(channel, meta.extract_messages(payload))

    @router.post("/telegram/{channel_id}")
    async def telegram_webhook(channel_id: str, request: Request) -> JSONResponse:
        channel = _channel(channel_id, ChannelType.TELEGRAM)
        creds = parse_credentials(channel)
        if not isinstance(creds, TelegramCredentials):
            raise ChannelConfigError("Channel is not a Telegram bot", channel.id)
        if not telegram.verify_webhook(creds.bot_token, dict(request.headers)):
            return _reject(request, channel)
        inbound = telegram.extract_message(await _json(request))
        return await _receive_all(channel, [inbound] if inbound else [])

    return router
