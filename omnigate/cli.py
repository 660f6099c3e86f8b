"""Click CLI for operating the gateway from a shell."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import click

from omnigate.audit.logger import AuditLogger
from omnigate.config import GatewayConfig
from omnigate.errors import ChannelConfigError, GatewayError, NotFoundError
from omnigate.models import ChannelType, EvolutionCredentials, OutboundContent
from omnigate.routing.credentials import parse_credentials
from omnigate.routing.identity import IdentifierKind, classify, extract_phone, normalize_to_jid
from omnigate.service import Gateway


@click.group()
@click.option("--db", default=None, help="Gateway database path (default: OMNIGATE_DB_PATH).")
@click.option("--audit-log", default=None, help="Audit log file path.")
@click.pass_context
def cli(ctx: click.Context, db: str | None, audit_log: str | None) -> None:
    """omnigate messaging gateway CLI."""
    ctx.ensure_object(dict)
    config = GatewayConfig.from_env()
    updates: dict[str, Any] = {}
    if db:
        updates["db_path"] = db
    if audit_log:
        updates["audit_log_path"] = audit_log
    ctx.obj["config"] = config.model_copy(update=updates)


def _run(ctx: click.Context, action: Callable[[Gateway], Awaitable[Any]]) -> None:
    """Run ``action`` against a fresh gateway and print its result as JSON."""
    config: GatewayConfig = ctx.obj["config"]

    async def _main() -> Any:
        audit_logger = AuditLogger.from_env(config.audit_log_path) if config.audit_log_path else None
        async with Gateway(config, audit_logger=audit_logger) as gateway:
            return await action(gateway)

    try:
        result = asyncio.run(_main())
    except GatewayError as exc:
        click.echo(json.dumps(exc.to_dict()), err=True)
        ctx.exit(1)
    click.echo(json.dumps(result, indent=2, default=str))


@cli.command("classify")
@click.argument("identifier")
def classify_command(identifier: str) -> None:
    """Show how an identifier would be interpreted."""
    kind = classify(identifier)
    output: dict[str, str] = {"identifier": identifier, "kind": kind.value}
    if kind is IdentifierKind.PHONE:
        output["jid"] = normalize_to_jid(identifier)
    elif kind is IdentifierKind.CHAT_ID:
        output["phone"] = extract_phone(identifier)
    click.echo(json.dumps(output, indent=2))


@cli.command("send")
@click.argument("user_id")
@click.argument("identifier")
@click.option("--text", default=None, help="Message text (caption when sending media).")
@click.option("--media-url", default=None, help="Public URL of the media to send.")
@click.option("--media-type", default=None, help="image, video, audio, document or sticker.")
@click.pass_context
def send_command(
    ctx: click.Context,
    user_id: str,
    identifier: str,
    text: str | None,
    media_url: str | None,
    media_type: str | None,
) -> None:
    """Send a message to a conversation id, phone number or chat id."""
    content = OutboundContent(text=text, media_url=media_url, media_type=media_type)

    async def action(gateway: Gateway) -> dict[str, Any]:
        message = await gateway.dispatcher.send(user_id, identifier, content)
        return message.model_dump(mode="json")

    _run(ctx, action)


@cli.group("webhooks")
def webhooks_group() -> None:
    """Inspect user webhooks."""


@webhooks_group.command("list")
@click.argument("user_id")
@click.pass_context
def webhooks_list(ctx: click.Context, user_id: str) -> None:
    """List a user's webhooks."""

    async def action(gateway: Gateway) -> list[dict[str, Any]]:
        return [
            {
                "id": w.id,
                "name": w.name,
                "url": w.url,
                "events": w.events,
                "is_active": w.is_active,
                "trigger_count": w.trigger_count,
                "last_error": w.last_error,
            }
            for w in gateway.webhooks.list_for_user(user_id)
        ]

    _run(ctx, action)


@webhooks_group.command("logs")
@click.argument("webhook_id")
@click.argument("user_id")
@click.option("--limit", default=20, show_default=True, help="Number of log entries.")
@click.pass_context
def webhooks_logs(ctx: click.Context, webhook_id: str, user_id: str, limit: int) -> None:
    """Show recent deliveries of a webhook."""

    async def action(gateway: Gateway) -> list[dict[str, Any]]:
        logs = gateway.webhooks.get_logs(webhook_id, user_id, limit=limit)
        if logs is None:
            raise NotFoundError("Webhook not found")
        return [log.model_dump(mode="json", exclude={"payload"}) for log in logs]

    _run(ctx, action)


@webhooks_group.command("test")
@click.argument("webhook_id")
@click.argument("user_id")
@click.pass_context
def webhooks_test(ctx: click.Context, webhook_id: str, user_id: str) -> None:
    """Send a webhook.test delivery."""

    async def action(gateway: Gateway) -> dict[str, Any]:
        webhook = gateway.webhooks.get(webhook_id, user_id)
        if webhook is None:
            raise NotFoundError("Webhook not found")
        return await gateway.events.send_test(webhook)

    _run(ctx, action)


@cli.command("channel-status")
@click.argument("channel_id")
@click.pass_context
def channel_status(ctx: click.Context, channel_id: str) -> None:
    """Show a channel's stored status; WhatsApp channels also query Evolution."""

    async def action(gateway: Gateway) -> dict[str, Any]:
        channel = gateway.channels.get(channel_id)
        if channel is None:
            raise NotFoundError("Channel not found")
        output: dict[str, Any] = {
            "id": channel.id,
            "type": channel.type.value,
            "name": channel.name,
            "status": channel.status,
        }
        if channel.type is ChannelType.WHATSAPP:
            creds = parse_credentials(channel)
            if not isinstance(creds, EvolutionCredentials):
                raise ChannelConfigError("Channel is not an Evolution instance", channel.id)
            adapter = gateway.adapters.evolution(creds.instance_id)
            output["connection"] = await adapter.connection_state()
        return output

    _run(ctx, action)
