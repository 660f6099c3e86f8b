"""User webhook management endpoints.

Provides endpoints for:
- The event catalogue
- Creating, updating, toggling and deleting webhooks
- Test deliveries, delivery logs and secret rotation
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from omnigate.api.inbox_routes import tenant_id
from omnigate.errors import NotFoundError, ValidationError
from omnigate.models import WEBHOOK_EVENT_CATALOGUE, UserWebhook, WebhookEventType

if TYPE_CHECKING:
    from omnigate.store.webhooks import WebhookStore
    from omnigate.webhook.queue import WebhookDispatchQueue

_KNOWN_EVENTS = {e.value for e in WebhookEventType}


class WebhookCreate(BaseModel):
    name: str
    url: str
    events: list[str]
    headers: dict[str, str] = Field(default_factory=dict)
    secret: str | None = None
    channel_ids: list[str] = Field(default_factory=list)


class WebhookUpdate(BaseModel):
    name: str | None = None
    url: str | None = None
    events: list[str] | None = None
    headers: dict[str, str] | None = None
    is_active: bool | None = None
    channel_ids: list[str] | None = None


def _validate(name: str | None, url: str | None, events: list[str] | None) -> None:
    if name is not None and not name.strip():
        raise ValidationError("Webhook name is required")
    if url is not None and not url.startswith(("http://", "https://")):
        raise ValidationError("Webhook URL must be http(s)", url)
    if events is not None:
        if not events:
            raise ValidationError("At least one event is required")
        unknown = sorted(set(events) - _KNOWN_EVENTS)
        if unknown:
            raise ValidationError("Unknown webhook events", ", ".join(unknown))


def _dump(webhook: UserWebhook) -> dict[str, object]:
    return webhook.model_dump(mode="json")


def create_webhook_router(store: WebhookStore, queue: WebhookDispatchQueue) -> APIRouter:
    """Create the user webhook router."""
    router = APIRouter(prefix="/user-webhooks")

    def _get(webhook_id: str, user_id: str) -> UserWebhook:
        webhook = store.get(webhook_id, user_id)
        if webhook is None:
            raise NotFoundError("Webhook not found")
        return webhook

    @router.get("/events")
    async def list_events() -> JSONResponse:
        return JSONResponse([
            {"event": event.value, **info} for event, info in WEBHOOK_EVENT_CATALOGUE.items()
        ])

    @router.get("")
    async def list_webhooks(request: Request) -> JSONResponse:
        return JSONResponse([_dump(w) for w in store.list_for_user(tenant_id(request))])

    @router.post("")
    async def create_webhook(body: WebhookCreate, request: Request) -> JSONResponse:
        _validate(body.name, body.url, body.events)
        webhook = store.create(
            tenant_id(request),
            name=body.name.strip(),
            url=body.url,
            events=body.events,
            headers=body.headers,
            secret=body.secret,
            channel_ids=body.channel_ids,
        )
        return JSONResponse(_dump(webhook), status_code=201)

    @router.get("/{webhook_id}")
    async def get_webhook(webhook_id: str, request: Request) -> JSONResponse:
        return JSONResponse(_dump(_get(webhook_id, tenant_id(request))))

    @router.put("/{webhook_id}")
    async def update_webhook(webhook_id: str, body: WebhookUpdate, request: Request) -> JSONResponse:
        _validate(body.name, body.url, body.events)
        webhook = store.update(webhook_id, tenant_id(request), **body.model_dump())
        if webhook is None:
            raise NotFoundError("Webhook not found")
        return JSONResponse(_dump(webhook))

    @router.delete("/{webhook_id}")
    async def delete_webhook(webhook_id: str, request: Request) -> Response:
        if not store.delete(webhook_id, tenant_id(request)):
            raise NotFoundError("Webhook not found")
        return Response(status_code=204)

    @router.patch("/{webhook_id}/toggle")
    async def toggle_webhook(webhook_id: str, request: Request) -> JSONResponse:
        webhook = store.toggle(webhook_id, tenant_id(request))
        if webhook is None:
            raise NotFoundError("Webhook not found")
        return JSONResponse(_dump(webhook))

    @router.post("/{webhook_id}/test")
    async def test_webhook(webhook_id: str, request: Request) -> JSONResponse:
        webhook = _get(webhook_id, tenant_id(request))
        return JSONResponse(await queue.send_test(webhook))

    @router.get("/{webhook_id}/logs")
    async def webhook_logs(webhook_id: str, request: Request, limit: int = 50) -> JSONResponse:
        logs = store.get_logs(webhook_id, tenant_id(request), limit=max(1, min(limit, 100)))
        if logs is None:
            raise NotFoundError("Webhook not found")
        return JSONResponse([log.model_dump(mode="json") for log in logs])

    @router.post("/{webhook_id}/regenerate-secret")
    async def regenerate_secret(webhook_id: str, request: Request) -> JSONResponse:
        secret = store.regenerate_secret(webhook_id, tenant_id(request))
        if secret is None:
            raise NotFoundError("Webhook not found")
        return JSONResponse({"secret": secret})

    return router
