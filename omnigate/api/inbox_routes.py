"""Outbound send endpoints used by the CRM inbox."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from omnigate.errors import ValidationError
from omnigate.models import MediaUpload, OutboundContent

if TYPE_CHECKING:
    from omnigate.dispatch.dispatcher import MessageDispatcher

logger = logging.getLogger(__name__)


class SendRequest(BaseModel):
    content: str | None = None
    media_url: str | None = None
    media_type: str | None = None


def tenant_id(request: Request) -> str:
    """The tenant a request acts for, from the ``X-User-Id`` header."""
    user_id = request.headers.get("x-user-id", "").strip()
    if not user_id:
        raise ValidationError("X-User-Id header is required")
    return user_id


def _media_type_from_mime(mime_type: str | None) -> str | None:
    if not mime_type:
        return None
    kind = mime_type.split("/", 1)[0]
    return kind if kind in ("image", "video", "audio") else "document"


def create_inbox_router(dispatcher: MessageDispatcher) -> APIRouter:
    """Create the inbox send router."""
    router = APIRouter(prefix="/inbox")

    @router.post("/conversations/{identifier}/send")
    async def send(identifier: str, body: SendRequest, request: Request) -> JSONResponse:
        """Send text or a media link; ``identifier`` may be a conversation id, phone or chat id."""
        message = await dispatcher.send(
            tenant_id(request),
            identifier,
            OutboundContent(
                text=body.content, media_url=body.media_url, media_type=body.media_type,
            ),
        )
        return JSONResponse(message.model_dump(mode="json"), status_code=201)

    @router.post("/conversations/{identifier}/send-media")
    async def send_media(
        identifier: str,
        request: Request,
        media_url: str = Form(...),
        media_type: str | None = Form(None),
        caption: str | None = Form(None),
        file: UploadFile | None = File(None),
    ) -> JSONResponse:
        """Send media by URL; an attached file lets WhatsApp Cloud upload it directly."""
        upload = None
        if file is not None:
            content = await file.read()
            if content:
                upload = MediaUpload(
                    content=content,
                    mime_type=file.content_type or "application/octet-stream",
                    filename=file.filename or "file",
                )
                media_type = media_type or _media_type_from_mime(file.content_type)

        message = await dispatcher.send(
            tenant_id(request),
            identifier,
            OutboundContent(
                text=caption, media_url=media_url, media_type=media_type, upload=upload,
            ),
        )
        return JSONResponse(message.model_dump(mode="json"), status_code=201)

    return router
