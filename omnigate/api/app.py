"""FastAPI application for the messaging gateway."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from omnigate.api.auth_middleware import AuthMiddleware
from omnigate.api.inbox_routes import create_inbox_router
from omnigate.api.provider_routes import create_provider_router
from omnigate.api.webhook_routes import create_webhook_router
from omnigate.config import GatewayConfig
from omnigate.errors import GatewayError
from omnigate.service import Gateway

logger = logging.getLogger(__name__)


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    token = os.environ["OMNIGATE_TOKEN"]
    gateway = Gateway(GatewayConfig.from_env())
    return create_app(gateway, token)


def create_app(gateway: Gateway, token: str) -> FastAPI:
    """Create the gateway app; the gateway is closed when the app shuts down."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await gateway.close()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.gateway = gateway

    @app.exception_handler(GatewayError)
    async def gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(create_inbox_router(gateway.dispatcher))
    app.include_router(create_webhook_router(gateway.webhooks, gateway.events))
    app.include_router(create_provider_router(gateway))

    app.add_middleware(AuthMiddleware, token=token, audit_logger=gateway.audit_logger)

    return app
