"""ASGI middleware for Bearer token authentication."""

from __future__ import annotations

import hmac

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from omnigate.audit.logger import AuditLogger
from omnigate.models import AuditEvent, AuditEventType

# Paths that bypass authentication (exact match)
PUBLIC_PATHS = {"/health"}

# Provider callbacks authenticate with their own signatures
PUBLIC_PREFIXES = ("/webhook/",)


class AuthMiddleware:
    """ASGI middleware that validates Bearer tokens using constant-time comparison."""

    def __init__(
        self,
        app: ASGIApp,
        token: str,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self.app = app
        self._token = token.encode()
        self.audit_logger = audit_logger

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        path = request.url.path

        if path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES):
            await self.app(scope, receive, send)
            return

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            reason = "invalid_format" if auth_header else "missing_token"
            self._log(request, AuditEventType.AUTH_FAILURE, "failure", reason)
            await JSONResponse({"error": "Authentication required"}, status_code=401)(
                scope, receive, send,
            )
            return

        if not self._token or not hmac.compare_digest(auth_header[7:].encode(), self._token):
            self._log(request, AuditEventType.AUTH_FAILURE, "failure", "invalid_token")
            await JSONResponse({"error": "Access denied"}, status_code=403)(scope, receive, send)
            return

        self._log(request, AuditEventType.AUTH_SUCCESS, "success")
        await self.app(scope, receive, send)

    def _log(
        self,
        request: Request,
        event_type: AuditEventType,
        result: str,
        reason: str | None = None,
    ) -> None:
        if not self.audit_logger:
            return
        self.audit_logger.log(AuditEvent(
            event_type=event_type,
            source_ip=request.client.host if request.client else None,
            user_id=request.headers.get("x-user-id"),
            action=f"{request.method} {request.url.path}",
            result=result,
            details={"reason": reason} if reason else None,
        ))
