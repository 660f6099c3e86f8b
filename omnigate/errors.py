"""Error taxonomy for the dispatch engine.

Each error carries the HTTP status the API layer answers with.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for errors surfaced to the caller of a dispatch operation."""

    status_code = 500

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(GatewayError):
    """Request cannot be dispatched as given (no content, bad identifier)."""

    status_code = 400


class RecipientNotFoundError(ValidationError):
    """Identifier resolves to no conversation, lead, or usable phone."""

    status_code = 404


class ChannelConfigError(GatewayError):
    """Channel is missing a credential (or provider is not configured)."""

    status_code = 500


class ExternalApiError(GatewayError):
    """Provider answered non-2xx or could not be reached."""

    status_code = 502

    def __init__(
        self,
        provider: str,
        message: str,
        status: int | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message, detail)
        self.provider = provider
        self.status = status


class NotFoundError(GatewayError):
    """A referenced record (webhook, channel) does not exist for the tenant."""

    status_code = 404
