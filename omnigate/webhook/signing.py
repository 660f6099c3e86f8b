"""HMAC signatures for outbound webhook deliveries."""

from __future__ import annotations

import hashlib
import hmac


def sign_payload(body: bytes, secret: str) -> str:
    """``sha256=<hex>`` HMAC-SHA256 of the exact request body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Receiver-side check of an ``X-Webhook-Signature`` header (constant time)."""
    if not signature.startswith("sha256="):
        return False
    return hmac.compare_digest(signature, sign_payload(body, secret))
