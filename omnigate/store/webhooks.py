"""User webhook registrations and their delivery logs."""

from __future__ import annotations

import json
import secrets
import sqlite3
import string
import uuid
from datetime import UTC, datetime
from typing import Any

from omnigate.models import UserWebhook, WebhookLog
from omnigate.store.db import GatewayDB

MAX_LOGS_PER_WEBHOOK = 100
MAX_LOG_BODY_CHARS = 5000

_SECRET_ALPHABET = string.ascii_letters + string.digits
_UPDATABLE_FIELDS = ("name", "url", "events", "headers", "is_active", "secret", "channel_ids")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def generate_webhook_secret() -> str:
    """Generate a signing secret of the form ``whsec_`` + 32 alphanumerics."""
    return "whsec_" + "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(32))


class WebhookStore:
    """CRUD for user webhooks plus the capped delivery log."""

    def __init__(self, db: GatewayDB) -> None:
        self._db = db

    def _row_to_webhook(self, row: dict[str, Any]) -> UserWebhook:
        return UserWebhook(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            url=row["url"],
            events=json.loads(row["events"] or "[]"),
            headers=json.loads(row["headers"] or "{}"),
            secret=row["secret"],
            channel_ids=json.loads(row["channel_ids"] or "[]"),
            is_active=bool(row["is_active"]),
            trigger_count=row["trigger_count"],
            last_triggered_at=row["last_triggered_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create(
        self,
        user_id: str,
        name: str,
        url: str,
        events: list[str],
        headers: dict[str, str] | None = None,
        secret: str | None = None,
        channel_ids: list[str] | None = None,
    ) -> UserWebhook:
        now = _now_iso()
        webhook_id = str(uuid.uuid4())
        self._db.execute(
            """INSERT INTO user_webhooks
               (id, user_id, name, url, events, headers, is_active, secret,
                channel_ids, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)""",
            (
                webhook_id,
                user_id,
                name,
                url,
                json.dumps(events),
                json.dumps(headers or {}),
                secret or generate_webhook_secret(),
                json.dumps(channel_ids or []),
                now,
                now,
            ),
        )
        webhook = self.get(webhook_id, user_id)
        if webhook is None:
            raise sqlite3.DatabaseError(f"Webhook {webhook_id} missing after insert")
        return webhook

    def get(self, webhook_id: str, user_id: str) -> UserWebhook | None:
        row = self._db.fetch_one(
            "SELECT * FROM user_webhooks WHERE id = ? AND user_id = ?",
            (webhook_id, user_id),
        )
        return self._row_to_webhook(row) if row else None

    def list_for_user(self, user_id: str) -> list[UserWebhook]:
        rows = self._db.fetch_all(
            "SELECT * FROM user_webhooks WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        )
        return [self._row_to_webhook(r) for r in rows]

    def update(self, webhook_id: str, user_id: str, **changes: Any) -> UserWebhook | None:
        """Apply the given field changes; unknown fields and None values are ignored."""
        sets: list[str] = []
        params: list[Any] = []
        for field_name in _UPDATABLE_FIELDS:
            value = changes.get(field_name)
            if value is None:
                continue
            if field_name in ("events", "headers", "channel_ids"):
                value = json.dumps(value)
            elif field_name == "is_active":
                value = 1 if value else 0
            sets.append(f"{field_name} = ?")
            params.append(value)

        if not sets:
            return self.get(webhook_id, user_id)

        sets.append("updated_at = ?")
        params.append(_now_iso())
        cursor = self._db.execute(
            f"UPDATE user_webhooks SET {', '.join(sets)} WHERE id = ? AND user_id = ?",
            (*params, webhook_id, user_id),
        )
        if cursor.rowcount == 0:
            return None
        return self.get(webhook_id, user_id)

    def toggle(self, webhook_id: str, user_id: str) -> UserWebhook | None:
        webhook = self.get(webhook_id, user_id)
        if webhook is None:
            return None
        return self.update(webhook_id, user_id, is_active=not webhook.is_active)

    def delete(self, webhook_id: str, user_id: str) -> bool:
        cursor = self._db.execute(
            "DELETE FROM user_webhooks WHERE id = ? AND user_id = ?",
            (webhook_id, user_id),
        )
        return cursor.rowcount > 0

    def regenerate_secret(self, webhook_id: str, user_id: str) -> str | None:
        secret = generate_webhook_secret()
        if self.update(webhook_id, user_id, secret=secret) is None:
            return None
        return secret

    def find_active_by_event(
        self, user_id: str, event: str, channel_id: str | None = None,
    ) -> list[UserWebhook]:
        """Active webhooks of the user subscribed to ``event``.

        A webhook with an empty ``channel_ids`` list receives every channel;
        events that carry no channel reach every subscribed webhook.
        """
        rows = self._db.fetch_all(
            "SELECT * FROM user_webhooks WHERE user_id = ? AND is_active = 1",
            (user_id,),
        )
        matches: list[UserWebhook] = []
        for row in rows:
            webhook = self._row_to_webhook(row)
            if event not in webhook.events:
                continue
            if channel_id and webhook.channel_ids and channel_id not in webhook.channel_ids:
                continue
            matches.append(webhook)
        return matches

    def log_trigger(
        self,
        webhook_id: str,
        event: str,
        payload: dict[str, Any],
        response_status: int | None = None,
        response_body: str | None = None,
        error: str | None = None,
    ) -> None:
        """Record one delivery outcome and prune the log to the newest entries."""
        now = _now_iso()
        self._db.execute(
            """UPDATE user_webhooks
               SET last_triggered_at = ?, trigger_count = trigger_count + 1, last_error = ?
               WHERE id = ?""",
            (now, error, webhook_id),
        )
        self._db.execute(
            """INSERT INTO webhook_logs
               (webhook_id, event, payload, response_status, response_body, error, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                webhook_id,
                event,
                json.dumps(payload, default=str),
                response_status,
                response_body[:MAX_LOG_BODY_CHARS] if response_body else None,
                error,
                now,
            ),
        )
        self._db.execute(
            """DELETE FROM webhook_logs
               WHERE webhook_id = ? AND id NOT IN (
                   SELECT id FROM webhook_logs WHERE webhook_id = ?
                   ORDER BY id DESC LIMIT ?
               )""",
            (webhook_id, webhook_id, MAX_LOGS_PER_WEBHOOK),
        )

    def get_logs(self, webhook_id: str, user_id: str, limit: int = 50) -> list[WebhookLog] | None:
        """Newest-first delivery log, or None when the webhook is not the user's."""
        if self.get(webhook_id, user_id) is None:
            return None
        rows = self._db.fetch_all(
            "SELECT * FROM webhook_logs WHERE webhook_id = ? ORDER BY id DESC LIMIT ?",
            (webhook_id, limit),
        )
        return [
            WebhookLog(**{**row, "payload": json.loads(row["payload"] or "{}")})
            for row in rows
        ]
