"""Channel and lead records.

Both tables belong to the CRM; the gateway reads them and writes back only
discovered credential fields and lead contact stamps.
"""

from __future__ import annotations

import json
import re
import sqlite3
import uuid
from datetime import UTC, datetime
from typing import Any

from omnigate.models import WHATSAPP_TYPES, Channel, ChannelType, Lead
from omnigate.store.db import GatewayDB


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _load_credentials(raw: str | None) -> dict[str, Any] | str:
    if not raw:
        return {}
    value = json.loads(raw)
    # A double-encoded blob decodes to a str; the CredentialResolver unwraps it
    return value if isinstance(value, (dict, str)) else {}


class ChannelStore:
    """Persistence for configured provider channels."""

    def __init__(self, db: GatewayDB) -> None:
        self._db = db

    def _row_to_channel(self, row: dict[str, Any]) -> Channel:
        return Channel(
            id=row["id"],
            user_id=row["user_id"],
            type=ChannelType(row["type"]),
            name=row["name"],
            status=row["status"],
            credentials=_load_credentials(row["credentials"]),
        )

    def create(
        self,
        user_id: str,
        channel_type: ChannelType,
        credentials: dict[str, Any] | str,
        name: str = "",
        status: str = "active",
        channel_id: str | None = None,
    ) -> Channel:
        now = _now_iso()
        channel_id = channel_id or str(uuid.uuid4())
        self._db.execute(
            """INSERT INTO channels
               (id, user_id, type, name, status, credentials, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                channel_id,
                user_id,
                ChannelType(channel_type).value,
                name,
                status,
                json.dumps(credentials),
                now,
                now,
            ),
        )
        channel = self.get(channel_id)
        if channel is None:
            raise sqlite3.DatabaseError(f"Channel {channel_id} missing after insert")
        return channel

    def get(self, channel_id: str) -> Channel | None:
        row = self._db.fetch_one("SELECT * FROM channels WHERE id = ?", (channel_id,))
        return self._row_to_channel(row) if row else None

    def get_for_user(self, channel_id: str, user_id: str) -> Channel | None:
        row = self._db.fetch_one(
            "SELECT * FROM channels WHERE id = ? AND user_id = ?",
            (channel_id, user_id),
        )
        return self._row_to_channel(row) if row else None

    def list_by_type(self, user_id: str, *types: ChannelType) -> list[Channel]:
        placeholders = ", ".join("?" for _ in types)
        rows = self._db.fetch_all(
            f"""SELECT * FROM channels
                WHERE user_id = ? AND type IN ({placeholders})
                ORDER BY created_at""",
            (user_id, *(t.value for t in types)),
        )
        return [self._row_to_channel(r) for r in rows]

    def find_default_whatsapp(self, user_id: str) -> Channel | None:
        """First active WhatsApp-family channel, else the first one at all."""
        channels = self.list_by_type(user_id, *sorted(WHATSAPP_TYPES, key=lambda t: t.value))
        for channel in channels:
            if channel.status in ("active", "connected"):
                return channel
        return channels[0] if channels else None

    def update_credentials(self, channel_id: str, updates: dict[str, Any]) -> Channel | None:
        """Merge ``updates`` into the stored credential blob."""
        channel = self.get(channel_id)
        if channel is None:
            return None
        current = channel.credentials
        if isinstance(current, str):
            try:
                current = json.loads(current)
            except json.JSONDecodeError:
                current = {}
        merged = {**(current if isinstance(current, dict) else {}), **updates}
        self._db.execute(
            "UPDATE channels SET credentials = ?, updated_at = ? WHERE id = ?",
            (json.dumps(merged), _now_iso(), channel_id),
        )
        return self.get(channel_id)

    def update_status(self, channel_id: str, status: str) -> None:
        self._db.execute(
            "UPDATE channels SET status = ?, updated_at = ? WHERE id = ?",
            (status, _now_iso(), channel_id),
        )


def normalize_phone_for_match(phone: str) -> str:
    return re.sub(r"\D", "", phone)


class LeadStore:
    """Read access to CRM leads plus the last-contact stamp."""

    # Shorter digit strings match too many unrelated numbers by suffix
    MIN_MATCH_DIGITS = 8

    def __init__(self, db: GatewayDB) -> None:
        self._db = db

    def create(
        self,
        user_id: str,
        name: str | None = None,
        phone: str | None = None,
        whatsapp: str | None = None,
        email: str | None = None,
        lead_id: str | None = None,
    ) -> Lead:
        lead_id = lead_id or str(uuid.uuid4())
        self._db.execute(
            """INSERT INTO leads (id, user_id, name, phone, whatsapp, email)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (lead_id, user_id, name, phone, whatsapp, email),
        )
        return Lead(
            id=lead_id, user_id=user_id, name=name, phone=phone, whatsapp=whatsapp, email=email,
        )

    def get_for_user(self, lead_id: str, user_id: str) -> Lead | None:
        row = self._db.fetch_one(
            "SELECT * FROM leads WHERE id = ? AND user_id = ?", (lead_id, user_id),
        )
        return Lead(**row) if row else None

    def find_by_phone(self, user_id: str, phone: str) -> Lead | None:
        """Find a lead whose phone or whatsapp number ends with the given digits."""
        digits = normalize_phone_for_match(phone)
        if len(digits) < self.MIN_MATCH_DIGITS:
            return None
        row = self._db.fetch_one(
            """SELECT * FROM leads WHERE user_id = ? AND (
                 REPLACE(REPLACE(REPLACE(REPLACE(COALESCE(phone, ''), '+', ''), '-', ''), ' ', ''),
                         '.', '') LIKE ?
                 OR REPLACE(REPLACE(REPLACE(REPLACE(COALESCE(whatsapp, ''), '+', ''), '-', ''),
                                    ' ', ''), '.', '') LIKE ?
               ) LIMIT 1""",
            (user_id, f"%{digits}", f"%{digits}"),
        )
        return Lead(**row) if row else None

    def touch_last_contact(self, lead_id: str, when: str | None = None) -> None:
        self._db.execute(
            "UPDATE leads SET last_contact_at = ? WHERE id = ?",
            (when or _now_iso(), lead_id),
        )
