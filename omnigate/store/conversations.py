"""Conversation and message persistence."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import uuid
from datetime import UTC, datetime
from typing import Any

from omnigate.models import (
    Conversation,
    ConversationStatus,
    Message,
)
from omnigate.store.db import GatewayDB

logger = logging.getLogger(__name__)

# Provider-supplied raw ids (phone numbers, PSIDs) rather than display names
_NUMERIC_NAME = re.compile(r"^\d{6,}$")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def merge_metadata(existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Merge conversation metadata.

    Incoming values win except when they are None, and a numeric-looking
    ``contact_name`` never replaces a known non-numeric one.
    """
    merged = dict(existing)
    for key, value in incoming.items():
        if value is None:
            continue
        if key == "contact_name" and isinstance(value, str):
            current = existing.get("contact_name")
            if (
                isinstance(current, str)
                and current
                and _NUMERIC_NAME.match(value)
                and not _NUMERIC_NAME.match(current)
            ):
                continue
        merged[key] = value
    return merged


class ConversationStore:
    """Persistence for conversations keyed by (user, channel, remote identifier)."""

    def __init__(self, db: GatewayDB) -> None:
        self._db = db

    def _row_to_conversation(self, row: dict[str, Any]) -> Conversation:
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            channel_id=row["channel_id"],
            remote_identifier=row["remote_identifier"],
            lead_id=row["lead_id"],
            status=ConversationStatus(row["status"]),
            unread_count=row["unread_count"],
            metadata=json.loads(row["metadata"] or "{}"),
            last_message_at=row["last_message_at"],
            created_at=row["created_at"],
        )

    def get(self, conversation_id: str) -> Conversation | None:
        row = self._db.fetch_one("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        return self._row_to_conversation(row) if row else None

    def get_for_user(self, conversation_id: str, user_id: str) -> Conversation | None:
        row = self._db.fetch_one(
            "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
            (conversation_id, user_id),
        )
        return self._row_to_conversation(row) if row else None

    def find_by_remote(self, user_id: str, remote_identifier: str) -> Conversation | None:
        """Most recently active conversation for a remote identifier, any channel."""
        row = self._db.fetch_one(
            """SELECT * FROM conversations
               WHERE user_id = ? AND remote_identifier = ?
               ORDER BY COALESCE(last_message_at, created_at) DESC
               LIMIT 1""",
            (user_id, remote_identifier),
        )
        return self._row_to_conversation(row) if row else None

    def _find_exact(
        self, user_id: str, channel_id: str, remote_identifier: str,
    ) -> Conversation | None:
        row = self._db.fetch_one(
            """SELECT * FROM conversations
               WHERE user_id = ? AND channel_id = ? AND remote_identifier = ?""",
            (user_id, channel_id, remote_identifier),
        )
        return self._row_to_conversation(row) if row else None

    def find_or_create(
        self,
        user_id: str,
        channel_id: str,
        remote_identifier: str,
        lead_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Conversation, bool]:
        """Return the conversation for the key, creating it if needed.

        Returns:
            Tuple of (conversation, created).
        """
        if not remote_identifier or not remote_identifier.strip():
            raise ValueError("remote identifier is required")
        metadata = metadata or {}

        existing = self._find_exact(user_id, channel_id, remote_identifier)
        if existing is not None:
            return self._merge_into(existing, metadata, lead_id), False

        now = _now_iso()
        conversation_id = str(uuid.uuid4())
        clean_meta = {k: v for k, v in metadata.items() if v is not None}
        try:
            self._db.execute(
                """INSERT INTO conversations
                   (id, user_id, channel_id, remote_identifier, lead_id, metadata,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    conversation_id,
                    user_id,
                    channel_id,
                    remote_identifier,
                    lead_id,
                    json.dumps(clean_meta),
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError:
            # Lost a concurrent create; the unique key guarantees the winner exists
            winner = self._find_exact(user_id, channel_id, remote_identifier)
            if winner is None:
                raise
            return self._merge_into(winner, metadata, lead_id), False

        created = self.get(conversation_id)
        if created is None:
            raise sqlite3.DatabaseError(f"Conversation {conversation_id} missing after insert")
        return created, True

    def _merge_into(
        self,
        conversation: Conversation,
        metadata: dict[str, Any],
        lead_id: str | None,
    ) -> Conversation:
        merged = merge_metadata(conversation.metadata, metadata)
        updates: dict[str, Any] = {}
        if merged != conversation.metadata:
            self._db.execute(
                "UPDATE conversations SET metadata = ?, updated_at = ? WHERE id = ?",
                (json.dumps(merged), _now_iso(), conversation.id),
            )
            updates["metadata"] = merged
        if lead_id and not conversation.lead_id:
            self._db.execute(
                "UPDATE conversations SET lead_id = ? WHERE id = ?",
                (lead_id, conversation.id),
            )
            updates["lead_id"] = lead_id
        return conversation.model_copy(update=updates) if updates else conversation

    def touch(self, conversation_id: str, when: str | None = None, unread_increment: int = 0) -> None:
        """Stamp last_message_at and adjust the unread counter (never below zero)."""
        now = when or _now_iso()
        self._db.execute(
            """UPDATE conversations
               SET last_message_at = ?,
                   unread_count = MAX(0, unread_count + ?),
                   updated_at = ?
               WHERE id = ?""",
            (now, unread_increment, now, conversation_id),
        )

    def mark_as_read(self, conversation_id: str, user_id: str) -> None:
        self._db.execute(
            "UPDATE conversations SET unread_count = 0, updated_at = ? WHERE id = ? AND user_id = ?",
            (_now_iso(), conversation_id, user_id),
        )

    def update_status(
        self, conversation_id: str, user_id: str, status: ConversationStatus,
    ) -> None:
        self._db.execute(
            "UPDATE conversations SET status = ?, updated_at = ? WHERE id = ? AND user_id = ?",
            (ConversationStatus(status).value, _now_iso(), conversation_id, user_id),
        )


class MessageStore:
    """Append-only message history."""

    def __init__(self, db: GatewayDB) -> None:
        self._db = db

    def insert(self, message: Message) -> Message:
        self._db.execute(
            """INSERT INTO messages
               (id, conversation_id, user_id, direction, channel, content, media_url,
                media_type, status, external_id, metadata, sent_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                message.id,
                message.conversation_id,
                message.user_id,
                message.direction.value,
                message.channel.value,
                message.content,
                message.media_url,
                message.media_type,
                message.status.value,
                message.external_id,
                json.dumps(message.metadata, default=str),
                message.sent_at,
            ),
        )
        return message

    def exists_external(self, conversation_id: str, external_id: str) -> bool:
        row = self._db.fetch_one(
            "SELECT 1 AS hit FROM messages WHERE conversation_id = ? AND external_id = ? LIMIT 1",
            (conversation_id, external_id),
        )
        return row is not None

    def list_for_conversation(self, conversation_id: str, limit: int = 100) -> list[Message]:
        rows = self._db.fetch_all(
            """SELECT * FROM messages WHERE conversation_id = ?
               ORDER BY sent_at DESC LIMIT ?""",
            (conversation_id, limit),
        )
        return [
            Message(**{**row, "metadata": json.loads(row["metadata"] or "{}")})
            for row in rows
        ]
