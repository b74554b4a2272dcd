"""Trip group chat: append-only messages with a monotonically growing read set."""
from __future__ import annotations

import logging

import sqlalchemy

from buddyup import database as db
from buddyup.errors import NotFoundError, PermissionDenied, ValidationError
from buddyup.services import notifications, trip_store
from buddyup.services.realtime import INSERT, UPDATE
from buddyup.utils import new_id, utcnow

log = logging.getLogger(__name__)

MESSAGE_TEXT = "text"
MESSAGE_SYSTEM = "system"
MAX_MESSAGE_LENGTH = 2000
PREVIEW_LENGTH = 50


def chat_member_ids(connection, trip_id: str) -> list[str]:
    """The creator plus accepted participants."""
    trip = trip_store.get_trip(connection, trip_id)
    rows = connection.execute(
        sqlalchemy.text(
            """
            SELECT user_id FROM trip_participants
            WHERE trip_id = :trip_id AND status = 'accepted'
            ORDER BY joined_at
            """
        ),
        {"trip_id": trip_id}
    ).fetchall()
    return [trip["creator_id"]] + [r.user_id for r in rows if r.user_id != trip["creator_id"]]


def _require_member(connection, trip_id: str, user_id: str) -> list[str]:
    members = chat_member_ids(connection, trip_id)
    if user_id not in members:
        raise PermissionDenied("Only trip members can use the chat")
    return members


def preview(content: str) -> str:
    if len(content) > PREVIEW_LENGTH:
        return content[:PREVIEW_LENGTH] + "..."
    return content


def _read_sets(connection, message_ids: list[str]) -> dict[str, list[str]]:
    if not message_ids:
        return {}
    placeholders = ", ".join(f":m_{i}" for i in range(len(message_ids)))
    rows = connection.execute(
        sqlalchemy.text(
            f"SELECT message_id, user_id FROM message_reads WHERE message_id IN ({placeholders}) ORDER BY read_at"
        ),
        {f"m_{i}": m for i, m in enumerate(message_ids)}
    ).fetchall()
    read_by: dict[str, list[str]] = {m: [] for m in message_ids}
    for r in rows:
        read_by[r.message_id].append(r.user_id)
    return read_by


def get_trip_messages(trip_id: str, user_id: str) -> list[dict]:
    """Messages for a trip in send order, each with its sender profile and read_by set."""
    with db.begin() as connection:
        _require_member(connection, trip_id, user_id)
        rows = connection.execute(
            sqlalchemy.text(
                """
                SELECT m.*, u.full_name, u.avatar_url
                FROM messages m
                LEFT JOIN profiles u ON m.sender_id = u.id
                WHERE m.trip_id = :trip_id
                ORDER BY m.created_at ASC
                """
            ),
            {"trip_id": trip_id}
        ).fetchall()
        read_by = _read_sets(connection, [r.id for r in rows])

    messages = []
    for r in rows:
        data = dict(r._mapping)
        full_name = data.pop("full_name")
        avatar_url = data.pop("avatar_url")
        data["sender"] = None
        if data["sender_id"] is not None:
            data["sender"] = {"id": data["sender_id"], "full_name": full_name, "avatar_url": avatar_url}
        data["read_by"] = read_by.get(data["id"], [])
        messages.append(data)
    return messages


def _insert_message(connection, trip_id: str, sender_id: str | None, content: str, message_type: str) -> dict:
    message = {
        "id": new_id(),
        "trip_id": trip_id,
        "sender_id": sender_id,
        "content": content,
        "message_type": message_type,
        "created_at": utcnow(),
    }
    connection.execute(
        sqlalchemy.text(
            """
            INSERT INTO messages (id, trip_id, sender_id, content, message_type, created_at)
            VALUES (:id, :trip_id, :sender_id, :content, :message_type, :created_at)
            """
        ),
        message
    )
    db.record_change(connection, "messages", INSERT, message)
    return message


def send_message(trip_id: str, sender_id: str, content: str) -> tuple[dict, list[dict]]:
    """Post a text message and notify every other member. Returns (message, notifications)."""
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message cannot be empty")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")

    with db.begin() as connection:
        members = _require_member(connection, trip_id, sender_id)
        trip = trip_store.get_trip(connection, trip_id)
        if trip["status"] == trip_store.TRIP_CANCELLED:
            raise PermissionDenied("This trip was cancelled")
        message = _insert_message(connection, trip_id, sender_id, content, MESSAGE_TEXT)
        sender_name = connection.execute(
            sqlalchemy.text("SELECT full_name FROM profiles WHERE id = :id"),
            {"id": sender_id}
        ).scalar()

    sent = notifications.fan_out(
        members,
        trip_id,
        notifications.NEW_MESSAGE,
        f"New message in {trip['title']}",
        f"{sender_name or 'Someone'}: {preview(content)}",
        exclude=[sender_id],
    )
    return message, sent


def send_system_message(connection, trip_id: str, content: str) -> dict:
    """Post a system line (no sender, no notifications) in the caller's transaction."""
    message = _insert_message(connection, trip_id, None, content, MESSAGE_SYSTEM)
    log.info(f"[Chat] System message on trip {trip_id}: {content}")
    return message


def mark_messages_as_read(trip_id: str, message_ids: list[str], user_id: str) -> int:
    """Add user_id to the read set of each message. Returns how many were newly marked."""
    if not message_ids:
        return 0

    marked = 0
    with db.begin() as connection:
        _require_member(connection, trip_id, user_id)
        now = utcnow()
        for message_id in dict.fromkeys(message_ids):
            exists = connection.execute(
                sqlalchemy.text("SELECT 1 FROM messages WHERE id = :id AND trip_id = :trip_id"),
                {"id": message_id, "trip_id": trip_id}
            ).fetchone()
            if exists is None:
                raise NotFoundError("Message not found")
            result = connection.execute(
                sqlalchemy.text(
                    """
                    INSERT INTO message_reads (message_id, user_id, read_at)
                    VALUES (:message_id, :user_id, :now)
                    ON CONFLICT (message_id, user_id) DO NOTHING
                    """
                ),
                {"message_id": message_id, "user_id": user_id, "now": now}
            )
            if result.rowcount:
                marked += 1
                db.record_change(
                    connection, "messages", UPDATE, {"id": message_id, "trip_id": trip_id, "read_by_added": user_id}
                )
    return marked


def get_unread_message_count(trip_id: str, user_id: str) -> int:
    """Messages from other members that user_id has not read. System lines are not counted."""
    with db.begin() as connection:
        count = connection.execute(
            sqlalchemy.text(
                """
                SELECT COUNT(*) FROM messages m
                WHERE m.trip_id = :trip_id
                  AND m.sender_id IS NOT NULL
                  AND m.sender_id != :user_id
                  AND NOT EXISTS (
                      SELECT 1 FROM message_reads r
                      WHERE r.message_id = m.id AND r.user_id = :user_id
                  )
                """
            ),
            {"trip_id": trip_id, "user_id": user_id}
        ).scalar()
    return int(count or 0)
