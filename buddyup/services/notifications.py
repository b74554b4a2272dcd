"""Notification fan-out, the notification inbox and the push delivery sink.

Fan-out writes notification records in their own transaction after the state
transition has committed: a failed write is logged and never undoes the
transition. Push delivery is a further asynchronous step triggered by the
written records.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

import sqlalchemy

from buddyup import database as db
from buddyup.config import get_settings
from buddyup.errors import NotFoundError, ValidationError
from buddyup.messaging.fcm import get_push_sender
from buddyup.services.realtime import DELETE, INSERT, UPDATE
from buddyup.utils import new_id, to_iso8601, utcnow

settings = get_settings()
log = logging.getLogger(__name__)

TRIP_REQUEST = "trip_request"
REQUEST_ACCEPTED = "request_accepted"
REQUEST_REJECTED = "request_rejected"
NEW_MESSAGE = "new_message"
TRIP_UPDATE = "trip_update"
TRIP_CANCELLED = "trip_cancelled"
TRIP_REMINDER = "trip_reminder"
PARTICIPANT_LEFT = "participant_left"
PARTICIPANT_REMOVED = "participant_removed"
TRIP_COMPLETED = "trip_completed"

NOTIFICATION_TYPES = (
    TRIP_REQUEST,
    REQUEST_ACCEPTED,
    REQUEST_REJECTED,
    NEW_MESSAGE,
    TRIP_UPDATE,
    TRIP_CANCELLED,
    TRIP_REMINDER,
    PARTICIPANT_LEFT,
    PARTICIPANT_REMOVED,
    TRIP_COMPLETED,
)

MAX_RETRIES = 3
RETRY_DELAYS = [1, 2, 4]  # Exponential backoff: 1s, 2s, 4s


def unique_recipients(user_ids: Iterable[str | None], exclude: Iterable[str | None] = ()) -> list[str]:
    """Deduplicate recipients, preserving order, dropping excluded and empty ids."""
    excluded = {e for e in exclude if e}
    seen: set[str] = set()
    recipients = []
    for uid in user_ids:
        if not uid or uid in excluded or uid in seen:
            continue
        seen.add(uid)
        recipients.append(uid)
    return recipients


def insert_notifications(
    connection,
    user_ids: Iterable[str],
    trip_id: str | None,
    notification_type: str,
    title: str,
    body: str,
) -> list[dict]:
    """Write one unread notification per user id on an open connection."""
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type '{notification_type}'")

    now = utcnow()
    created = []
    for user_id in user_ids:
        row = {
            "id": new_id(),
            "user_id": user_id,
            "trip_id": trip_id,
            "type": notification_type,
            "title": title,
            "body": body,
            "read": False,
            "created_at": now,
        }
        connection.execute(
            sqlalchemy.text(
                """
                INSERT INTO notifications (id, user_id, trip_id, type, title, body, read, created_at)
                VALUES (:id, :user_id, :trip_id, :type, :title, :body, :read, :created_at)
                """
            ),
            row
        )
        db.record_change(connection, "notifications", INSERT, row)
        created.append(row)
    return created


def fan_out(
    user_ids: Iterable[str | None],
    trip_id: str | None,
    notification_type: str,
    title: str,
    body: str,
    exclude: Iterable[str | None] = (),
) -> list[dict]:
    """Notify each affected user exactly once. Never raises; failures are logged."""
    recipients = unique_recipients(user_ids, exclude)
    if not recipients:
        return []
    try:
        with db.begin() as connection:
            created = insert_notifications(connection, recipients, trip_id, notification_type, title, body)
        log.info(f"[Notifications] {notification_type} -> {len(created)} recipient(s) for trip {trip_id}")
        return created
    except Exception as e:
        log.error(
            f"[Notifications] Failed to write {notification_type} for trip {trip_id} "
            f"to {len(recipients)} recipient(s): {e}",
            exc_info=True
        )
        return []


# ==================== Transition copy ====================

def notify_trip_request(trip: dict, requester_name: str | None, seats: int) -> list[dict]:
    who = requester_name or "Someone"
    seat_note = f" ({seats} seats)" if seats > 1 else ""
    return fan_out(
        [trip["creator_id"]], trip["id"], TRIP_REQUEST,
        "New Trip Request",
        f"{who} wants to join your trip: {trip['title']}{seat_note}",
    )


def notify_request_accepted(trip: dict, user_id: str) -> list[dict]:
    return fan_out(
        [user_id], trip["id"], REQUEST_ACCEPTED,
        "Request Accepted!",
        f'Your request to join "{trip["title"]}" was accepted. You can now chat with the group.',
        exclude=[trip["creator_id"]],
    )


def notify_request_rejected(trip: dict, user_id: str) -> list[dict]:
    return fan_out(
        [user_id], trip["id"], REQUEST_REJECTED,
        "Request Declined",
        f'Your request to join "{trip["title"]}" was declined.',
        exclude=[trip["creator_id"]],
    )


def notify_participant_left(trip: dict, leaver_id: str, leaver_name: str | None) -> list[dict]:
    who = leaver_name or "A participant"
    return fan_out(
        [trip["creator_id"]], trip["id"], PARTICIPANT_LEFT,
        "Participant Left",
        f'{who} has left your trip "{trip["title"]}".',
        exclude=[leaver_id],
    )


def notify_participant_removed(trip: dict, user_id: str, reason: str | None = None) -> list[dict]:
    body = f'You have been removed from "{trip["title"]}".'
    if reason:
        body = f'You have been removed from "{trip["title"]}". Reason: {reason}'
    return fan_out(
        [user_id], trip["id"], PARTICIPANT_REMOVED,
        "Removed from Trip",
        body,
        exclude=[trip["creator_id"]],
    )


def notify_trip_cancelled(trip: dict, user_ids: Iterable[str]) -> list[dict]:
    return fan_out(
        user_ids, trip["id"], TRIP_CANCELLED,
        "Trip Cancelled",
        f'The trip "{trip["title"]}" has been cancelled.',
        exclude=[trip["creator_id"]],
    )


def notify_trip_completed(trip: dict, user_ids: Iterable[str]) -> list[dict]:
    return fan_out(
        user_ids, trip["id"], TRIP_COMPLETED,
        "Trip Completed",
        f'How was "{trip["title"]}"? Leave a review for your fellow riders!',
        exclude=[trip["creator_id"]],
    )


def notify_trip_updated(trip: dict, user_ids: Iterable[str]) -> list[dict]:
    return fan_out(
        user_ids, trip["id"], TRIP_UPDATE,
        "Trip Updated",
        f'The details of "{trip["title"]}" have changed. Check the latest pickup time and place.',
        exclude=[trip["creator_id"]],
    )


# ==================== Inbox ====================

def _row_to_notification(row) -> dict:
    data = dict(row._mapping)
    data["read"] = bool(data["read"])
    return data


def fetch_notifications(user_id: str, limit: int = 50) -> list[dict]:
    with db.begin() as connection:
        rows = connection.execute(
            sqlalchemy.text(
                """
                SELECT * FROM notifications
                WHERE user_id = :user_id
                ORDER BY created_at DESC
                LIMIT :limit
                """
            ),
            {"user_id": user_id, "limit": limit}
        ).fetchall()
    return [_row_to_notification(r) for r in rows]


def get_unread_count(user_id: str) -> int:
    with db.begin() as connection:
        count = connection.execute(
            sqlalchemy.text(
                "SELECT COUNT(*) FROM notifications WHERE user_id = :user_id AND read = :false"
            ),
            {"user_id": user_id, "false": False}
        ).scalar()
    return int(count or 0)


def get_trip_notifications(user_id: str, trip_id: str) -> list[dict]:
    with db.begin() as connection:
        rows = connection.execute(
            sqlalchemy.text(
                """
                SELECT * FROM notifications
                WHERE user_id = :user_id AND trip_id = :trip_id
                ORDER BY created_at DESC
                """
            ),
            {"user_id": user_id, "trip_id": trip_id}
        ).fetchall()
    return [_row_to_notification(r) for r in rows]


def mark_notification_as_read(notification_id: str, user_id: str) -> dict:
    """Set the read flag on one of the user's notifications."""
    with db.begin() as connection:
        row = connection.execute(
            sqlalchemy.text(
                """
                UPDATE notifications SET read = :true
                WHERE id = :id AND user_id = :user_id
                RETURNING *
                """
            ),
            {"id": notification_id, "user_id": user_id, "true": True}
        ).first()
        if row is None:
            raise NotFoundError("Notification not found")
        notification = _row_to_notification(row)
        db.record_change(connection, "notifications", UPDATE, notification)
    return notification


def mark_all_notifications_as_read(user_id: str) -> int:
    with db.begin() as connection:
        result = connection.execute(
            sqlalchemy.text(
                "UPDATE notifications SET read = :true WHERE user_id = :user_id AND read = :false"
            ),
            {"user_id": user_id, "true": True, "false": False}
        )
        updated = result.rowcount
        if updated:
            db.record_change(connection, "notifications", UPDATE, {"user_id": user_id, "read": True})
    return updated


def delete_notification(notification_id: str, user_id: str) -> None:
    with db.begin() as connection:
        result = connection.execute(
            sqlalchemy.text("DELETE FROM notifications WHERE id = :id AND user_id = :user_id"),
            {"id": notification_id, "user_id": user_id}
        )
        if result.rowcount == 0:
            raise NotFoundError("Notification not found")
        db.record_change(connection, "notifications", DELETE, {"id": notification_id, "user_id": user_id})


def delete_all_notifications(user_id: str) -> int:
    with db.begin() as connection:
        result = connection.execute(
            sqlalchemy.text("DELETE FROM notifications WHERE user_id = :user_id"),
            {"user_id": user_id}
        )
        deleted = result.rowcount
        if deleted:
            db.record_change(connection, "notifications", DELETE, {"user_id": user_id})
    return deleted


# ==================== Push delivery ====================

def _clear_push_token(user_id: str, token: str) -> None:
    with db.begin() as connection:
        connection.execute(
            sqlalchemy.text(
                "UPDATE profiles SET push_token = NULL WHERE id = :user_id AND push_token = :token"
            ),
            {"user_id": user_id, "token": token}
        )
    log.info(f"[FCM] Removed unregistered push token for user {user_id}")


async def send_push_to_user(user_id: str, title: str, body: str, data: dict | None = None) -> bool:
    """Send a push notification to the user's device with retry logic.

    Returns True once the sink accepted the message (or there was nothing to send to).
    """
    if settings.PUSH_BACKEND == "dummy":
        log.info(f"[DUMMY PUSH] User: {user_id} - {title}: {body}")
        return True

    if settings.PUSH_BACKEND != "fcm":
        log.warning(f"Unknown push backend: {settings.PUSH_BACKEND}")
        return False

    with db.begin() as connection:
        profile = connection.execute(
            sqlalchemy.text("SELECT push_token, platform FROM profiles WHERE id = :user_id"),
            {"user_id": user_id}
        ).fetchone()

    if profile is None or not profile.push_token:
        log.debug(f"No push token registered for user {user_id}")
        return True

    sender = get_push_sender()
    last_error = None
    for attempt in range(MAX_RETRIES):
        try:
            result = await sender.send(profile.push_token, title, body, data)
            if result.ok:
                log.info(f"[FCM] Sent to user {user_id}: {title}")
                return True
            if result.unregistered:
                # Token is dead; retrying cannot help
                _clear_push_token(user_id, profile.push_token)
                return True
            last_error = f"status={result.status} detail={result.detail}"
            log.warning(f"[FCM] Failed for user {user_id} (attempt {attempt + 1}/{MAX_RETRIES}): {last_error}")
        except Exception as e:
            last_error = str(e)
            log.error(f"[FCM] Error sending to user {user_id} (attempt {attempt + 1}/{MAX_RETRIES}): {e}")

        if attempt < MAX_RETRIES - 1:
            delay = RETRY_DELAYS[attempt]
            log.info(f"[FCM] Retrying in {delay} seconds...")
            await asyncio.sleep(delay)

    log.error(f"[FCM] All retries failed for user {user_id}: {last_error}")
    return False


def push_data(notification: dict) -> dict[str, Any]:
    """FCM data payload for a notification record (all values must be strings)."""
    return {
        "notificationId": notification["id"],
        "tripId": notification.get("trip_id") or "",
        "type": notification["type"],
        "createdAt": to_iso8601(notification.get("created_at")) or "",
    }


async def deliver_notifications(notifications: Iterable[dict]) -> int:
    """Push each written notification to its recipient. Returns how many were accepted."""
    delivered = 0
    for notification in notifications:
        try:
            ok = await send_push_to_user(
                notification["user_id"],
                notification["title"],
                notification["body"],
                data=push_data(notification),
            )
        except Exception as e:
            log.error(f"[Notifications] Delivery of {notification['id']} failed: {e}", exc_info=True)
            ok = False
        if ok:
            delivered += 1
    return delivered


def schedule_delivery(background_tasks, notifications: list[dict]) -> None:
    """Hand written notifications to the push sink after the response is sent."""
    if not notifications:
        return
    pending = list(notifications)

    def deliver_sync():
        asyncio.run(deliver_notifications(pending))

    background_tasks.add_task(deliver_sync)
    log.info(f"[Notifications] Scheduled push delivery for {len(pending)} notification(s)")


def register_push_token(user_id: str, push_token: str | None, platform: str | None = None) -> None:
    """Store (or clear, with None) the device token push delivery uses for a user."""
    if platform is not None and platform not in ("ios", "android"):
        raise ValidationError("Platform must be 'ios' or 'android'")
    with db.begin() as connection:
        result = connection.execute(
            sqlalchemy.text(
                "UPDATE profiles SET push_token = :token, platform = :platform WHERE id = :user_id"
            ),
            {"token": push_token, "platform": platform, "user_id": user_id}
        )
        if result.rowcount == 0:
            raise NotFoundError("User not found")
    log.info(f"[Notifications] Push token {'registered' if push_token else 'cleared'} for user {user_id}")
