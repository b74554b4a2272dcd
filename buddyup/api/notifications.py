"""Notification inbox endpoints"""
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from buddyup.api import auth
from buddyup.services import notifications
from buddyup.utils import to_iso8601

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/notifications",
    tags=["notifications"],
    dependencies=[Depends(auth.get_current_user_id)]
)


class NotificationResponse(BaseModel):
    id: str
    user_id: str
    trip_id: str | None
    type: str
    title: str
    body: str
    read: bool
    created_at: str


class PushTokenRequest(BaseModel):
    push_token: str | None
    platform: str | None = None  # 'ios' | 'android'


def notification_out(notification: dict) -> NotificationResponse:
    return NotificationResponse(**{**notification, "created_at": to_iso8601(notification["created_at"])})


@router.get("/", response_model=list[NotificationResponse])
def list_notifications(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(auth.get_current_user_id)
):
    return [notification_out(n) for n in notifications.fetch_notifications(user_id, limit)]


@router.get("/unread-count")
def unread_count(user_id: str = Depends(auth.get_current_user_id)):
    return {"count": notifications.get_unread_count(user_id)}


@router.get("/trip/{trip_id}", response_model=list[NotificationResponse])
def trip_notifications(trip_id: str, user_id: str = Depends(auth.get_current_user_id)):
    return [notification_out(n) for n in notifications.get_trip_notifications(user_id, trip_id)]


@router.post("/read-all")
def mark_all_read(user_id: str = Depends(auth.get_current_user_id)):
    return {"ok": True, "updated": notifications.mark_all_notifications_as_read(user_id)}


@router.post("/{notification_id}/read", response_model=NotificationResponse)
def mark_read(notification_id: str, user_id: str = Depends(auth.get_current_user_id)):
    return notification_out(notifications.mark_notification_as_read(notification_id, user_id))


@router.delete("/{notification_id}")
def delete_notification(notification_id: str, user_id: str = Depends(auth.get_current_user_id)):
    notifications.delete_notification(notification_id, user_id)
    return {"ok": True}


@router.delete("/")
def delete_all(user_id: str = Depends(auth.get_current_user_id)):
    return {"ok": True, "deleted": notifications.delete_all_notifications(user_id)}


@router.put("/push-token")
def register_push_token(body: PushTokenRequest, user_id: str = Depends(auth.get_current_user_id)):
    """Register the device token used for push delivery (null clears it)."""
    notifications.register_push_token(user_id, body.push_token, body.platform)
    return {"ok": True}
