"""Trip group chat endpoints"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, status
from pydantic import BaseModel

from buddyup.api import auth
from buddyup.services import chat
from buddyup.services.notifications import schedule_delivery
from buddyup.utils import to_iso8601

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/trips",
    tags=["messages"],
    dependencies=[Depends(auth.get_current_user_id)]
)


class MessageCreate(BaseModel):
    content: str


class MarkReadRequest(BaseModel):
    message_ids: list[str]


class SenderSummary(BaseModel):
    id: str
    full_name: str | None = None
    avatar_url: str | None = None


class MessageResponse(BaseModel):
    id: str
    trip_id: str
    sender_id: str | None
    content: str
    message_type: str  # 'text' | 'system'
    created_at: str
    read_by: list[str] = []
    sender: SenderSummary | None = None


def message_out(message: dict) -> MessageResponse:
    return MessageResponse(**{**message, "created_at": to_iso8601(message["created_at"])})


@router.get("/{trip_id}/messages", response_model=list[MessageResponse])
def get_messages(trip_id: str, user_id: str = Depends(auth.get_current_user_id)):
    return [message_out(m) for m in chat.get_trip_messages(trip_id, user_id)]


@router.post("/{trip_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def send_message(
    trip_id: str,
    body: MessageCreate,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(auth.get_current_user_id)
):
    message, sent = chat.send_message(trip_id, user_id, body.content)
    schedule_delivery(background_tasks, sent)
    return message_out(message)


@router.post("/{trip_id}/messages/read")
def mark_read(trip_id: str, body: MarkReadRequest, user_id: str = Depends(auth.get_current_user_id)):
    marked = chat.mark_messages_as_read(trip_id, body.message_ids, user_id)
    return {"ok": True, "marked": marked}


@router.get("/{trip_id}/messages/unread-count")
def unread_count(trip_id: str, user_id: str = Depends(auth.get_current_user_id)):
    return {"count": chat.get_unread_message_count(trip_id, user_id)}
