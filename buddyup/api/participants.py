"""Join requests and participant management endpoints"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, status
from pydantic import BaseModel, Field

from buddyup.api import auth
from buddyup.api.trips import ParticipantResponse, participant_out
from buddyup.services import participation
from buddyup.services.notifications import schedule_delivery

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/trips",
    tags=["participants"],
    dependencies=[Depends(auth.get_current_user_id)]
)


# ==================== Pydantic Schemas ====================

class JoinRequest(BaseModel):
    """Request seats on a trip. Seats are reserved only when the creator accepts."""
    seats_requested: int = 1


class RemoveRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


# ==================== Endpoints ====================

@router.post("/{trip_id}/requests", response_model=ParticipantResponse, status_code=status.HTTP_200_OK)
def request_to_join(
    trip_id: str,
    body: JoinRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(auth.get_current_user_id)
):
    """Create or refresh the caller's join request. Safe to retry."""
    result = participation.request_to_join(trip_id, user_id, body.seats_requested)
    schedule_delivery(background_tasks, result.notifications)
    return participant_out(result.record)


@router.get("/{trip_id}/participants", response_model=list[ParticipantResponse])
def list_participants(trip_id: str, user_id: str = Depends(auth.get_current_user_id)):
    """Every participation row on the trip, including rejected, left and removed."""
    return [participant_out(p) for p in participation.get_participants(trip_id, user_id)]


@router.post("/{trip_id}/participants/{participant_id}/accept", response_model=ParticipantResponse)
def accept_request(
    trip_id: str,
    participant_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(auth.get_current_user_id)
):
    result = participation.accept_trip_request(participant_id, trip_id, user_id)
    schedule_delivery(background_tasks, result.notifications)
    return participant_out(result.record)


@router.post("/{trip_id}/participants/{participant_id}/reject", response_model=ParticipantResponse)
def reject_request(
    trip_id: str,
    participant_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(auth.get_current_user_id)
):
    result = participation.reject_trip_request(participant_id, trip_id, user_id)
    schedule_delivery(background_tasks, result.notifications)
    return participant_out(result.record)


@router.post("/{trip_id}/participants/{participant_id}/remove", response_model=ParticipantResponse)
def remove_participant(
    trip_id: str,
    participant_id: str,
    background_tasks: BackgroundTasks,
    body: RemoveRequest | None = None,
    user_id: str = Depends(auth.get_current_user_id)
):
    result = participation.remove_participant(participant_id, trip_id, user_id, body.reason if body else None)
    schedule_delivery(background_tasks, result.notifications)
    return participant_out(result.record)


@router.post("/{trip_id}/leave", response_model=ParticipantResponse)
def leave_trip(
    trip_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(auth.get_current_user_id)
):
    """Leave a trip or withdraw a pending request."""
    result = participation.leave_trip(trip_id, user_id)
    schedule_delivery(background_tasks, result.notifications)
    return participant_out(result.record)
