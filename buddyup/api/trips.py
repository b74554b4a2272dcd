"""Trip endpoints: create, edit, search and the creator's terminal transitions"""
import logging
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from pydantic import BaseModel

from buddyup.api import auth
from buddyup.config import get_settings
from buddyup.services import participation, trip_store
from buddyup.services.notifications import schedule_delivery
from buddyup.utils import to_iso8601

settings = get_settings()
log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/trips",
    tags=["trips"],
    dependencies=[Depends(auth.get_current_user_id)]
)


# ==================== Pydantic Schemas ====================

class TripCreate(BaseModel):
    title: str
    description: str | None = None
    pickup_location: str
    pickup_lat: float
    pickup_lng: float
    dropoff_location: str
    dropoff_lat: float
    dropoff_lng: float
    departure_time: datetime
    service_type: str  # 'uber' | 'bolt' | 'lyft' | 'other'
    available_seats: int
    estimated_cost: float | None = None


class TripUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    pickup_location: str | None = None
    pickup_lat: float | None = None
    pickup_lng: float | None = None
    dropoff_location: str | None = None
    dropoff_lat: float | None = None
    dropoff_lng: float | None = None
    departure_time: datetime | None = None
    service_type: str | None = None
    estimated_cost: float | None = None
    total_seats: int | None = None


class UserSummary(BaseModel):
    id: str
    full_name: str | None = None
    avatar_url: str | None = None
    rating: float | None = None
    total_trips: int | None = None


class ParticipantResponse(BaseModel):
    id: str
    trip_id: str
    user_id: str
    seats_requested: int
    status: str  # 'pending' | 'accepted' | 'rejected' | 'left' | 'removed'
    payment_status: str
    joined_at: str
    left_at: str | None = None
    user: UserSummary | None = None


class TripResponse(BaseModel):
    id: str
    creator_id: str
    title: str
    description: str | None
    pickup_location: str
    pickup_lat: float
    pickup_lng: float
    dropoff_location: str
    dropoff_lat: float
    dropoff_lng: float
    departure_time: str
    service_type: str
    total_seats: int
    available_seats: int
    estimated_cost: float | None
    status: str
    created_at: str
    updated_at: str
    creator: UserSummary | None = None
    participants: list[ParticipantResponse] = []
    user_participant_status: str | None = None
    distance_km: float | None = None


class TripSummary(BaseModel):
    id: str
    title: str
    departure_time: str
    status: str
    available_seats: int
    total_seats: int
    role: str  # 'creator' | 'participant'
    participant_status: str | None = None


# ==================== Serialisation ====================

def participant_out(participant: dict) -> ParticipantResponse:
    data = dict(participant)
    data["joined_at"] = to_iso8601(data["joined_at"])
    data["left_at"] = to_iso8601(data.get("left_at"))
    return ParticipantResponse(**data)


def trip_out(trip: dict) -> TripResponse:
    data = dict(trip)
    for key in ("departure_time", "created_at", "updated_at"):
        data[key] = to_iso8601(data[key])
    data["participants"] = [participant_out(p) for p in data.get("participants") or []]
    return TripResponse(**data)


# ==================== Endpoints ====================

@router.post("/", response_model=TripResponse, status_code=status.HTTP_201_CREATED)
def create_trip(body: TripCreate, user_id: str = Depends(auth.get_current_user_id)):
    """Offer a new shared ride. total_seats is fixed from available_seats."""
    trip = trip_store.create_trip(user_id, body.model_dump())
    return trip_out(trip_store.get_trip_details(trip["id"]))


@router.get("/nearby", response_model=list[TripResponse])
def nearby_trips(
    lat: float = Query(...),
    lng: float = Query(...),
    radius_km: float | None = Query(None, gt=0),
):
    """Active trips with free seats whose pickup is within radius_km, nearest first."""
    radius = radius_km if radius_km is not None else settings.NEARBY_DEFAULT_RADIUS_KM
    return [trip_out(t) for t in trip_store.search_nearby_trips(lat, lng, radius)]


@router.get("/mine", response_model=list[TripResponse])
def my_trips(user_id: str = Depends(auth.get_current_user_id)):
    """Trips the caller created or has requested or joined, newest departure first."""
    return [trip_out(t) for t in trip_store.get_detailed_user_trips(user_id)]


@router.get("/summary", response_model=list[TripSummary])
def my_trip_summary(user_id: str = Depends(auth.get_current_user_id)):
    rows = trip_store.get_user_trips(user_id)
    return [TripSummary(**{**r, "departure_time": to_iso8601(r["departure_time"])}) for r in rows]


@router.get("/{trip_id}", response_model=TripResponse)
def get_trip(trip_id: str):
    return trip_out(trip_store.get_trip_details(trip_id))


@router.patch("/{trip_id}", response_model=TripResponse)
def update_trip(
    trip_id: str,
    body: TripUpdate,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(auth.get_current_user_id)
):
    """Edit a trip (creator only). Accepted participants are told about the change."""
    fields = body.model_dump(exclude_unset=True)
    result = participation.edit_trip(trip_id, user_id, fields)
    schedule_delivery(background_tasks, result.notifications)
    return trip_out(trip_store.get_trip_details(trip_id))


@router.post("/{trip_id}/cancel", response_model=TripResponse)
def cancel_trip(
    trip_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(auth.get_current_user_id)
):
    result = participation.cancel_trip(trip_id, user_id)
    schedule_delivery(background_tasks, result.notifications)
    return trip_out(trip_store.get_trip_details(trip_id))


@router.post("/{trip_id}/complete", response_model=TripResponse)
def complete_trip(
    trip_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(auth.get_current_user_id)
):
    result = participation.complete_trip(trip_id, user_id)
    schedule_delivery(background_tasks, result.notifications)
    return trip_out(trip_store.get_trip_details(trip_id))
