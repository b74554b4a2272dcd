"""Trip Store: trip records and the seat counter.

Every seat mutation is a single conditional UPDATE executed at the store, so
concurrent writers can never drive `available_seats` outside
[0, total_seats]. Callers pass the open connection so the seat change commits
or rolls back together with the participant status change.
"""
import logging
from datetime import datetime

import sqlalchemy

from buddyup import database as db
from buddyup.errors import CapacityExceeded, ConflictError, NotFoundError, PermissionDenied, ValidationError
from buddyup.services.realtime import INSERT, UPDATE
from buddyup.utils import bounding_box, haversine_km, new_id, parse_datetime, to_utc_naive, utcnow

log = logging.getLogger(__name__)

SERVICE_TYPES = ("uber", "bolt", "lyft", "other")

TRIP_ACTIVE = "active"
TRIP_IN_PROGRESS = "in_progress"  # reserved, never assigned
TRIP_COMPLETED = "completed"
TRIP_CANCELLED = "cancelled"
TERMINAL_TRIP_STATUSES = (TRIP_COMPLETED, TRIP_CANCELLED)

# Participant statuses that are shown on a trip and count as membership
LIVE_PARTICIPANT_STATUSES = ("pending", "accepted")

EDITABLE_FIELDS = (
    "title",
    "description",
    "pickup_location",
    "pickup_lat",
    "pickup_lng",
    "dropoff_location",
    "dropoff_lat",
    "dropoff_lng",
    "departure_time",
    "service_type",
    "estimated_cost",
)


# ==================== Validation ====================

def _validate_coordinates(lat, lng, label: str) -> None:
    if lat is None or lng is None:
        raise ValidationError(f"{label} coordinates are required")
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lng <= 180.0:
        raise ValidationError(f"{label} coordinates are out of range")


def _validate_location(text, label: str) -> None:
    if text is None or not str(text).strip():
        raise ValidationError(f"{label} location is required")


def validate_trip_fields(fields: dict, partial: bool = False) -> None:
    """Validate trip input. With partial=True only the keys present are checked."""
    if not partial or "title" in fields:
        if not fields.get("title") or not str(fields["title"]).strip():
            raise ValidationError("Title is required")
    if not partial or "pickup_location" in fields:
        _validate_location(fields.get("pickup_location"), "Pickup")
    if not partial or "dropoff_location" in fields:
        _validate_location(fields.get("dropoff_location"), "Dropoff")
    # Partial updates check coordinates against the stored pair instead
    if not partial:
        _validate_coordinates(fields.get("pickup_lat"), fields.get("pickup_lng"), "Pickup")
        _validate_coordinates(fields.get("dropoff_lat"), fields.get("dropoff_lng"), "Dropoff")
    if not partial or "service_type" in fields:
        if fields.get("service_type") not in SERVICE_TYPES:
            raise ValidationError(f"Service type must be one of {', '.join(SERVICE_TYPES)}")
    if not partial or "departure_time" in fields:
        if not isinstance(fields.get("departure_time"), datetime):
            raise ValidationError("Departure time is required")
    if fields.get("estimated_cost") is not None and fields["estimated_cost"] < 0:
        raise ValidationError("Estimated cost cannot be negative")


# ==================== Row helpers ====================

def _row_dict(row) -> dict:
    return dict(row._mapping) if row is not None else None


def get_trip(connection, trip_id: str) -> dict:
    """Fetch a trip row or raise NotFoundError."""
    row = connection.execute(
        sqlalchemy.text("SELECT * FROM trips WHERE id = :trip_id"),
        {"trip_id": trip_id}
    ).fetchone()
    if row is None:
        raise NotFoundError("Trip not found")
    return _row_dict(row)


def get_trip_for_creator(connection, trip_id: str, actor_id: str) -> dict:
    """Fetch a trip and check the actor created it."""
    trip = get_trip(connection, trip_id)
    if trip["creator_id"] != actor_id:
        raise PermissionDenied("Only the trip creator can do this")
    return trip


def member_ids(connection, trip_id: str) -> list[str]:
    """User ids with a pending or accepted participation on the trip."""
    rows = connection.execute(
        sqlalchemy.text(
            """
            SELECT user_id FROM trip_participants
            WHERE trip_id = :trip_id AND status IN ('pending', 'accepted')
            """
        ),
        {"trip_id": trip_id}
    ).fetchall()
    return [r.user_id for r in rows]


def record_trip_change(connection, trip_id: str, kind: str = UPDATE) -> None:
    """Queue a change notice for the trip row (published after commit)."""
    trip = get_trip(connection, trip_id)
    db.record_change(connection, "trips", kind, trip, member_ids=member_ids(connection, trip_id))


# ==================== Seat accounting ====================

def reserve_seats(connection, trip_id: str, seats: int) -> int:
    """Atomically take `seats` from the trip's free capacity.

    Raises CapacityExceeded if fewer seats are free, ConflictError if the trip is
    no longer active. Returns the new available_seats.
    """
    row = connection.execute(
        sqlalchemy.text(
            """
            UPDATE trips
            SET available_seats = available_seats - :seats, updated_at = :now
            WHERE id = :trip_id AND status = 'active' AND available_seats >= :seats
            RETURNING available_seats
            """
        ),
        {"trip_id": trip_id, "seats": seats, "now": utcnow()}
    ).first()

    if row is not None:
        return row.available_seats

    trip = get_trip(connection, trip_id)
    if trip["status"] != TRIP_ACTIVE:
        raise ConflictError(f"Trip is {trip['status']}")
    raise CapacityExceeded(
        f"Only {trip['available_seats']} seat(s) available, {seats} requested"
    )


def release_seats(connection, trip_id: str, seats: int) -> int:
    """Atomically return `seats` to the trip's free capacity.

    The update is bounded by total_seats; hitting the bound means the accounting
    is already inconsistent and the caller's transaction must roll back.
    """
    row = connection.execute(
        sqlalchemy.text(
            """
            UPDATE trips
            SET available_seats = available_seats + :seats, updated_at = :now
            WHERE id = :trip_id AND status = 'active' AND available_seats + :seats <= total_seats
            RETURNING available_seats
            """
        ),
        {"trip_id": trip_id, "seats": seats, "now": utcnow()}
    ).first()

    if row is not None:
        return row.available_seats

    trip = get_trip(connection, trip_id)
    if trip["status"] != TRIP_ACTIVE:
        raise ConflictError(f"Trip is {trip['status']}")
    log.error(
        f"[TripStore] Seat release would exceed capacity on trip {trip_id}: "
        f"available={trip['available_seats']} total={trip['total_seats']} releasing={seats}"
    )
    raise ConflictError("Seat accounting mismatch")


def accepted_seat_total(connection, trip_id: str) -> int:
    total = connection.execute(
        sqlalchemy.text(
            """
            SELECT COALESCE(SUM(seats_requested), 0) FROM trip_participants
            WHERE trip_id = :trip_id AND status = 'accepted'
            """
        ),
        {"trip_id": trip_id}
    ).scalar()
    return int(total or 0)


# ==================== Trip writes ====================

def create_trip(creator_id: str, fields: dict) -> dict:
    """Create an active trip. total_seats is fixed from the initial seat count."""
    validate_trip_fields(fields)
    seats = fields.get("available_seats")
    if not isinstance(seats, int) or seats < 1:
        raise ValidationError("A trip needs at least one seat")

    now = utcnow()
    trip_id = new_id()
    params = {
        "id": trip_id,
        "creator_id": creator_id,
        "title": fields["title"].strip(),
        "description": fields.get("description") or None,
        "pickup_location": fields["pickup_location"],
        "pickup_lat": fields["pickup_lat"],
        "pickup_lng": fields["pickup_lng"],
        "dropoff_location": fields["dropoff_location"],
        "dropoff_lat": fields["dropoff_lat"],
        "dropoff_lng": fields["dropoff_lng"],
        "departure_time": to_utc_naive(fields["departure_time"]),
        "service_type": fields["service_type"],
        "seats": seats,
        "estimated_cost": fields.get("estimated_cost"),
        "now": now,
    }

    with db.begin() as connection:
        creator = connection.execute(
            sqlalchemy.text("SELECT id FROM profiles WHERE id = :id"),
            {"id": creator_id}
        ).fetchone()
        if creator is None:
            raise NotFoundError("Creator profile not found")

        connection.execute(
            sqlalchemy.text(
                """
                INSERT INTO trips (id, creator_id, title, description, pickup_location, pickup_lat, pickup_lng,
                                   dropoff_location, dropoff_lat, dropoff_lng, departure_time, service_type,
                                   total_seats, available_seats, estimated_cost, status, created_at, updated_at)
                VALUES (:id, :creator_id, :title, :description, :pickup_location, :pickup_lat, :pickup_lng,
                        :dropoff_location, :dropoff_lat, :dropoff_lng, :departure_time, :service_type,
                        :seats, :seats, :estimated_cost, 'active', :now, :now)
                """
            ),
            params
        )
        record_trip_change(connection, trip_id, INSERT)
        trip = get_trip(connection, trip_id)

    log.info(f"[TripStore] Trip {trip_id} created by {creator_id} with {seats} seat(s)")
    return trip


def update_trip(trip_id: str, actor_id: str, fields: dict) -> dict:
    """Edit an active trip (creator only).

    total_seats may change as long as it still covers every accepted seat;
    available_seats is recomputed in the same statement.
    """
    updates = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS}
    new_total = fields.get("total_seats")
    validate_trip_fields(updates, partial=True)
    if new_total is not None and (not isinstance(new_total, int) or new_total < 1):
        raise ValidationError("A trip needs at least one seat")

    with db.begin() as connection:
        trip = get_trip_for_creator(connection, trip_id, actor_id)
        if trip["status"] != TRIP_ACTIVE:
            raise ConflictError(f"Trip is {trip['status']}")

        # Coordinates are validated as pairs against the stored values
        merged = {**trip, **updates}
        _validate_coordinates(merged["pickup_lat"], merged["pickup_lng"], "Pickup")
        _validate_coordinates(merged["dropoff_lat"], merged["dropoff_lng"], "Dropoff")

        if "departure_time" in updates:
            updates["departure_time"] = to_utc_naive(updates["departure_time"])
        if "title" in updates:
            updates["title"] = updates["title"].strip()

        if updates:
            assignments = ", ".join(f"{k} = :{k}" for k in updates)
            connection.execute(
                sqlalchemy.text(f"UPDATE trips SET {assignments}, updated_at = :now WHERE id = :trip_id"),
                {**updates, "now": utcnow(), "trip_id": trip_id}
            )

        # Reminder markers belong to one departure; a new one is reminded afresh
        if "departure_time" in updates and updates["departure_time"] != parse_datetime(trip["departure_time"]):
            connection.execute(
                sqlalchemy.text("DELETE FROM trip_reminders_sent WHERE trip_id = :trip_id"),
                {"trip_id": trip_id}
            )
            log.info(f"[TripStore] Trip {trip_id} rescheduled, reminder markers cleared")

        if new_total is not None and new_total != trip["total_seats"]:
            result = connection.execute(
                sqlalchemy.text(
                    """
                    UPDATE trips
                    SET total_seats = :total,
                        available_seats = :total - (total_seats - available_seats),
                        updated_at = :now
                    WHERE id = :trip_id AND status = 'active' AND :total >= total_seats - available_seats
                    """
                ),
                {"total": new_total, "now": utcnow(), "trip_id": trip_id}
            )
            if result.rowcount == 0:
                raise ValidationError("Total seats cannot be lower than the seats already accepted")

        record_trip_change(connection, trip_id)
        return get_trip(connection, trip_id)


def set_terminal_status(connection, trip_id: str, actor_id: str, status: str) -> dict:
    """Move an active trip to completed or cancelled (creator only, one way)."""
    if status not in TERMINAL_TRIP_STATUSES:
        raise ValidationError(f"Unknown terminal status '{status}'")

    get_trip_for_creator(connection, trip_id, actor_id)
    result = connection.execute(
        sqlalchemy.text(
            """
            UPDATE trips SET status = :status, updated_at = :now
            WHERE id = :trip_id AND status = 'active'
            """
        ),
        {"status": status, "now": utcnow(), "trip_id": trip_id}
    )
    if result.rowcount == 0:
        trip = get_trip(connection, trip_id)
        raise ConflictError(f"Trip is already {trip['status']}")

    record_trip_change(connection, trip_id)
    return get_trip(connection, trip_id)


# ==================== Reads ====================

def participants_with_users(connection, trip_id: str, statuses=LIVE_PARTICIPANT_STATUSES) -> list[dict]:
    placeholders = ", ".join(f":status_{i}" for i in range(len(statuses)))
    params = {"trip_id": trip_id}
    params.update({f"status_{i}": s for i, s in enumerate(statuses)})
    rows = connection.execute(
        sqlalchemy.text(
            f"""
            SELECT p.*, u.full_name, u.avatar_url, u.rating, u.total_trips
            FROM trip_participants p
            JOIN profiles u ON p.user_id = u.id
            WHERE p.trip_id = :trip_id AND p.status IN ({placeholders})
            ORDER BY p.joined_at
            """
        ),
        params
    ).fetchall()

    participants = []
    for r in rows:
        data = _row_dict(r)
        user = {
            "id": data["user_id"],
            "full_name": data.pop("full_name"),
            "avatar_url": data.pop("avatar_url"),
            "rating": data.pop("rating"),
            "total_trips": data.pop("total_trips"),
        }
        data["user"] = user
        participants.append(data)
    return participants


def get_profile(connection, user_id: str) -> dict | None:
    row = connection.execute(
        sqlalchemy.text(
            "SELECT id, full_name, avatar_url, rating, total_trips FROM profiles WHERE id = :id"
        ),
        {"id": user_id}
    ).fetchone()
    return _row_dict(row)


def load_trip_aggregate(connection, trip_id: str) -> dict:
    """Trip + creator profile + pending/accepted participants with their profiles."""
    trip = get_trip(connection, trip_id)
    trip["creator"] = get_profile(connection, trip["creator_id"])
    trip["participants"] = participants_with_users(connection, trip_id)
    return trip


def get_trip_details(trip_id: str) -> dict:
    with db.begin() as connection:
        return load_trip_aggregate(connection, trip_id)


def get_detailed_user_trips(user_id: str) -> list[dict]:
    """Trips the user created plus trips they requested or joined, newest departure first."""
    with db.begin() as connection:
        created = connection.execute(
            sqlalchemy.text("SELECT id FROM trips WHERE creator_id = :user_id"),
            {"user_id": user_id}
        ).fetchall()
        joined = connection.execute(
            sqlalchemy.text(
                """
                SELECT trip_id, status FROM trip_participants
                WHERE user_id = :user_id AND status IN ('pending', 'accepted')
                """
            ),
            {"user_id": user_id}
        ).fetchall()

        trips = []
        seen = set()
        for row in created:
            trip = load_trip_aggregate(connection, row.id)
            trip["user_participant_status"] = None
            trips.append(trip)
            seen.add(row.id)
        for row in joined:
            if row.trip_id in seen:
                continue
            trip = load_trip_aggregate(connection, row.trip_id)
            trip["user_participant_status"] = row.status
            trips.append(trip)
            seen.add(row.trip_id)

    trips.sort(key=lambda t: str(t["departure_time"]), reverse=True)
    return trips


def get_user_trips(user_id: str) -> list[dict]:
    """Lightweight listing: one row per trip with the user's role in it."""
    with db.begin() as connection:
        rows = connection.execute(
            sqlalchemy.text(
                """
                SELECT t.id, t.title, t.departure_time, t.status, t.available_seats, t.total_seats,
                       'creator' AS role, NULL AS participant_status
                FROM trips t
                WHERE t.creator_id = :user_id
                UNION ALL
                SELECT t.id, t.title, t.departure_time, t.status, t.available_seats, t.total_seats,
                       'participant' AS role, p.status AS participant_status
                FROM trips t
                JOIN trip_participants p ON p.trip_id = t.id
                WHERE p.user_id = :user_id AND p.status IN ('pending', 'accepted')
                ORDER BY departure_time DESC
                """
            ),
            {"user_id": user_id}
        ).fetchall()
    return [_row_dict(r) for r in rows]


def search_nearby_trips(lat: float, lng: float, radius_km: float) -> list[dict]:
    """Active trips with free seats whose pickup lies within radius_km, nearest first."""
    if radius_km is None or radius_km <= 0:
        raise ValidationError("Radius must be positive")
    _validate_coordinates(lat, lng, "Search")

    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_km)
    with db.begin() as connection:
        rows = connection.execute(
            sqlalchemy.text(
                """
                SELECT t.*, u.full_name AS creator_name, u.avatar_url AS creator_avatar_url,
                       u.rating AS creator_rating
                FROM trips t
                JOIN profiles u ON t.creator_id = u.id
                WHERE t.status = 'active' AND t.available_seats > 0 AND t.departure_time > :now
                  AND t.pickup_lat BETWEEN :min_lat AND :max_lat
                  AND t.pickup_lng BETWEEN :min_lng AND :max_lng
                """
            ),
            {
                "now": utcnow(),
                "min_lat": min_lat,
                "max_lat": max_lat,
                "min_lng": min_lng,
                "max_lng": max_lng,
            }
        ).fetchall()

    results = []
    for r in rows:
        trip = _row_dict(r)
        distance = haversine_km(lat, lng, trip["pickup_lat"], trip["pickup_lng"])
        if distance > radius_km:
            continue
        trip["distance_km"] = round(distance, 3)
        trip["creator"] = {
            "id": trip["creator_id"],
            "full_name": trip.pop("creator_name"),
            "avatar_url": trip.pop("creator_avatar_url"),
            "rating": trip.pop("creator_rating"),
        }
        results.append(trip)

    results.sort(key=lambda t: t["distance_km"])
    log.info(f"[TripStore] Nearby search ({lat:.4f}, {lng:.4f}) r={radius_km}km -> {len(results)} trips")
    return results
