"""Participation Manager: the seat-allocation state machine.

Participant: pending -> accepted | rejected, accepted -> left | removed.
A pending request may also be withdrawn (left) or removed; that never touches
the seat counter because nothing was reserved for it.

Every transition runs in one transaction together with its seat mutation.
Notifications are written afterwards by the fan-out and are returned to the
caller so it can schedule push delivery.
"""
from __future__ import annotations

import logging
from typing import NamedTuple

import sqlalchemy

from buddyup import database as db
from buddyup.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from buddyup.services import chat, notifications
from buddyup.services import trip_store
from buddyup.services.realtime import INSERT, UPDATE
from buddyup.utils import new_id, utcnow

log = logging.getLogger(__name__)

PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"
LEFT = "left"
REMOVED = "removed"

PARTICIPANT_STATUSES = (PENDING, ACCEPTED, REJECTED, LEFT, REMOVED)


class Transition(NamedTuple):
    """Outcome of a state transition: the changed record and the notifications it produced."""
    record: dict
    notifications: list[dict]


def _participant_row(connection, participant_id: str, trip_id: str) -> dict:
    row = connection.execute(
        sqlalchemy.text(
            "SELECT * FROM trip_participants WHERE id = :participant_id AND trip_id = :trip_id"
        ),
        {"participant_id": participant_id, "trip_id": trip_id}
    ).fetchone()
    if row is None:
        raise NotFoundError("Participant not found")
    return dict(row._mapping)


def _participant_for_user(connection, trip_id: str, user_id: str) -> dict | None:
    row = connection.execute(
        sqlalchemy.text(
            "SELECT * FROM trip_participants WHERE trip_id = :trip_id AND user_id = :user_id"
        ),
        {"trip_id": trip_id, "user_id": user_id}
    ).fetchone()
    return dict(row._mapping) if row is not None else None


def _display_name(connection, user_id: str) -> str | None:
    return connection.execute(
        sqlalchemy.text("SELECT full_name FROM profiles WHERE id = :user_id"),
        {"user_id": user_id}
    ).scalar()


def _require_active(trip: dict) -> None:
    if trip["status"] != trip_store.TRIP_ACTIVE:
        raise ConflictError(f"Trip is {trip['status']}")


def _record_participant_change(connection, trip: dict, participant: dict, kind: str = UPDATE) -> None:
    db.record_change(connection, "trip_participants", kind, participant, creator_id=trip["creator_id"])


def _transition_from(
    connection,
    participant_id: str,
    trip_id: str,
    from_statuses: tuple[str, ...],
    to_status: str,
    set_left_at: bool = False,
) -> tuple[dict, str]:
    """Conditionally move a participant between statuses.

    Returns (updated row, previous status). The WHERE clause re-checks the
    current status so two racing transitions cannot both apply.
    """
    current = _participant_row(connection, participant_id, trip_id)
    if current["status"] not in from_statuses:
        raise ConflictError(f"Participant is {current['status']}")

    left_at = ", left_at = :now" if set_left_at else ""
    row = connection.execute(
        sqlalchemy.text(
            f"""
            UPDATE trip_participants
            SET status = :to_status{left_at}
            WHERE id = :participant_id AND trip_id = :trip_id AND status = :from_status
            RETURNING *
            """
        ),
        {
            "to_status": to_status,
            "now": utcnow(),
            "participant_id": participant_id,
            "trip_id": trip_id,
            "from_status": current["status"],
        }
    ).first()
    if row is None:
        raise ConflictError("Participant changed while updating, refresh and try again")
    return dict(row._mapping), current["status"]


# ==================== Operations ====================

def request_to_join(trip_id: str, user_id: str, seats_requested: int) -> Transition:
    """Create or reset the user's participation on the trip to pending.

    Safe to retry: a second call updates the same row. An accepted participation
    is returned unchanged. Seats are not reserved until the creator accepts.
    """
    if isinstance(seats_requested, bool) or not isinstance(seats_requested, int):
        raise ValidationError("Seats requested must be a whole number")

    with db.begin() as connection:
        trip = trip_store.get_trip(connection, trip_id)
        _require_active(trip)
        if trip["creator_id"] == user_id:
            raise ValidationError("You cannot request to join your own trip")
        if seats_requested < 1 or seats_requested > trip["total_seats"]:
            raise ValidationError(f"Seats requested must be between 1 and {trip['total_seats']}")

        requester = connection.execute(
            sqlalchemy.text("SELECT full_name FROM profiles WHERE id = :user_id"),
            {"user_id": user_id}
        ).fetchone()
        if requester is None:
            raise NotFoundError("User profile not found")
        requester_name = requester.full_name

        previous = _participant_for_user(connection, trip_id, user_id)
        row = connection.execute(
            sqlalchemy.text(
                """
                INSERT INTO trip_participants (id, trip_id, user_id, seats_requested, status, payment_status, joined_at)
                VALUES (:id, :trip_id, :user_id, :seats, 'pending', 'unpaid', :now)
                ON CONFLICT (trip_id, user_id) DO UPDATE
                SET status = 'pending',
                    seats_requested = excluded.seats_requested,
                    joined_at = excluded.joined_at,
                    left_at = NULL
                WHERE trip_participants.status IN ('pending', 'left', 'rejected')
                RETURNING *
                """
            ),
            {"id": new_id(), "trip_id": trip_id, "user_id": user_id, "seats": seats_requested, "now": utcnow()}
        ).first()

        if row is None:
            existing = _participant_for_user(connection, trip_id, user_id)
            if existing["status"] == ACCEPTED:
                log.info(f"[Participants] User {user_id} already accepted on trip {trip_id}")
                return Transition(existing, [])
            raise ConflictError("You were removed from this trip and cannot request again")

        participant = dict(row._mapping)
        _record_participant_change(connection, trip, participant, INSERT if previous is None else UPDATE)

    log.info(f"[Participants] User {user_id} requested {seats_requested} seat(s) on trip {trip_id}")

    # A retried pending request does not ping the creator again
    if previous is not None and previous["status"] == PENDING:
        return Transition(participant, [])
    sent = notifications.notify_trip_request(trip, requester_name, seats_requested)
    return Transition(participant, sent)


def accept_trip_request(participant_id: str, trip_id: str, actor_id: str) -> Transition:
    """Accept a pending request and reserve its seats in the same transaction.

    CapacityExceeded leaves the participant pending and the seat counter untouched.
    The "joined the trip" chat line commits with the acceptance.
    """
    with db.begin() as connection:
        trip = trip_store.get_trip_for_creator(connection, trip_id, actor_id)
        _require_active(trip)
        participant, _ = _transition_from(connection, participant_id, trip_id, (PENDING,), ACCEPTED)
        available = trip_store.reserve_seats(connection, trip_id, participant["seats_requested"])
        _record_participant_change(connection, trip, participant)
        trip_store.record_trip_change(connection, trip_id)
        rider_name = _display_name(connection, participant["user_id"]) or "A new rider"
        chat.send_system_message(connection, trip_id, f"{rider_name} joined the trip")

    log.info(
        f"[Participants] Accepted {participant_id} on trip {trip_id} "
        f"({participant['seats_requested']} seat(s), {available} left)"
    )
    sent = notifications.notify_request_accepted(trip, participant["user_id"])
    return Transition(participant, sent)


def reject_trip_request(participant_id: str, trip_id: str, actor_id: str) -> Transition:
    with db.begin() as connection:
        trip = trip_store.get_trip_for_creator(connection, trip_id, actor_id)
        _require_active(trip)
        participant, _ = _transition_from(connection, participant_id, trip_id, (PENDING,), REJECTED)
        _record_participant_change(connection, trip, participant)

    log.info(f"[Participants] Rejected {participant_id} on trip {trip_id}")
    sent = notifications.notify_request_rejected(trip, participant["user_id"])
    return Transition(participant, sent)


def leave_trip(trip_id: str, user_id: str) -> Transition:
    """Leave a trip, or withdraw a pending request.

    Seats are returned only when the participant had been accepted.
    """
    with db.begin() as connection:
        trip = trip_store.get_trip(connection, trip_id)
        _require_active(trip)
        existing = _participant_for_user(connection, trip_id, user_id)
        if existing is None:
            raise NotFoundError("You are not part of this trip")

        participant, previous = _transition_from(
            connection, existing["id"], trip_id, (PENDING, ACCEPTED), LEFT, set_left_at=True
        )
        if previous == ACCEPTED:
            trip_store.release_seats(connection, trip_id, participant["seats_requested"])
            trip_store.record_trip_change(connection, trip_id)
        _record_participant_change(connection, trip, participant)
        leaver_name = _display_name(connection, user_id)

    log.info(f"[Participants] User {user_id} left trip {trip_id} (was {previous})")
    sent = notifications.notify_participant_left(trip, user_id, leaver_name)
    return Transition(participant, sent)


def remove_participant(participant_id: str, trip_id: str, actor_id: str, reason: str | None = None) -> Transition:
    """Creator removes a participant; accepted seats go back to the trip."""
    with db.begin() as connection:
        trip = trip_store.get_trip_for_creator(connection, trip_id, actor_id)
        _require_active(trip)
        participant, previous = _transition_from(
            connection, participant_id, trip_id, (PENDING, ACCEPTED), REMOVED, set_left_at=True
        )
        if previous == ACCEPTED:
            trip_store.release_seats(connection, trip_id, participant["seats_requested"])
            trip_store.record_trip_change(connection, trip_id)
        _record_participant_change(connection, trip, participant)

    log.info(f"[Participants] Removed {participant_id} from trip {trip_id} (was {previous})")
    reason = reason.strip() if reason else None
    sent = notifications.notify_participant_removed(trip, participant["user_id"], reason)
    return Transition(participant, sent)


def _participant_user_ids(connection, trip_id: str, statuses: tuple[str, ...] | None = None) -> list[str]:
    if statuses is None:
        rows = connection.execute(
            sqlalchemy.text("SELECT user_id FROM trip_participants WHERE trip_id = :trip_id ORDER BY joined_at"),
            {"trip_id": trip_id}
        ).fetchall()
    else:
        placeholders = ", ".join(f":status_{i}" for i in range(len(statuses)))
        params = {"trip_id": trip_id}
        params.update({f"status_{i}": s for i, s in enumerate(statuses)})
        rows = connection.execute(
            sqlalchemy.text(
                f"""
                SELECT user_id FROM trip_participants
                WHERE trip_id = :trip_id AND status IN ({placeholders})
                ORDER BY joined_at
                """
            ),
            params
        ).fetchall()
    return [r.user_id for r in rows]


def cancel_trip(trip_id: str, actor_id: str) -> Transition:
    """Cancel an active trip. Every participant row's user is told, whatever its status."""
    with db.begin() as connection:
        trip = trip_store.set_terminal_status(connection, trip_id, actor_id, trip_store.TRIP_CANCELLED)
        recipients = _participant_user_ids(connection, trip_id)

    log.info(f"[Participants] Trip {trip_id} cancelled by {actor_id}")
    sent = notifications.notify_trip_cancelled(trip, recipients)
    return Transition(trip, sent)


def complete_trip(trip_id: str, actor_id: str) -> Transition:
    """Complete an active trip and ask accepted participants for reviews."""
    with db.begin() as connection:
        trip = trip_store.set_terminal_status(connection, trip_id, actor_id, trip_store.TRIP_COMPLETED)
        recipients = _participant_user_ids(connection, trip_id, (ACCEPTED,))

    log.info(f"[Participants] Trip {trip_id} completed by {actor_id}")
    sent = notifications.notify_trip_completed(trip, recipients)
    return Transition(trip, sent)


def edit_trip(trip_id: str, actor_id: str, fields: dict) -> Transition:
    """Apply a creator edit and tell accepted participants the trip changed."""
    trip = trip_store.update_trip(trip_id, actor_id, fields)
    with db.begin() as connection:
        recipients = _participant_user_ids(connection, trip_id, (ACCEPTED,))
    sent = notifications.notify_trip_updated(trip, recipients)
    return Transition(trip, sent)


def get_participants(trip_id: str, actor_id: str) -> list[dict]:
    """Participant rows of every status, visible to the creator and the trip's members."""
    with db.begin() as connection:
        trip = trip_store.get_trip(connection, trip_id)
        if actor_id != trip["creator_id"] and actor_id not in trip_store.member_ids(connection, trip_id):
            raise PermissionDenied("Only trip members can see the participant list")
        return trip_store.participants_with_users(connection, trip_id, PARTICIPANT_STATUSES)
