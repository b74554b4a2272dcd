"""Post-trip reviews between members of a completed trip."""
from __future__ import annotations

import json
import logging

import sqlalchemy
from sqlalchemy import exc as sa_exc

from buddyup import database as db
from buddyup.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from buddyup.services import trip_store
from buddyup.utils import new_id, utcnow

log = logging.getLogger(__name__)

REVIEW_TAGS = ("punctual", "friendly", "clean", "communicative", "safe", "respectful")


def parse_json_field(value):
    """Tags come back parsed on Postgres and as text on SQLite."""
    if value is None or isinstance(value, list):
        return value
    return json.loads(value)


def _trip_members(connection, trip: dict) -> list[str]:
    rows = connection.execute(
        sqlalchemy.text(
            "SELECT user_id FROM trip_participants WHERE trip_id = :trip_id AND status = 'accepted'"
        ),
        {"trip_id": trip["id"]}
    ).fetchall()
    return [trip["creator_id"]] + [r.user_id for r in rows]


def submit_review(
    trip_id: str,
    reviewer_id: str,
    reviewee_id: str,
    rating: int,
    comment: str | None = None,
    tags: list[str] | None = None,
) -> dict:
    """Record one review and refresh the reviewee's rating and trip count."""
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be a whole number from 1 to 5")
    if reviewer_id == reviewee_id:
        raise ValidationError("You cannot review yourself")
    unknown = [t for t in tags or [] if t not in REVIEW_TAGS]
    if unknown:
        raise ValidationError(f"Unknown review tag(s): {', '.join(unknown)}")

    with db.begin() as connection:
        trip = trip_store.get_trip(connection, trip_id)
        if trip["status"] != trip_store.TRIP_COMPLETED:
            raise ConflictError("Reviews open once the trip is completed")
        members = _trip_members(connection, trip)
        if reviewer_id not in members:
            raise PermissionDenied("Only trip members can leave reviews")
        if reviewee_id not in members:
            raise ValidationError("That user was not on this trip")

        review = {
            "id": new_id(),
            "trip_id": trip_id,
            "reviewer_id": reviewer_id,
            "reviewee_id": reviewee_id,
            "rating": rating,
            "comment": (comment or "").strip() or None,
            "tags": list(tags) if tags else None,
            "created_at": utcnow(),
        }
        existing = connection.execute(
            sqlalchemy.text(
                """
                SELECT id FROM reviews
                WHERE trip_id = :trip_id AND reviewer_id = :reviewer_id AND reviewee_id = :reviewee_id
                """
            ),
            {"trip_id": trip_id, "reviewer_id": reviewer_id, "reviewee_id": reviewee_id}
        ).fetchone()
        if existing is not None:
            raise ConflictError("You already reviewed this user for this trip")

        try:
            connection.execute(
                sqlalchemy.text(
                    """
                    INSERT INTO reviews (id, trip_id, reviewer_id, reviewee_id, rating, comment, tags, created_at)
                    VALUES (:id, :trip_id, :reviewer_id, :reviewee_id, :rating, :comment, :tags, :created_at)
                    """
                ),
                {**review, "tags": json.dumps(review["tags"]) if review["tags"] is not None else None}
            )
        except sa_exc.IntegrityError as e:
            raise ConflictError("You already reviewed this user for this trip") from e

        # Average over every review the user has received
        connection.execute(
            sqlalchemy.text(
                """
                UPDATE profiles
                SET total_trips = total_trips + 1,
                    rating = (SELECT ROUND(AVG(rating) * 100) / 100.0 FROM reviews WHERE reviewee_id = :reviewee_id)
                WHERE id = :reviewee_id
                """
            ),
            {"reviewee_id": reviewee_id}
        )

    log.info(f"[Reviews] {reviewer_id} rated {reviewee_id} {rating}/5 for trip {trip_id}")
    return review


def get_user_reviews(user_id: str, limit: int = 10) -> list[dict]:
    """Most recent reviews received by a user, with reviewer and trip summary."""
    with db.begin() as connection:
        rows = connection.execute(
            sqlalchemy.text(
                """
                SELECT r.*, u.full_name AS reviewer_name, u.avatar_url AS reviewer_avatar_url,
                       t.title AS trip_title, t.departure_time AS trip_departure_time
                FROM reviews r
                JOIN profiles u ON u.id = r.reviewer_id
                JOIN trips t ON t.id = r.trip_id
                WHERE r.reviewee_id = :user_id
                ORDER BY r.created_at DESC
                LIMIT :limit
                """
            ),
            {"user_id": user_id, "limit": limit}
        ).fetchall()

    result = []
    for r in rows:
        data = dict(r._mapping)
        data["tags"] = parse_json_field(data["tags"])
        data["reviewer"] = {
            "id": data["reviewer_id"],
            "full_name": data.pop("reviewer_name"),
            "avatar_url": data.pop("reviewer_avatar_url"),
        }
        data["trip"] = {"title": data.pop("trip_title"), "departure_time": data.pop("trip_departure_time")}
        result.append(data)
    return result


def get_reviewable_participants(trip_id: str, user_id: str) -> list[dict]:
    """Other members of a completed trip the user has not reviewed yet."""
    with db.begin() as connection:
        trip = trip_store.get_trip(connection, trip_id)
        if trip["status"] != trip_store.TRIP_COMPLETED:
            return []
        members = _trip_members(connection, trip)
        if user_id not in members:
            raise PermissionDenied("Only trip members can leave reviews")

        reviewed = {
            r.reviewee_id
            for r in connection.execute(
                sqlalchemy.text(
                    "SELECT reviewee_id FROM reviews WHERE trip_id = :trip_id AND reviewer_id = :user_id"
                ),
                {"trip_id": trip_id, "user_id": user_id}
            ).fetchall()
        }

        people = []
        for member_id in dict.fromkeys(members):
            if member_id == user_id or member_id in reviewed:
                continue
            profile = trip_store.get_profile(connection, member_id)
            people.append({
                "user_id": member_id,
                "role": "creator" if member_id == trip["creator_id"] else "participant",
                "user": profile,
            })
    return people


def get_user_stats(user_id: str) -> dict:
    with db.begin() as connection:
        profile = trip_store.get_profile(connection, user_id)
        if profile is None:
            raise NotFoundError("User not found")
        trips_created = connection.execute(
            sqlalchemy.text("SELECT COUNT(*) FROM trips WHERE creator_id = :user_id"),
            {"user_id": user_id}
        ).scalar() or 0
        trips_joined = connection.execute(
            sqlalchemy.text(
                "SELECT COUNT(*) FROM trip_participants WHERE user_id = :user_id AND status = 'accepted'"
            ),
            {"user_id": user_id}
        ).scalar() or 0
        review_count = connection.execute(
            sqlalchemy.text("SELECT COUNT(*) FROM reviews WHERE reviewee_id = :user_id"),
            {"user_id": user_id}
        ).scalar() or 0

    return {
        "profile": profile,
        "trips_created": int(trips_created),
        "trips_joined": int(trips_joined),
        "review_count": int(review_count),
        "total_trips": int(trips_created) + int(trips_joined),
    }
