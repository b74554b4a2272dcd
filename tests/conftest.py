"""Shared fixtures. The store is a throwaway SQLite file, recreated for every test."""
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="buddyup-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["PUSH_BACKEND"] = "dummy"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["TIMEZONE"] = "UTC"

from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
import sqlalchemy  # noqa: E402
from jose import jwt  # noqa: E402

from buddyup import database as db  # noqa: E402
from buddyup.config import settings  # noqa: E402
from buddyup.services import trip_store  # noqa: E402
from buddyup.utils import new_id, utcnow  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_schema():
    db.drop_tables()
    db.create_tables()
    yield


def create_profile(full_name: str = "Test User", push_token: str | None = None) -> str:
    user_id = new_id()
    with db.begin() as connection:
        connection.execute(
            sqlalchemy.text(
                """
                INSERT INTO profiles (id, email, full_name, rating, total_trips, push_token, created_at)
                VALUES (:id, :email, :full_name, 0, 0, :push_token, :now)
                """
            ),
            {
                "id": user_id,
                "email": f"{full_name.lower().replace(' ', '.')}@example.com",
                "full_name": full_name,
                "push_token": push_token,
                "now": utcnow(),
            }
        )
    return user_id


def trip_fields(**overrides) -> dict:
    fields = {
        "title": "Airport run",
        "description": "Sharing an Uber to the airport",
        "pickup_location": "Central Station",
        "pickup_lat": 52.3791,
        "pickup_lng": 4.9003,
        "dropoff_location": "Schiphol Airport",
        "dropoff_lat": 52.3105,
        "dropoff_lng": 4.7683,
        "departure_time": utcnow() + timedelta(days=2),
        "service_type": "uber",
        "available_seats": 3,
        "estimated_cost": 45.0,
    }
    fields.update(overrides)
    return fields


def create_trip(creator_id: str, **overrides) -> dict:
    return trip_store.create_trip(creator_id, trip_fields(**overrides))


def get_trip(trip_id: str) -> dict:
    with db.begin() as connection:
        return trip_store.get_trip(connection, trip_id)


def participant_rows(trip_id: str, user_id: str | None = None) -> list:
    query = "SELECT * FROM trip_participants WHERE trip_id = :trip_id"
    params = {"trip_id": trip_id}
    if user_id is not None:
        query += " AND user_id = :user_id"
        params["user_id"] = user_id
    with db.begin() as connection:
        return connection.execute(sqlalchemy.text(query), params).fetchall()


def notifications_for(user_id: str, notification_type: str | None = None) -> list:
    query = "SELECT * FROM notifications WHERE user_id = :user_id"
    params = {"user_id": user_id}
    if notification_type is not None:
        query += " AND type = :type"
        params["type"] = notification_type
    with db.begin() as connection:
        return connection.execute(sqlalchemy.text(query), params).fetchall()


def make_token(user_id: str, minutes: int = 30) -> str:
    payload = {
        "sub": user_id,
        "typ": "access",
        "exp": datetime.now(UTC) + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture
def creator():
    return create_profile("Casey Creator")


@pytest.fixture
def riders():
    return [create_profile(name) for name in ("Riley Rider", "Sam Seat", "Alex Aisle")]
