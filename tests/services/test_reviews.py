"""Tests for post-trip reviews"""
import pytest

from buddyup.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from buddyup.services import participation, reviews
from tests.conftest import create_trip


@pytest.fixture
def completed_trip(creator, riders):
    """Completed trip with riders[0] and riders[1] accepted; riders[2] was rejected."""
    trip = create_trip(creator)
    for rider in riders[:2]:
        participant = participation.request_to_join(trip["id"], rider, 1).record
        participation.accept_trip_request(participant["id"], trip["id"], creator)
    rejected = participation.request_to_join(trip["id"], riders[2], 1).record
    participation.reject_trip_request(rejected["id"], trip["id"], creator)
    participation.complete_trip(trip["id"], creator)
    return trip


def test_submit_review_updates_profile(completed_trip, creator, riders):
    reviews.submit_review(completed_trip["id"], riders[0], creator, 5, "Great driver", ["punctual", "friendly"])
    reviews.submit_review(completed_trip["id"], riders[1], creator, 4)

    stats = reviews.get_user_stats(creator)
    assert stats["profile"]["rating"] == 4.5
    assert stats["profile"]["total_trips"] == 2
    assert stats["review_count"] == 2
    assert stats["trips_created"] == 1

    received = reviews.get_user_reviews(creator)
    assert len(received) == 2
    by_reviewer = {r["reviewer_id"]: r for r in received}
    assert by_reviewer[riders[0]]["tags"] == ["punctual", "friendly"]
    assert by_reviewer[riders[0]]["reviewer"]["full_name"] == "Riley Rider"
    assert by_reviewer[riders[1]]["tags"] is None
    assert by_reviewer[riders[1]]["trip"]["title"] == "Airport run"


def test_duplicate_review_conflicts(completed_trip, creator, riders):
    reviews.submit_review(completed_trip["id"], riders[0], creator, 5)
    with pytest.raises(ConflictError):
        reviews.submit_review(completed_trip["id"], riders[0], creator, 3)


def test_reviews_require_completed_trip(creator, riders):
    trip = create_trip(creator)
    participant = participation.request_to_join(trip["id"], riders[0], 1).record
    participation.accept_trip_request(participant["id"], trip["id"], creator)

    with pytest.raises(ConflictError):
        reviews.submit_review(trip["id"], riders[0], creator, 5)
    assert reviews.get_reviewable_participants(trip["id"], riders[0]) == []


@pytest.mark.parametrize("rating", [0, 6, 4.5, True])
def test_rating_must_be_one_to_five(completed_trip, creator, riders, rating):
    with pytest.raises(ValidationError):
        reviews.submit_review(completed_trip["id"], riders[0], creator, rating)


def test_review_input_validation(completed_trip, creator, riders):
    with pytest.raises(ValidationError):
        reviews.submit_review(completed_trip["id"], riders[0], riders[0], 5)
    with pytest.raises(ValidationError):
        reviews.submit_review(completed_trip["id"], riders[0], creator, 5, tags=["rude"])
    # Rejected requester was never a member
    with pytest.raises(ValidationError):
        reviews.submit_review(completed_trip["id"], riders[0], riders[2], 2)
    with pytest.raises(PermissionDenied):
        reviews.submit_review(completed_trip["id"], riders[2], creator, 2)


def test_reviewable_participants(completed_trip, creator, riders):
    people = reviews.get_reviewable_participants(completed_trip["id"], riders[0])
    assert [(p["user_id"], p["role"]) for p in people] == [(creator, "creator"), (riders[1], "participant")]
    assert people[0]["user"]["full_name"] == "Casey Creator"

    reviews.submit_review(completed_trip["id"], riders[0], creator, 5)
    people = reviews.get_reviewable_participants(completed_trip["id"], riders[0])
    assert [p["user_id"] for p in people] == [riders[1]]

    with pytest.raises(PermissionDenied):
        reviews.get_reviewable_participants(completed_trip["id"], riders[2])


def test_user_stats_unknown_user():
    with pytest.raises(NotFoundError):
        reviews.get_user_stats("no-such-user")
