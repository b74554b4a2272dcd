"""Tests for the participation state machine and seat accounting."""
from unittest.mock import patch

import pytest

from buddyup import database as db
from buddyup.errors import CapacityExceeded, ConflictError, NotFoundError, PermissionDenied, ValidationError
from buddyup.services import participation, trip_store
from tests.conftest import create_profile, create_trip, get_trip, notifications_for, participant_rows


def assert_seats_consistent(trip_id: str):
    """available_seats always equals total_seats minus the accepted seats."""
    with db.begin() as connection:
        trip = trip_store.get_trip(connection, trip_id)
        accepted = trip_store.accepted_seat_total(connection, trip_id)
    assert trip["available_seats"] == trip["total_seats"] - accepted
    assert 0 <= trip["available_seats"] <= trip["total_seats"]


def join_and_accept(trip_id: str, user_id: str, creator_id: str, seats: int = 1) -> dict:
    participant = participation.request_to_join(trip_id, user_id, seats).record
    return participation.accept_trip_request(participant["id"], trip_id, creator_id).record


class TestScenarios:
    def test_accept_beyond_capacity_leaves_request_pending(self, creator, riders):
        """3 seats: X takes 2, then Y's request for 2 cannot be accepted."""
        x, y = riders[0], riders[1]
        trip = create_trip(creator, available_seats=3)

        px = participation.request_to_join(trip["id"], x, 2).record
        assert px["status"] == "pending"
        assert get_trip(trip["id"])["available_seats"] == 3

        accepted = participation.accept_trip_request(px["id"], trip["id"], creator).record
        assert accepted["status"] == "accepted"
        assert get_trip(trip["id"])["available_seats"] == 1

        # No seat check at request time
        py = participation.request_to_join(trip["id"], y, 2).record
        assert py["status"] == "pending"

        with pytest.raises(CapacityExceeded):
            participation.accept_trip_request(py["id"], trip["id"], creator)

        assert participant_rows(trip["id"], y)[0].status == "pending"
        assert get_trip(trip["id"])["available_seats"] == 1
        assert_seats_consistent(trip["id"])

    def test_leaving_returns_seats(self, creator, riders):
        x = riders[0]
        trip = create_trip(creator, available_seats=3)
        join_and_accept(trip["id"], x, creator, seats=2)
        assert get_trip(trip["id"])["available_seats"] == 1

        left = participation.leave_trip(trip["id"], x).record

        assert left["status"] == "left"
        assert left["left_at"] is not None
        assert get_trip(trip["id"])["available_seats"] == 3
        assert_seats_consistent(trip["id"])

    def test_cancel_notifies_each_participant_once(self, creator, riders):
        trip = create_trip(creator, available_seats=3)
        join_and_accept(trip["id"], riders[0], creator)
        join_and_accept(trip["id"], riders[1], creator)

        result = participation.cancel_trip(trip["id"], creator)

        assert result.record["status"] == "cancelled"
        assert len(result.notifications) == 2
        assert {n["user_id"] for n in result.notifications} == {riders[0], riders[1]}
        assert all(n["type"] == "trip_cancelled" for n in result.notifications)
        assert notifications_for(creator, "trip_cancelled") == []
        assert len(notifications_for(riders[0], "trip_cancelled")) == 1
        assert len(notifications_for(riders[1], "trip_cancelled")) == 1

    def test_rerequest_after_leaving_reuses_row(self, creator, riders):
        x = riders[0]
        trip = create_trip(creator)
        first = join_and_accept(trip["id"], x, creator)
        participation.leave_trip(trip["id"], x)

        again = participation.request_to_join(trip["id"], x, 1).record

        assert again["id"] == first["id"]
        assert again["status"] == "pending"
        assert again["left_at"] is None
        rows = participant_rows(trip["id"], x)
        assert len(rows) == 1
        assert rows[0].id == first["id"]


class TestRequestToJoin:
    def test_repeat_request_updates_same_row(self, creator, riders):
        trip = create_trip(creator, available_seats=3)
        first = participation.request_to_join(trip["id"], riders[0], 1)
        second = participation.request_to_join(trip["id"], riders[0], 2)

        assert second.record["id"] == first.record["id"]
        assert second.record["seats_requested"] == 2
        assert len(participant_rows(trip["id"], riders[0])) == 1
        # The creator hears about the request once
        assert len(first.notifications) == 1
        assert second.notifications == []
        assert len(notifications_for(creator, "trip_request")) == 1

    def test_request_while_accepted_is_unchanged(self, creator, riders):
        trip = create_trip(creator, available_seats=3)
        accepted = join_and_accept(trip["id"], riders[0], creator, seats=2)

        result = participation.request_to_join(trip["id"], riders[0], 1)

        assert result.record["id"] == accepted["id"]
        assert result.record["status"] == "accepted"
        assert result.record["seats_requested"] == 2
        assert result.notifications == []
        assert get_trip(trip["id"])["available_seats"] == 1

    def test_request_notifies_creator_with_requester_name(self, creator, riders):
        trip = create_trip(creator, title="Beach day")
        result = participation.request_to_join(trip["id"], riders[0], 2)

        assert len(result.notifications) == 1
        note = result.notifications[0]
        assert note["user_id"] == creator
        assert note["type"] == "trip_request"
        assert "Riley Rider" in note["body"]
        assert "Beach day" in note["body"]

    @pytest.mark.parametrize("seats", [0, -1, 4])
    def test_seat_count_out_of_range(self, creator, riders, seats):
        trip = create_trip(creator, available_seats=3)
        with pytest.raises(ValidationError):
            participation.request_to_join(trip["id"], riders[0], seats)
        assert participant_rows(trip["id"]) == []

    def test_creator_cannot_join_own_trip(self, creator):
        trip = create_trip(creator)
        with pytest.raises(ValidationError):
            participation.request_to_join(trip["id"], creator, 1)

    def test_unknown_trip(self, riders):
        with pytest.raises(NotFoundError):
            participation.request_to_join("missing-trip", riders[0], 1)

    def test_removed_user_cannot_request_again(self, creator, riders):
        trip = create_trip(creator)
        participant = participation.request_to_join(trip["id"], riders[0], 1).record
        participation.remove_participant(participant["id"], trip["id"], creator)

        with pytest.raises(ConflictError):
            participation.request_to_join(trip["id"], riders[0], 1)

    def test_rejected_user_can_request_again(self, creator, riders):
        trip = create_trip(creator)
        participant = participation.request_to_join(trip["id"], riders[0], 1).record
        participation.reject_trip_request(participant["id"], trip["id"], creator)

        again = participation.request_to_join(trip["id"], riders[0], 1)
        assert again.record["id"] == participant["id"]
        assert again.record["status"] == "pending"
        assert len(again.notifications) == 1


class TestStateMachine:
    def test_accept_twice_conflicts(self, creator, riders):
        trip = create_trip(creator, available_seats=3)
        accepted = join_and_accept(trip["id"], riders[0], creator)

        with pytest.raises(ConflictError):
            participation.accept_trip_request(accepted["id"], trip["id"], creator)
        assert get_trip(trip["id"])["available_seats"] == 2

    def test_accept_rejected_conflicts(self, creator, riders):
        trip = create_trip(creator)
        participant = participation.request_to_join(trip["id"], riders[0], 1).record
        participation.reject_trip_request(participant["id"], trip["id"], creator)

        with pytest.raises(ConflictError):
            participation.accept_trip_request(participant["id"], trip["id"], creator)

    def test_reject_accepted_conflicts(self, creator, riders):
        trip = create_trip(creator)
        accepted = join_and_accept(trip["id"], riders[0], creator)

        with pytest.raises(ConflictError):
            participation.reject_trip_request(accepted["id"], trip["id"], creator)

    def test_reject_does_not_touch_seats(self, creator, riders):
        trip = create_trip(creator, available_seats=3)
        participant = participation.request_to_join(trip["id"], riders[0], 2).record

        result = participation.reject_trip_request(participant["id"], trip["id"], creator)

        assert result.record["status"] == "rejected"
        assert get_trip(trip["id"])["available_seats"] == 3
        assert result.notifications[0]["type"] == "request_rejected"
        assert result.notifications[0]["user_id"] == riders[0]

    def test_withdrawing_pending_request_keeps_seats(self, creator, riders):
        trip = create_trip(creator, available_seats=3)
        join_and_accept(trip["id"], riders[0], creator)
        participation.request_to_join(trip["id"], riders[1], 2)

        result = participation.leave_trip(trip["id"], riders[1])

        assert result.record["status"] == "left"
        assert get_trip(trip["id"])["available_seats"] == 2
        assert_seats_consistent(trip["id"])

    def test_leave_twice_conflicts(self, creator, riders):
        trip = create_trip(creator)
        join_and_accept(trip["id"], riders[0], creator)
        participation.leave_trip(trip["id"], riders[0])

        with pytest.raises(ConflictError):
            participation.leave_trip(trip["id"], riders[0])
        assert get_trip(trip["id"])["available_seats"] == 3

    def test_leave_without_participation(self, creator, riders):
        trip = create_trip(creator)
        with pytest.raises(NotFoundError):
            participation.leave_trip(trip["id"], riders[0])

    def test_leave_notifies_creator(self, creator, riders):
        trip = create_trip(creator)
        join_and_accept(trip["id"], riders[0], creator)

        result = participation.leave_trip(trip["id"], riders[0])

        assert [n["user_id"] for n in result.notifications] == [creator]
        assert result.notifications[0]["type"] == "participant_left"

    def test_remove_accepted_returns_seats_and_sends_reason(self, creator, riders):
        trip = create_trip(creator, available_seats=3)
        accepted = join_and_accept(trip["id"], riders[0], creator, seats=2)

        result = participation.remove_participant(accepted["id"], trip["id"], creator, reason="No-show at pickup")

        assert result.record["status"] == "removed"
        assert get_trip(trip["id"])["available_seats"] == 3
        note = result.notifications[0]
        assert note["user_id"] == riders[0]
        assert note["type"] == "participant_removed"
        assert "Reason: No-show at pickup" in note["body"]

    def test_remove_pending_keeps_seats(self, creator, riders):
        trip = create_trip(creator, available_seats=3)
        participant = participation.request_to_join(trip["id"], riders[0], 2).record

        participation.remove_participant(participant["id"], trip["id"], creator)

        assert get_trip(trip["id"])["available_seats"] == 3

    def test_remove_rejected_conflicts(self, creator, riders):
        trip = create_trip(creator)
        participant = participation.request_to_join(trip["id"], riders[0], 1).record
        participation.reject_trip_request(participant["id"], trip["id"], creator)

        with pytest.raises(ConflictError):
            participation.remove_participant(participant["id"], trip["id"], creator)

    def test_only_creator_accepts(self, creator, riders):
        trip = create_trip(creator)
        participant = participation.request_to_join(trip["id"], riders[0], 1).record

        with pytest.raises(PermissionDenied):
            participation.accept_trip_request(participant["id"], trip["id"], riders[1])
        with pytest.raises(PermissionDenied):
            participation.remove_participant(participant["id"], trip["id"], riders[0])
        with pytest.raises(PermissionDenied):
            participation.cancel_trip(trip["id"], riders[0])

    def test_participant_of_another_trip(self, creator, riders):
        trip = create_trip(creator)
        other = create_trip(creator, title="Other trip")
        participant = participation.request_to_join(other["id"], riders[0], 1).record

        with pytest.raises(NotFoundError):
            participation.accept_trip_request(participant["id"], trip["id"], creator)


class TestTerminalTrips:
    def test_cancelled_trip_rejects_further_changes(self, creator, riders):
        trip = create_trip(creator)
        pending = participation.request_to_join(trip["id"], riders[0], 1).record
        participation.cancel_trip(trip["id"], creator)

        with pytest.raises(ConflictError):
            participation.request_to_join(trip["id"], riders[1], 1)
        with pytest.raises(ConflictError):
            participation.accept_trip_request(pending["id"], trip["id"], creator)
        with pytest.raises(ConflictError):
            participation.reject_trip_request(pending["id"], trip["id"], creator)
        with pytest.raises(ConflictError):
            participation.complete_trip(trip["id"], creator)
        with pytest.raises(ConflictError):
            participation.cancel_trip(trip["id"], creator)

        assert get_trip(trip["id"])["status"] == "cancelled"

    def test_cancel_notifies_every_participant_status(self, creator, riders):
        trip = create_trip(creator)
        join_and_accept(trip["id"], riders[0], creator)
        participation.request_to_join(trip["id"], riders[1], 1)
        rejected = participation.request_to_join(trip["id"], riders[2], 1).record
        participation.reject_trip_request(rejected["id"], trip["id"], creator)

        result = participation.cancel_trip(trip["id"], creator)

        assert sorted(n["user_id"] for n in result.notifications) == sorted(riders)

    def test_complete_notifies_accepted_only(self, creator, riders):
        trip = create_trip(creator)
        join_and_accept(trip["id"], riders[0], creator)
        join_and_accept(trip["id"], riders[1], creator)
        participation.request_to_join(trip["id"], riders[2], 1)

        result = participation.complete_trip(trip["id"], creator)

        assert result.record["status"] == "completed"
        assert sorted(n["user_id"] for n in result.notifications) == sorted(riders[:2])
        assert all(n["type"] == "trip_completed" for n in result.notifications)
        assert "review" in result.notifications[0]["body"]

        with pytest.raises(ConflictError):
            participation.leave_trip(trip["id"], riders[0])


class TestFanOutIsolation:
    def test_notification_failure_does_not_undo_accept(self, creator, riders):
        trip = create_trip(creator, available_seats=3)
        participant = participation.request_to_join(trip["id"], riders[0], 2).record

        with patch("buddyup.services.notifications.insert_notifications", side_effect=RuntimeError("store hiccup")):
            result = participation.accept_trip_request(participant["id"], trip["id"], creator)

        assert result.record["status"] == "accepted"
        assert result.notifications == []
        assert get_trip(trip["id"])["available_seats"] == 1
        assert notifications_for(riders[0], "request_accepted") == []


class TestEditTrip:
    def test_edit_notifies_accepted_participants(self, creator, riders):
        trip = create_trip(creator)
        join_and_accept(trip["id"], riders[0], creator)
        participation.request_to_join(trip["id"], riders[1], 1)

        result = participation.edit_trip(trip["id"], creator, {"pickup_location": "North Entrance"})

        assert result.record["pickup_location"] == "North Entrance"
        assert [n["user_id"] for n in result.notifications] == [riders[0]]
        assert result.notifications[0]["type"] == "trip_update"

    def test_participant_list_includes_every_status(self, creator, riders):
        trip = create_trip(creator)
        join_and_accept(trip["id"], riders[0], creator)
        rejected = participation.request_to_join(trip["id"], riders[1], 1).record
        participation.reject_trip_request(rejected["id"], trip["id"], creator)

        rows = participation.get_participants(trip["id"], creator)

        assert {r["status"] for r in rows} == {"accepted", "rejected"}
        assert all(r["user"]["full_name"] for r in rows)

    def test_participant_list_hidden_from_outsiders(self, creator):
        trip = create_trip(creator)
        outsider = create_profile("Olly Outsider")
        with pytest.raises(PermissionDenied):
            participation.get_participants(trip["id"], outsider)
