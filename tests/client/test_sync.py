"""Tests for client-side optimistic updates and refetch reconciliation"""
import asyncio
import copy
import itertools

import pytest
import websockets

from buddyup.client.sync import AggregateSync, TripSync
from buddyup.errors import CapacityExceeded, TransientStoreError


def participant(pid: str, status: str, seats: int = 1) -> dict:
    return {"id": pid, "user_id": f"user-{pid}", "status": status, "seats_requested": seats}


def trip_state(participants: list[dict], total: int = 3, available: int = 3) -> dict:
    return {"id": "t1", "total_seats": total, "available_seats": available, "participants": participants}


class FakeClient:
    """Serves one trip aggregate and applies actions to it like the server would."""

    def __init__(self, state: dict):
        self.state = state
        self.fetches = 0
        self.action_gate: asyncio.Event | None = None
        self.fetch_gate: asyncio.Event | None = None
        self.fail: Exception | None = None
        self.fetch_error: Exception | None = None

    async def get_trip_details(self, trip_id: str) -> dict:
        self.fetches += 1
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        return copy.deepcopy(self.state)

    async def _act(self, participant_id: str, status: str) -> dict:
        if self.action_gate is not None:
            await self.action_gate.wait()
        if self.fail is not None:
            raise self.fail
        p = next(p for p in self.state["participants"] if p["id"] == participant_id)
        if status == "accepted":
            self.state["available_seats"] -= p["seats_requested"]
        elif status == "removed" and p["status"] == "accepted":
            self.state["available_seats"] += p["seats_requested"]
        p["status"] = status
        if status in ("rejected", "removed"):
            self.state["participants"].remove(p)
        return dict(p, status=status)

    async def accept_trip_request(self, trip_id, participant_id):
        return await self._act(participant_id, "accepted")

    async def reject_trip_request(self, trip_id, participant_id):
        return await self._act(participant_id, "rejected")

    async def remove_participant(self, trip_id, participant_id, reason=None):
        return await self._act(participant_id, "removed")


class FakeChanges:
    """Stands in for `client.changes(...)`: an async context manager yielding queued notices."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def __aenter__(self):
        return self._notices()

    async def __aexit__(self, *exc_info):
        self.closed = True

    async def _notices(self):
        while True:
            yield await self.queue.get()


async def until(condition, timeout: float = 1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


# ============================================================================
# Optimistic actions
# ============================================================================

@pytest.mark.asyncio
async def test_accept_is_provisional_until_refetch():
    client = FakeClient(trip_state([participant("p1", "pending", 2)]))
    sync = TripSync(client, "t1")
    await sync.refresh()

    client.action_gate = asyncio.Event()
    task = asyncio.create_task(sync.accept("p1"))
    await asyncio.sleep(0)

    assert sync.reconciling is True
    assert sync.view["available_seats"] == 1
    assert sync.view["participants"][0]["status"] == "accepted"
    # The confirmed snapshot is untouched
    assert sync.confirmed["available_seats"] == 3

    client.action_gate.set()
    await task

    assert sync.reconciling is False
    assert sync.provisional is None
    assert sync.view["available_seats"] == 1
    assert sync.view["participants"][0]["status"] == "accepted"


@pytest.mark.asyncio
async def test_failed_action_reverts_to_server_state():
    client = FakeClient(trip_state([participant("p1", "pending", 2)], available=1))
    sync = TripSync(client, "t1")
    await sync.refresh()
    client.fail = CapacityExceeded("Only 1 seat(s) available, 2 requested")

    with pytest.raises(CapacityExceeded):
        await sync.accept("p1")

    assert sync.provisional is None
    assert sync.reconciling is False
    assert sync.view["available_seats"] == 1
    assert sync.view["participants"][0]["status"] == "pending"
    assert client.fetches == 2


@pytest.mark.asyncio
async def test_remove_overlay_returns_accepted_seats():
    client = FakeClient(trip_state([participant("p1", "accepted", 2), participant("p2", "pending")], available=1))
    sync = TripSync(client, "t1")
    await sync.refresh()

    sync._apply_optimistic("remove", "p1")

    assert sync.view["available_seats"] == 3
    assert [p["id"] for p in sync.view["participants"]] == ["p2"]

    sync.provisional = None
    sync._apply_optimistic("reject", "p2")
    assert sync.view["available_seats"] == 1
    assert [p["id"] for p in sync.view["participants"]] == ["p1"]


@pytest.mark.asyncio
async def test_reconciliation_fetch_failure_keeps_refetch_pending():
    client = FakeClient(trip_state([participant("p1", "pending")]))
    sync = TripSync(client, "t1")
    await sync.refresh()
    client.fetch_error = TransientStoreError("store down")

    result = await sync.accept("p1")

    assert result["status"] == "accepted"
    assert sync.provisional is None
    assert sync.reconciling is True
    # Last confirmed data is still shown
    assert sync.view["participants"][0]["status"] == "pending"


# ============================================================================
# Refetch ordering
# ============================================================================

@pytest.mark.asyncio
async def test_most_recently_started_refetch_wins():
    gates = [asyncio.Event(), asyncio.Event()]
    results = ["older", "newer"]
    calls = itertools.count()

    async def fetch():
        i = next(calls)
        await gates[i].wait()
        return results[i]

    sync = AggregateSync(fetch)
    first = asyncio.create_task(sync.refresh())
    await asyncio.sleep(0)
    second = asyncio.create_task(sync.refresh())
    await asyncio.sleep(0)

    gates[1].set()
    await second
    assert sync.confirmed == "newer"

    gates[0].set()
    await first
    assert sync.confirmed == "newer"


@pytest.mark.asyncio
async def test_overlay_survives_refetch_started_before_it():
    client = FakeClient(trip_state([participant("p1", "pending")]))
    sync = TripSync(client, "t1")
    await sync.refresh()

    client.fetch_gate = asyncio.Event()
    in_flight = asyncio.create_task(sync.refresh())
    await asyncio.sleep(0)
    sync._apply_optimistic("accept", "p1")

    client.fetch_gate.set()
    await in_flight
    assert sync.reconciling is True
    assert sync.view["participants"][0]["status"] == "accepted"

    client.fetch_gate = None
    await sync.refresh()
    assert sync.reconciling is False
    assert sync.view["participants"][0]["status"] == "pending"


# ============================================================================
# Change feed
# ============================================================================

@pytest.mark.asyncio
async def test_live_refetches_on_every_notice_and_releases_feed():
    client = FakeClient(trip_state([participant("p1", "pending")]))
    sync = TripSync(client, "t1")
    changes = FakeChanges()

    async with sync.live(changes):
        assert sync.view["available_seats"] == 3

        # Someone else accepted a request on the server
        client.state["available_seats"] = 2
        client.state["participants"][0]["status"] = "accepted"
        await changes.queue.put({"table": "trip_participants", "event": "UPDATE"})
        await until(lambda: sync.view["available_seats"] == 2)

    assert changes.closed is True


@pytest.mark.asyncio
async def test_live_releases_feed_on_error():
    client = FakeClient(trip_state([]))
    sync = TripSync(client, "t1")
    changes = FakeChanges()

    with pytest.raises(RuntimeError):
        async with sync.live(changes):
            raise RuntimeError("view closed")

    assert changes.closed is True


@pytest.mark.asyncio
async def test_failed_refetch_after_notice_keeps_listening():
    client = FakeClient(trip_state([]))
    sync = TripSync(client, "t1")
    changes = FakeChanges()

    async with sync.live(changes):
        client.fetch_error = TransientStoreError("blip")
        await changes.queue.put({"table": "trips", "event": "UPDATE"})
        await until(lambda: client.fetches == 2)

        client.fetch_error = None
        client.state["available_seats"] = 0
        await changes.queue.put({"table": "trips", "event": "UPDATE"})
        await until(lambda: sync.view["available_seats"] == 0)


class DroppedChanges(FakeChanges):
    """Delivers one notice, then the socket goes away."""

    async def _notices(self):
        yield await self.queue.get()
        raise websockets.ConnectionClosedError(None, None)


class EndedChanges(FakeChanges):
    async def _notices(self):
        return
        yield


@pytest.mark.asyncio
async def test_dropped_feed_marks_view_stale():
    client = FakeClient(trip_state([participant("p1", "pending")]))
    sync = TripSync(client, "t1")
    changes = DroppedChanges()

    async with sync.live(changes):
        assert sync.reconciling is False
        await changes.queue.put({"table": "trips", "event": "UPDATE"})
        await until(lambda: sync.reconciling)
        assert client.fetches == 2

    assert changes.closed is True
    # The next refetch brings the view back in step
    await sync.refresh()
    assert sync.reconciling is False


@pytest.mark.asyncio
async def test_feed_closed_by_server_marks_view_stale():
    client = FakeClient(trip_state([]))
    sync = TripSync(client, "t1")
    changes = EndedChanges()

    async with sync.live(changes):
        await until(lambda: sync.reconciling)

    assert changes.closed is True
