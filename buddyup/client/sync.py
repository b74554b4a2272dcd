"""Client-side reconciliation of trip views against the server.

A view holds the last server-confirmed aggregate plus, while an action is in
flight, a provisional overlay with the action's expected effect. Any change
notice or finished action triggers a full refetch; the overlay never outlives
the next refetch started after it was applied.
"""
from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable

import websockets

from buddyup.errors import TripServiceError

log = logging.getLogger(__name__)

ACCEPT = "accept"
REJECT = "reject"
REMOVE = "remove"


class AggregateSync:
    """Keeps one refetchable aggregate current. The most recently started refetch wins."""

    def __init__(self, fetch: Callable[[], Awaitable[Any]]):
        self._fetch = fetch
        self.confirmed: Any = None
        self.provisional: Any = None
        # True while the view may lag the server, until a newer refetch lands
        self.reconciling = False
        self._started = 0
        self._applied = 0
        self._overlay_seq = 0

    @property
    def view(self) -> Any:
        return self.provisional if self.provisional is not None else self.confirmed

    async def refresh(self) -> Any:
        self._started += 1
        seq = self._started
        data = await self._fetch()

        if seq < self._applied:
            # A refetch started later already landed
            log.debug(f"[Sync] Dropping stale refetch #{seq} (have #{self._applied})")
            return self.view

        self._applied = seq
        self.confirmed = data
        if seq > self._overlay_seq:
            self.provisional = None
            self.reconciling = False
        return self.view

    async def handle_change(self, notice: dict | None = None) -> Any:
        """Coarse invalidation: any notice means refetch the whole aggregate."""
        if notice is not None:
            log.debug(f"[Sync] Change on {notice.get('table')} ({notice.get('event')})")
        return await self.refresh()

    async def _consume(self, notices) -> None:
        try:
            async for notice in notices:
                try:
                    await self.handle_change(notice)
                except TripServiceError as e:
                    log.warning(f"[Sync] Refetch after change notice failed: {e}")
        except websockets.ConnectionClosed as e:
            log.warning(f"[Sync] Change feed dropped: {e}")
        else:
            log.warning("[Sync] Change feed closed by server")
        # No more notices: the view is stale until the next refetch
        self.reconciling = True

    @asynccontextmanager
    async def live(self, changes):
        """Follow a change feed for the duration of the block.

        `changes` is an async context manager yielding an async iterator of
        notices, e.g. `client.changes("trip", trip_id)`. The subscription is
        released on every exit path.
        """
        async with changes as notices:
            consumer = asyncio.create_task(self._consume(notices))
            try:
                await self.refresh()
                yield self
            finally:
                consumer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await consumer


class TripSync(AggregateSync):
    """One trip with its participants, as shown to the trip's creator."""

    def __init__(self, client, trip_id: str):
        super().__init__(lambda: client.get_trip_details(trip_id))
        self.client = client
        self.trip_id = trip_id

    def _apply_optimistic(self, action: str, participant_id: str) -> None:
        base = self.view
        if base is None:
            return
        trip = copy.deepcopy(base)
        participant = next((p for p in trip.get("participants", []) if p["id"] == participant_id), None)
        if participant is None:
            return

        if action == ACCEPT and participant["status"] == "pending":
            participant["status"] = "accepted"
            trip["available_seats"] = max(0, trip["available_seats"] - participant["seats_requested"])
        elif action in (REJECT, REMOVE):
            if action == REMOVE and participant["status"] == "accepted":
                trip["available_seats"] = min(
                    trip["total_seats"], trip["available_seats"] + participant["seats_requested"]
                )
            trip["participants"] = [p for p in trip["participants"] if p["id"] != participant_id]
        else:
            return

        self.provisional = trip
        self.reconciling = True
        self._overlay_seq = self._started

    async def _perform(self, action: str, participant_id: str, call: Callable[[], Awaitable[Any]]) -> Any:
        self._apply_optimistic(action, participant_id)
        try:
            result = await call()
        except TripServiceError:
            # Fall back to the confirmed state, then reconcile
            self.provisional = None
            await self._refresh_quietly()
            raise
        await self._refresh_quietly()
        return result

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except TripServiceError as e:
            log.warning(f"[Sync] Reconciliation refetch for trip {self.trip_id} failed: {e}")
            # Provisional state is never kept past one cycle; stay marked as needing a refetch
            self.provisional = None
            self.reconciling = True

    async def accept(self, participant_id: str) -> Any:
        return await self._perform(
            ACCEPT, participant_id, lambda: self.client.accept_trip_request(self.trip_id, participant_id)
        )

    async def reject(self, participant_id: str) -> Any:
        return await self._perform(
            REJECT, participant_id, lambda: self.client.reject_trip_request(self.trip_id, participant_id)
        )

    async def remove(self, participant_id: str, reason: str | None = None) -> Any:
        return await self._perform(
            REMOVE, participant_id, lambda: self.client.remove_participant(self.trip_id, participant_id, reason)
        )
