"""In-process change feed for trips, participants, messages and notifications.

Writers record row changes inside their transaction (`database.record_change`);
the feed delivers them to matching subscribers after commit. Subscribers only
receive a change notice and are expected to refetch the whole aggregate.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

log = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: str  # INSERT | UPDATE | DELETE
    row: dict
    # Values not on the row itself that filters may match on (e.g. the trip's creator)
    context: dict = field(default_factory=dict)

    def lookup(self, column: str) -> Any:
        if column in self.row:
            return self.row[column]
        return self.context.get(column)

    def to_payload(self) -> dict:
        return {
            "table": self.table,
            "event": self.kind,
            "row": {k: v.isoformat() if isinstance(v, datetime) else v for k, v in self.row.items()},
        }


@dataclass(frozen=True)
class ChangeFilter:
    """Row predicate in the shape `table` + `column=eq.value` (or membership with op='contains')."""

    table: str
    column: str | None = None
    value: Any = None
    op: str = "eq"

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.column is None:
            return True
        actual = event.lookup(self.column)
        if self.op == "contains":
            return actual is not None and self.value in actual
        return actual == self.value


# ==================== Scopes ====================

def trip_scope(trip_id: str) -> list[ChangeFilter]:
    """One trip and its participant list."""
    return [
        ChangeFilter("trips", "id", trip_id),
        ChangeFilter("trip_participants", "trip_id", trip_id),
    ]


def created_trips_scope(user_id: str) -> list[ChangeFilter]:
    """Trips the user created, including join requests arriving on them."""
    return [
        ChangeFilter("trips", "creator_id", user_id),
        ChangeFilter("trip_participants", "creator_id", user_id),
    ]


def participating_scope(user_id: str) -> list[ChangeFilter]:
    """The user's own participation rows and the trips they are a member of."""
    return [
        ChangeFilter("trip_participants", "user_id", user_id),
        ChangeFilter("trips", "member_ids", user_id, op="contains"),
    ]


def notifications_scope(user_id: str) -> list[ChangeFilter]:
    return [ChangeFilter("notifications", "user_id", user_id)]


def messages_scope(trip_id: str) -> list[ChangeFilter]:
    return [ChangeFilter("messages", "trip_id", trip_id)]


SCOPES: dict[str, Callable[[str], list[ChangeFilter]]] = {
    "trip": trip_scope,
    "created": created_trips_scope,
    "participating": participating_scope,
    "notifications": notifications_scope,
    "messages": messages_scope,
}


# ==================== Feed ====================

class Subscription:
    """Handle for one registered subscriber. Usable as a context manager."""

    def __init__(self, feed: ChangeFeed, sub_id: int, filters: Iterable[ChangeFilter], callback: Callable[[ChangeEvent], Any]):
        self._feed = feed
        self.id = sub_id
        self.filters = tuple(filters)
        self.callback = callback
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        return any(f.matches(event) for f in self.filters)

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._feed._remove(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info) -> None:
        self.unsubscribe()


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(self, filters: Iterable[ChangeFilter], callback: Callable[[ChangeEvent], Any]) -> Subscription:
        with self._lock:
            sub = Subscription(self, next(self._ids), filters, callback)
            self._subscriptions[sub.id] = sub
        log.debug(f"[Realtime] Subscription {sub.id} registered ({len(sub.filters)} filters)")
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(sub.id, None)
        log.debug(f"[Realtime] Subscription {sub.id} released")

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every matching subscriber. Returns the number notified."""
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.matches(event)]

        for sub in targets:
            try:
                sub.callback(event)
            except Exception as e:
                # The write already committed; a broken subscriber must not fail it
                log.error(f"[Realtime] Subscriber {sub.id} failed on {event.table} {event.kind}: {e}", exc_info=True)
        return len(targets)

    @contextmanager
    def subscription(self, filters: Iterable[ChangeFilter], callback: Callable[[ChangeEvent], Any]):
        """Subscribe for the duration of a block; released on every exit path."""
        sub = self.subscribe(filters, callback)
        try:
            yield sub
        finally:
            sub.unsubscribe()

    @asynccontextmanager
    async def queue_subscription(self, filters: Iterable[ChangeFilter], maxsize: int = 0):
        """Subscribe and receive events on an asyncio.Queue bound to the running loop.

        Publishers may run on worker threads, so events are handed over with
        call_soon_threadsafe.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)

        def _enqueue(event: ChangeEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        sub = self.subscribe(filters, _enqueue)
        try:
            yield queue
        finally:
            sub.unsubscribe()


# Process-wide feed used by the store and the websocket endpoint
feed = ChangeFeed()
