from __future__ import annotations

import logging
from datetime import datetime, timedelta

import pytz
import sqlalchemy
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .. import database as db
from ..config import get_settings
from ..utils import parse_datetime, utcnow
from . import notifications

settings = get_settings()
log = logging.getLogger(__name__)

# Reminder windows: (marker key, minutes before departure, title, body template)
REMINDER_WINDOWS = (
    ("24h", 24 * 60, "Trip Tomorrow", 'Your trip "{title}" is departing in 24 hours ({when})!'),
    ("1h", 60, "Trip Starting Soon!", 'Your trip "{title}" is departing in 1 hour ({when})!'),
)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


def format_departure(departure: datetime) -> str:
    """Departure time in the configured timezone, e.g. 'Mon 14 Oct 09:30'."""
    try:
        tz = pytz.timezone(settings.TIMEZONE)
    except pytz.UnknownTimeZoneError:
        log.warning(f"[Scheduler] Unknown timezone {settings.TIMEZONE}, using UTC")
        tz = pytz.UTC
    local = pytz.UTC.localize(departure).astimezone(tz)
    return local.strftime("%a %d %b %H:%M")


def _due_trips(conn, now: datetime, offset_min: int, interval_min: int) -> list:
    """Active trips departing in (offset - interval, offset] minutes from now."""
    return conn.execute(
        sqlalchemy.text("""
            SELECT id, title, departure_time, creator_id
            FROM trips
            WHERE status = 'active'
            AND departure_time > :window_start
            AND departure_time <= :window_end
            ORDER BY departure_time
        """),
        {
            "window_start": now + timedelta(minutes=offset_min - interval_min),
            "window_end": now + timedelta(minutes=offset_min),
        }
    ).fetchall()


def _claim_reminder(conn, trip_id: str, window: str, now: datetime) -> bool:
    """Insert the sent-marker for (trip, window). False if an earlier sweep already claimed it."""
    result = conn.execute(
        sqlalchemy.text("""
            INSERT INTO trip_reminders_sent (trip_id, reminder_window, sent_at)
            VALUES (:trip_id, :window, :now)
            ON CONFLICT (trip_id, reminder_window) DO NOTHING
        """),
        {"trip_id": trip_id, "window": window, "now": now}
    )
    return result.rowcount == 1


def _reminder_recipients(conn, trip) -> list[str]:
    rows = conn.execute(
        sqlalchemy.text("""
            SELECT user_id FROM trip_participants
            WHERE trip_id = :trip_id AND status = 'accepted'
            ORDER BY joined_at
        """),
        {"trip_id": trip.id}
    ).fetchall()
    return notifications.unique_recipients([trip.creator_id] + [r.user_id for r in rows])


async def run_reminder_sweep(now: datetime | None = None, deliver: bool = True) -> dict:
    """Emit trip_reminder notifications for trips entering the 24h and 1h windows.

    Idempotent: each (trip, window) is claimed once in trip_reminders_sent, in the
    same transaction as its notifications, so repeated or overlapping sweeps never
    notify twice.
    """
    now = now or utcnow()
    interval = settings.REMINDER_SWEEP_INTERVAL_MIN
    log.info(f"[Scheduler] Running reminder sweep at {now}")

    summary = {"24h": 0, "1h": 0, "notifications": 0}
    written: list[dict] = []

    for window, offset_min, title, body_template in REMINDER_WINDOWS:
        with db.begin() as conn:
            due = _due_trips(conn, now, offset_min, interval)

        for trip in due:
            try:
                with db.begin() as conn:
                    if not _claim_reminder(conn, trip.id, window, now):
                        log.debug(f"[Scheduler] {window} reminder for trip {trip.id} already sent")
                        continue
                    recipients = _reminder_recipients(conn, trip)
                    body = body_template.format(
                        title=trip.title,
                        when=format_departure(parse_datetime(trip.departure_time)),
                    )
                    created = notifications.insert_notifications(
                        conn, recipients, trip.id, notifications.TRIP_REMINDER, title, body
                    )
            except Exception as e:
                # The claim rolled back with the failed write; the next sweep retries this trip
                log.error(f"[Scheduler] {window} reminder for trip {trip.id} failed: {e}", exc_info=True)
                continue

            summary[window] += 1
            summary["notifications"] += len(created)
            written.extend(created)
            log.info(f"[Scheduler] Sent {window} reminders for trip {trip.id} to {len(created)} user(s)")

    if deliver and written:
        await notifications.deliver_notifications(written)

    log.info(
        f"[Scheduler] Reminder sweep done: {summary['24h']} trip(s) at 24h, "
        f"{summary['1h']} trip(s) at 1h, {summary['notifications']} notification(s)"
    )
    return summary


async def sweep_job():
    """Scheduled entry point; a failing sweep must not stop the scheduler."""
    try:
        await run_reminder_sweep()
    except Exception as e:
        log.error(f"[Scheduler] Reminder sweep failed: {e}", exc_info=True)


def init_scheduler() -> AsyncIOScheduler:
    """Initialize and configure the scheduler."""
    global scheduler

    if scheduler is not None:
        return scheduler

    scheduler = AsyncIOScheduler(timezone=settings.TIMEZONE)

    scheduler.add_job(
        sweep_job,
        IntervalTrigger(minutes=settings.REMINDER_SWEEP_INTERVAL_MIN),
        id="trip_reminders",
        name="Send trip departure reminders",
        replace_existing=True,
        max_instances=1,
    )

    return scheduler


def start_scheduler():
    """Start the scheduler."""
    global scheduler
    if scheduler is None:
        scheduler = init_scheduler()

    if not scheduler.running:
        scheduler.start()
        log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown()
        log.info("Scheduler stopped")
