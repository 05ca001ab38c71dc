"""Session stitching: fold tracking events into per-session rollups.

A session moves absent -> active on its first event, stays active while
events keep arriving, and is ended either explicitly (``end_session``) or by
the inactivity sweep (``end_stale_sessions``). A later event for an ended
session reopens it.

Creation and advancement happen in a single ``INSERT ... ON CONFLICT DO
UPDATE`` statement, so concurrent first events for the same session ID can
never produce two rows. ``last_activity`` and ``duration`` only move forward,
even when events are applied out of order.
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import duckdb

from src.collector.schemas import Event, EventType
from src.errors import StorageError
from src.warehouse.db import from_db_time, to_db_time

logger = logging.getLogger(__name__)

# Concurrent upserts on one session conflict under DuckDB's optimistic
# concurrency; the losing statement is rolled back, so it is safe to replay.
_UPSERT_ATTEMPTS = 10
_RETRY_BASE_DELAY = 0.005

_SESSION_COLUMNS = (
    "session_id, visitor_id, site_id, start_time, last_activity, end_time, "
    "pageviews, events, duration, entry_page, exit_page, device, browser, os, "
    "country, region, referrer, referrer_type, is_active, timestamp"
)

_UPSERT_SESSION = """
INSERT INTO sessions (
    session_id, visitor_id, site_id, start_time, last_activity, end_time,
    pageviews, events, duration, entry_page, exit_page, device, browser, os,
    country, region, referrer, referrer_type, is_active, timestamp
)
VALUES (?, ?, ?, ?, ?, NULL, ?, 1, 0, ?, ?, ?, ?, ?, ?, ?, ?, ?, TRUE, ?)
ON CONFLICT (session_id) DO UPDATE SET
    pageviews = pageviews + excluded.pageviews,
    events = events + 1,
    exit_page = excluded.exit_page,
    last_activity = greatest(last_activity, excluded.last_activity),
    duration = greatest(
        duration,
        CAST(floor(epoch(greatest(last_activity, excluded.last_activity)) - epoch(start_time)) AS INTEGER)
    ),
    end_time = NULL,
    is_active = TRUE
"""


@dataclass(frozen=True)
class Session:
    """Rollup of one visitor's activity on one site for one day."""

    session_id: str
    visitor_id: str
    site_id: str
    start_time: datetime
    last_activity: datetime
    end_time: datetime | None
    pageviews: int
    events: int
    duration: int  # seconds
    entry_page: str
    exit_page: str
    device: str
    browser: str | None
    os: str | None
    country: str | None
    region: str | None
    referrer: str | None
    referrer_type: str
    is_active: bool
    timestamp: datetime

    @classmethod
    def from_row(cls, row: tuple) -> "Session":
        values = list(row)
        # start_time, last_activity, end_time, timestamp
        for idx in (3, 4, 5, 19):
            values[idx] = from_db_time(values[idx])
        return cls(*values)


def _upsert_with_retry(conn: duckdb.DuckDBPyConnection, params: list) -> None:
    for attempt in range(1, _UPSERT_ATTEMPTS + 1):
        try:
            conn.execute(_UPSERT_SESSION, params)
            return
        except (duckdb.TransactionException, duckdb.ConstraintException) as exc:
            if attempt == _UPSERT_ATTEMPTS:
                raise StorageError("Failed to update session") from exc
            logger.debug("Session upsert conflict (attempt %d): %s", attempt, exc)
            time.sleep(random.uniform(0, _RETRY_BASE_DELAY * attempt))
        except duckdb.Error as exc:
            raise StorageError("Failed to update session") from exc


def stitch_event(conn: duckdb.DuckDBPyConnection, event: Event) -> Session:
    """Create or advance the session that ``event`` belongs to.

    Context fields (entry page, device, geo, referrer) are captured only
    when the session is created; later events update counters, the exit
    page and timing.
    """
    at = to_db_time(event.timestamp)
    params = [
        event.session_id,
        event.visitor_id,
        event.site_id,
        at,
        at,
        1 if event.event_type == EventType.PAGEVIEW else 0,
        event.page,
        event.page,
        event.device.value,
        event.browser,
        event.os,
        event.country,
        event.region,
        event.referrer,
        event.referrer_type.value,
        at,
    ]
    _upsert_with_retry(conn, params)

    session = get_session(conn, event.session_id)
    if session is None:
        # Only possible if retention removed the row between the two statements
        raise StorageError("Session vanished after update")
    return session


def get_session(conn: duckdb.DuckDBPyConnection, session_id: str) -> Session | None:
    try:
        row = conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = ?", [session_id]
        ).fetchone()
    except duckdb.Error as exc:
        raise StorageError("Failed to read session") from exc
    return Session.from_row(row) if row else None


def end_session(
    conn: duckdb.DuckDBPyConnection,
    session_id: str,
    exit_page: str | None = None,
    now: datetime | None = None,
) -> Session | None:
    """Explicitly end a session.

    Sets ``end_time``, clears ``is_active`` and finalizes the exit page and
    duration. Returns ``None`` if the session does not exist.
    """
    at = to_db_time(now or datetime.now(timezone.utc))
    try:
        conn.execute(
            """
            UPDATE sessions SET
                end_time = greatest(?, last_activity),
                is_active = FALSE,
                exit_page = coalesce(?, exit_page),
                duration = greatest(
                    duration,
                    CAST(floor(epoch(greatest(?, last_activity)) - epoch(start_time)) AS INTEGER)
                )
            WHERE session_id = ?
            """,
            [at, exit_page, at, session_id],
        )
    except duckdb.Error as exc:
        raise StorageError("Failed to end session") from exc
    return get_session(conn, session_id)


def end_stale_sessions(
    conn: duckdb.DuckDBPyConnection,
    idle_minutes: int = 30,
    now: datetime | None = None,
) -> int:
    """End every active session idle for longer than ``idle_minutes``.

    The session is closed at its last activity, so its duration is not
    inflated by the idle gap. Returns the number of sessions ended.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = to_db_time(now - timedelta(minutes=idle_minutes))
    try:
        result = conn.execute(
            """
            UPDATE sessions SET
                end_time = last_activity,
                is_active = FALSE
            WHERE is_active AND last_activity < ?
            """,
            [cutoff],
        ).fetchone()
    except duckdb.Error as exc:
        raise StorageError("Failed to sweep stale sessions") from exc

    ended = result[0] if result else 0
    if ended:
        logger.info("Ended %d stale sessions (idle > %d min)", ended, idle_minutes)
    return ended
