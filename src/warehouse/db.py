"""DuckDB warehouse initialization and connection management.

The warehouse holds two tables: ``events`` (append-only tracking events)
and ``sessions`` (one mutable rollup row per session ID). Both carry a
``timestamp`` creation column used for retention expiry.

Timestamps are stored as naive UTC ``TIMESTAMP`` values; use
``to_db_time``/``from_db_time`` at the boundary.
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import duckdb

from src.collector.schemas import Event
from src.errors import StorageError

DEFAULT_DB_PATH = Path("data/tracker.duckdb")

_CREATE_EVENTS_TABLE = """
CREATE TABLE IF NOT EXISTS events (
    event_id      VARCHAR PRIMARY KEY,
    site_id       VARCHAR NOT NULL,
    event_type    VARCHAR NOT NULL,
    page          VARCHAR NOT NULL,
    title         VARCHAR DEFAULT '',
    referrer      VARCHAR DEFAULT '',
    referrer_type VARCHAR DEFAULT 'none',
    session_id    VARCHAR NOT NULL,
    visitor_id    VARCHAR NOT NULL,
    device        VARCHAR DEFAULT 'unknown',
    browser       VARCHAR DEFAULT 'Unknown',
    os            VARCHAR DEFAULT 'Unknown',
    screen_width  INTEGER DEFAULT 0,
    screen_height INTEGER DEFAULT 0,
    language      VARCHAR DEFAULT 'en-US',
    country       VARCHAR DEFAULT 'Unknown',
    region        VARCHAR DEFAULT 'Unknown',
    timestamp     TIMESTAMP NOT NULL,
    custom_data   JSON
);
"""

# No secondary indexes: the upsert in sessions.stitcher relies on
# ON CONFLICT DO UPDATE, which DuckDB restricts on indexed columns.
_CREATE_SESSIONS_TABLE = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id    VARCHAR PRIMARY KEY,
    visitor_id    VARCHAR NOT NULL,
    site_id       VARCHAR NOT NULL,
    start_time    TIMESTAMP NOT NULL,
    last_activity TIMESTAMP NOT NULL,
    end_time      TIMESTAMP,
    pageviews     INTEGER NOT NULL DEFAULT 0,
    events        INTEGER NOT NULL DEFAULT 0,
    duration      INTEGER NOT NULL DEFAULT 0,
    entry_page    VARCHAR DEFAULT '',
    exit_page     VARCHAR DEFAULT '',
    device        VARCHAR DEFAULT 'unknown',
    browser       VARCHAR,
    os            VARCHAR,
    country       VARCHAR,
    region        VARCHAR,
    referrer      VARCHAR,
    referrer_type VARCHAR DEFAULT 'none',
    is_active     BOOLEAN NOT NULL DEFAULT TRUE,
    timestamp     TIMESTAMP NOT NULL
);
"""


def to_db_time(value: datetime) -> datetime:
    """Convert an aware (or naive-UTC) datetime to the naive UTC value stored."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def get_connection(db_path: Path | str = DEFAULT_DB_PATH) -> duckdb.DuckDBPyConnection:
    """Open a DuckDB connection, creating the database file if needed.

    Pass \":memory:\" for an in-memory database (useful for testing).
    """
    try:
        if str(db_path) == ":memory:":
            return duckdb.connect(":memory:")
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return duckdb.connect(str(db_path))
    except duckdb.Error as exc:
        raise StorageError(f"Could not open warehouse at {db_path}") from exc


def init_db(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the events and sessions tables if they don't exist."""
    try:
        conn.execute(_CREATE_EVENTS_TABLE)
        conn.execute(_CREATE_SESSIONS_TABLE)
    except duckdb.Error as exc:
        raise StorageError("Could not initialize warehouse schema") from exc


def insert_event(conn: duckdb.DuckDBPyConnection, event: Event) -> None:
    """Append one event. Events are never updated afterwards."""
    custom_json = json.dumps(event.custom_data) if event.custom_data is not None else None
    try:
        conn.execute(
            """
            INSERT INTO events (
                event_id, site_id, event_type, page, title, referrer, referrer_type,
                session_id, visitor_id, device, browser, os, screen_width, screen_height,
                language, country, region, timestamp, custom_data
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                event.event_id,
                event.site_id,
                event.event_type.value,
                event.page,
                event.title,
                event.referrer,
                event.referrer_type.value,
                event.session_id,
                event.visitor_id,
                event.device.value,
                event.browser,
                event.os,
                event.screen_width,
                event.screen_height,
                event.language,
                event.country,
                event.region,
                to_db_time(event.timestamp),
                custom_json,
            ],
        )
    except duckdb.Error as exc:
        raise StorageError("Failed to persist event") from exc


def count_events(conn: duckdb.DuckDBPyConnection, site_id: str | None = None) -> int:
    """Return the number of stored events, optionally for one site."""
    return _count(conn, "events", site_id)


def count_sessions(conn: duckdb.DuckDBPyConnection, site_id: str | None = None) -> int:
    """Return the number of stored sessions, optionally for one site."""
    return _count(conn, "sessions", site_id)


def _count(conn: duckdb.DuckDBPyConnection, table: str, site_id: str | None) -> int:
    try:
        if site_id is None:
            result = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
        else:
            result = conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE site_id = ?", [site_id]
            ).fetchone()
    except duckdb.Error as exc:
        raise StorageError(f"Failed to count {table}") from exc
    return result[0]
