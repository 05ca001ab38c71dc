"""Retention expiry and session maintenance for the warehouse.

DuckDB has no TTL index, so expiry runs as a periodic maintenance pass:
delete events and sessions whose ``timestamp`` is older than the
retention window, then end sessions that have gone idle.

Usage:
    python -m src.warehouse.retention
    python -m src.warehouse.retention --db data/tracker.duckdb --days 90 --idle-minutes 30
"""

import argparse
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import duckdb

from src.config import get_settings
from src.errors import StorageError
from src.sessions.stitcher import end_stale_sessions
from src.warehouse.db import get_connection, init_db, to_db_time

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionResult:
    events: int
    sessions: int


def purge_expired(
    conn: duckdb.DuckDBPyConnection,
    retention_days: int = 90,
    now: datetime | None = None,
) -> RetentionResult:
    """Delete events and sessions created more than ``retention_days`` ago."""
    now = now or datetime.now(timezone.utc)
    cutoff = to_db_time(now - timedelta(days=retention_days))
    deleted = {}
    try:
        for table in ("events", "sessions"):
            row = conn.execute(f"DELETE FROM {table} WHERE timestamp < ?", [cutoff]).fetchone()
            deleted[table] = row[0] if row else 0
    except duckdb.Error as exc:
        raise StorageError("Retention purge failed") from exc

    result = RetentionResult(events=deleted["events"], sessions=deleted["sessions"])
    if result.events or result.sessions:
        logger.info(
            "Expired %d events and %d sessions older than %d days",
            result.events,
            result.sessions,
            retention_days,
        )
    return result


def run_maintenance(
    conn: duckdb.DuckDBPyConnection,
    retention_days: int,
    idle_minutes: int,
    now: datetime | None = None,
) -> tuple[RetentionResult, int]:
    """One maintenance pass: purge expired rows, then end idle sessions."""
    purged = purge_expired(conn, retention_days, now=now)
    ended = end_stale_sessions(conn, idle_minutes, now=now)
    return purged, ended


def _maintenance_pass(conn: duckdb.DuckDBPyConnection, retention_days: int, idle_minutes: int):
    cursor = conn.cursor()
    try:
        return run_maintenance(cursor, retention_days, idle_minutes)
    finally:
        cursor.close()


async def run_maintenance_loop(
    conn: duckdb.DuckDBPyConnection,
    interval_seconds: int,
    retention_days: int,
    idle_minutes: int,
) -> None:
    """Run maintenance every ``interval_seconds`` until cancelled.

    A failing pass, whatever the error, is logged and retried on the next
    tick; only cancellation stops the loop.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(_maintenance_pass, conn, retention_days, idle_minutes)
        except Exception:
            logger.exception("Maintenance pass failed")


def main(args: list[str] | None = None) -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Expire old analytics data and end idle sessions")
    parser.add_argument("--db", default=settings.db_path, help="Database path")
    parser.add_argument(
        "--days", type=int, default=settings.retention_days, help="Retention window in days"
    )
    parser.add_argument(
        "--idle-minutes",
        type=int,
        default=settings.session_idle_minutes,
        help="End sessions idle for longer than this",
    )
    opts = parser.parse_args(args)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    conn = get_connection(opts.db)
    try:
        init_db(conn)
        purged, ended = run_maintenance(conn, opts.days, opts.idle_minutes)
    finally:
        conn.close()

    print(f"Expired {purged.events} events and {purged.sessions} sessions; ended {ended} idle sessions")


if __name__ == "__main__":
    main()
