"""Dashboard aggregations over the events and sessions tables.

Every query is scoped to one site and an inclusive ``[start, end]`` range,
and is read-only. Rates and averages are rounded half-up to integers and
are 0 (not undefined) when there is nothing to divide by.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

import duckdb

from src.collector.schemas import EventType
from src.context.geo import UNKNOWN_COUNTRY
from src.context.referrer import ReferrerType
from src.errors import StorageError
from src.warehouse.db import from_db_time, to_db_time

DEFAULT_LIMIT = 10
DEFAULT_ACTIVE_WINDOW_MINUTES = 30


class Interval(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


@dataclass(frozen=True)
class OverviewStats:
    pageviews: int
    unique_visitors: int
    sessions: int
    avg_duration: int      # seconds, over sessions with duration > 0
    bounce_rate: int       # percent of sessions with exactly one pageview

    def to_dict(self) -> dict:
        return {
            "pageviews": self.pageviews,
            "uniqueVisitors": self.unique_visitors,
            "sessions": self.sessions,
            "avgDuration": self.avg_duration,
            "bounceRate": self.bounce_rate,
        }


@dataclass(frozen=True)
class TimeBucket:
    label: str
    start: datetime
    pageviews: int
    unique_visitors: int

    def to_dict(self) -> dict:
        return {
            "date": self.label,
            "pageviews": self.pageviews,
            "uniqueVisitors": self.unique_visitors,
        }


@dataclass(frozen=True)
class BreakdownRow:
    value: str
    pageviews: int
    unique_visitors: int

    def to_dict(self, dimension: str) -> dict:
        return {
            dimension: self.value,
            "pageviews": self.pageviews,
            "uniqueVisitors": self.unique_visitors,
        }


@dataclass(frozen=True)
class Dashboard:
    overview: OverviewStats
    active_sessions: int
    pageviews_over_time: list[TimeBucket] = field(default_factory=list)
    top_pages: list[BreakdownRow] = field(default_factory=list)
    referrers: list[BreakdownRow] = field(default_factory=list)
    devices: list[BreakdownRow] = field(default_factory=list)
    browsers: list[BreakdownRow] = field(default_factory=list)
    countries: list[BreakdownRow] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "overview": {**self.overview.to_dict(), "activeSessions": self.active_sessions},
            "charts": {
                "pageviewsOverTime": [b.to_dict() for b in self.pageviews_over_time],
                "topPages": [r.to_dict("page") for r in self.top_pages],
                "referrers": [r.to_dict("referrer") for r in self.referrers],
                "devices": [r.to_dict("device") for r in self.devices],
                "browsers": [r.to_dict("browser") for r in self.browsers],
                "countries": [r.to_dict("country") for r in self.countries],
            },
        }


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _query(conn: duckdb.DuckDBPyConnection, sql: str, params: list) -> list[tuple]:
    try:
        return conn.execute(sql, params).fetchall()
    except duckdb.Error as exc:
        raise StorageError("Aggregation query failed") from exc


def _range(site_id: str, start: datetime, end: datetime) -> list:
    return [site_id, to_db_time(start), to_db_time(end)]


# ------------------------------------------------------------------------------
# Overview
# ------------------------------------------------------------------------------

_EVENT_TOTALS_QUERY = """
SELECT
    COUNT(*) FILTER (WHERE event_type = 'pageview') AS pageviews,
    COUNT(DISTINCT visitor_id) AS unique_visitors
FROM events
WHERE site_id = ? AND timestamp BETWEEN ? AND ?
"""

_SESSION_TOTALS_QUERY = """
SELECT
    COUNT(*) AS sessions,
    COUNT(*) FILTER (WHERE pageviews = 1) AS single_page_sessions,
    AVG(duration) FILTER (WHERE duration > 0) AS avg_duration
FROM sessions
WHERE site_id = ? AND start_time BETWEEN ? AND ?
"""


def bounce_rate(single_page_sessions: int, total_sessions: int) -> int:
    """Percentage of single-pageview sessions; 0 when there are no sessions."""
    if total_sessions == 0:
        return 0
    return round_half_up(single_page_sessions * 100.0 / total_sessions)


def get_overview(
    conn: duckdb.DuckDBPyConnection, site_id: str, start: datetime, end: datetime
) -> OverviewStats:
    params = _range(site_id, start, end)
    pageviews, unique_visitors = _query(conn, _EVENT_TOTALS_QUERY, params)[0]
    sessions, single_page, avg_duration = _query(conn, _SESSION_TOTALS_QUERY, params)[0]

    sessions = int(sessions or 0)
    return OverviewStats(
        pageviews=int(pageviews or 0),
        unique_visitors=int(unique_visitors or 0),
        sessions=sessions,
        # AVG over no rows is NULL
        avg_duration=round_half_up(avg_duration) if avg_duration is not None else 0,
        bounce_rate=bounce_rate(int(single_page or 0), sessions),
    )


# ------------------------------------------------------------------------------
# Time series
# ------------------------------------------------------------------------------


def _bucket_label(bucket: datetime, interval: Interval) -> str:
    if interval == Interval.HOUR:
        return bucket.strftime("%Y-%m-%d %H:00")
    if interval == Interval.WEEK:
        year, week, _ = bucket.isocalendar()
        return f"{year}-W{week:02d}"
    if interval == Interval.MONTH:
        return bucket.strftime("%Y-%m")
    return bucket.strftime("%Y-%m-%d")


def get_pageviews_over_time(
    conn: duckdb.DuckDBPyConnection,
    site_id: str,
    start: datetime,
    end: datetime,
    interval: Interval | str = Interval.DAY,
) -> list[TimeBucket]:
    """Pageviews and distinct visitors per UTC bucket, oldest first.

    Buckets without pageviews are omitted rather than zero-filled.
    """
    interval = Interval(interval)
    # interval is an enum member, safe to inline
    rows = _query(
        conn,
        f"""
        SELECT
            date_trunc('{interval.value}', timestamp) AS bucket,
            COUNT(*) AS pageviews,
            COUNT(DISTINCT visitor_id) AS unique_visitors
        FROM events
        WHERE site_id = ? AND timestamp BETWEEN ? AND ? AND event_type = 'pageview'
        GROUP BY bucket
        ORDER BY bucket
        """,
        _range(site_id, start, end),
    )
    buckets = []
    for bucket, pageviews, visitors in rows:
        # date_trunc on a TIMESTAMP may come back as a date for day+ parts
        if not isinstance(bucket, datetime):
            bucket = datetime(bucket.year, bucket.month, bucket.day)
        buckets.append(
            TimeBucket(
                label=_bucket_label(bucket, interval),
                start=from_db_time(bucket),
                pageviews=int(pageviews),
                unique_visitors=int(visitors),
            )
        )
    return buckets


# ------------------------------------------------------------------------------
# Top-N breakdowns
# ------------------------------------------------------------------------------

# Dimension column -> extra filter. Columns are fixed names, never user input.
_BREAKDOWN_FILTERS = {
    "page": "",
    "referrer": f"AND referrer_type = '{ReferrerType.EXTERNAL.value}'",
    "device": "",
    "browser": "",
    "country": f"AND country <> '{UNKNOWN_COUNTRY}'",
}


def _breakdown(
    conn: duckdb.DuckDBPyConnection,
    column: str,
    site_id: str,
    start: datetime,
    end: datetime,
    limit: int,
) -> list[BreakdownRow]:
    extra = _BREAKDOWN_FILTERS[column]
    rows = _query(
        conn,
        f"""
        SELECT
            {column} AS value,
            COUNT(*) AS pageviews,
            COUNT(DISTINCT visitor_id) AS unique_visitors
        FROM events
        WHERE site_id = ? AND timestamp BETWEEN ? AND ?
          AND event_type = '{EventType.PAGEVIEW.value}' {extra}
        GROUP BY {column}
        ORDER BY pageviews DESC, value ASC
        LIMIT {int(limit)}
        """,
        _range(site_id, start, end),
    )
    return [BreakdownRow(value, int(pv), int(uv)) for value, pv, uv in rows]


def get_top_pages(conn, site_id, start, end, limit: int = DEFAULT_LIMIT) -> list[BreakdownRow]:
    return _breakdown(conn, "page", site_id, start, end, limit)


def get_top_referrers(conn, site_id, start, end, limit: int = DEFAULT_LIMIT) -> list[BreakdownRow]:
    """Top external referrers; internal, direct and unparseable ones are excluded."""
    return _breakdown(conn, "referrer", site_id, start, end, limit)


def get_device_stats(conn, site_id, start, end, limit: int = DEFAULT_LIMIT) -> list[BreakdownRow]:
    return _breakdown(conn, "device", site_id, start, end, limit)


def get_browser_stats(conn, site_id, start, end, limit: int = DEFAULT_LIMIT) -> list[BreakdownRow]:
    return _breakdown(conn, "browser", site_id, start, end, limit)


def get_country_stats(conn, site_id, start, end, limit: int = DEFAULT_LIMIT) -> list[BreakdownRow]:
    """Top countries; events that could not be geolocated are excluded."""
    return _breakdown(conn, "country", site_id, start, end, limit)


# ------------------------------------------------------------------------------
# Active sessions and dashboard
# ------------------------------------------------------------------------------


def get_active_sessions(
    conn: duckdb.DuckDBPyConnection,
    site_id: str,
    minutes: int = DEFAULT_ACTIVE_WINDOW_MINUTES,
    now: datetime | None = None,
) -> int:
    """Sessions still open with activity in the trailing ``minutes`` window."""
    now = now or datetime.now(timezone.utc)
    cutoff = to_db_time(now - timedelta(minutes=minutes))
    rows = _query(
        conn,
        "SELECT COUNT(*) FROM sessions WHERE site_id = ? AND is_active AND last_activity >= ?",
        [site_id, cutoff],
    )
    return int(rows[0][0])


def _on_cursor(conn: duckdb.DuckDBPyConnection, fn, *args, **kwargs):
    # DuckDB connections are not safe to share across threads; cursors are
    try:
        cursor = conn.cursor()
    except duckdb.Error as exc:
        raise StorageError("Could not open a warehouse cursor") from exc
    try:
        return fn(cursor, *args, **kwargs)
    finally:
        cursor.close()


def get_dashboard(
    conn: duckdb.DuckDBPyConnection,
    site_id: str,
    start: datetime,
    end: datetime,
    active_window_minutes: int = DEFAULT_ACTIVE_WINDOW_MINUTES,
    now: datetime | None = None,
) -> Dashboard:
    """Run every dashboard query concurrently and merge the results.

    There is no partial result: if any query fails, its exception
    propagates and the whole dashboard fails.
    """
    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = {
            "overview": pool.submit(_on_cursor, conn, get_overview, site_id, start, end),
            "active_sessions": pool.submit(
                _on_cursor, conn, get_active_sessions, site_id, active_window_minutes, now
            ),
            "pageviews_over_time": pool.submit(
                _on_cursor, conn, get_pageviews_over_time, site_id, start, end
            ),
            "top_pages": pool.submit(_on_cursor, conn, get_top_pages, site_id, start, end),
            "referrers": pool.submit(_on_cursor, conn, get_top_referrers, site_id, start, end),
            "devices": pool.submit(_on_cursor, conn, get_device_stats, site_id, start, end),
            "browsers": pool.submit(_on_cursor, conn, get_browser_stats, site_id, start, end),
            "countries": pool.submit(_on_cursor, conn, get_country_stats, site_id, start, end),
        }
        results = {name: future.result() for name, future in futures.items()}
    return Dashboard(**results)


def format_report(site_id: str, start: datetime, end: datetime, dashboard: Dashboard) -> str:
    """Format a dashboard as a human-readable report."""
    ov = dashboard.overview
    lines = [
        f"{'=' * 60}",
        f"SITE ANALYTICS: {site_id}",
        f"  {start:%Y-%m-%d %H:%M} -> {end:%Y-%m-%d %H:%M} (UTC)",
        f"{'=' * 60}",
        "",
        "OVERVIEW",
        f"  Pageviews:        {ov.pageviews}",
        f"  Unique visitors:  {ov.unique_visitors}",
        f"  Sessions:         {ov.sessions}",
        f"  Avg duration:     {ov.avg_duration}s",
        f"  Bounce rate:      {ov.bounce_rate}%",
        f"  Active sessions:  {dashboard.active_sessions}",
    ]
    sections = [
        ("TOP PAGES", dashboard.top_pages),
        ("TOP REFERRERS", dashboard.referrers),
        ("DEVICES", dashboard.devices),
        ("BROWSERS", dashboard.browsers),
        ("COUNTRIES", dashboard.countries),
    ]
    for title, rows in sections:
        lines += ["", title]
        if not rows:
            lines.append("  (none)")
        for row in rows:
            lines.append(f"  {row.value:<40} {row.pageviews:>7} views {row.unique_visitors:>6} visitors")
    lines.append(f"{'=' * 60}")
    return "\n".join(lines)

