"""Read-only analytics endpoints.

Callers are expected to be authenticated, and ``siteId`` verified as theirs,
by an upstream layer. Responses use the ``{success, data, dateRange?}``
envelope; any aggregation failure yields a generic 500.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import duckdb
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from src.analysis import metrics
from src.analysis.metrics import Interval
from src.collector.dependencies import get_app_settings, get_db
from src.config import Settings
from src.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_RANGE_DAYS = 30

router = APIRouter(prefix="/analytics", tags=["analytics"])


@dataclass(frozen=True)
class DateRange:
    site_id: str
    start: datetime
    end: datetime

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def date_range(
    site_id: str = Query(..., alias="siteId", min_length=1),
    start_date: datetime | None = Query(None, alias="startDate"),
    end_date: datetime | None = Query(None, alias="endDate"),
) -> DateRange:
    """Resolve the query window; defaults to the last 30 days ending now."""
    end = _as_utc(end_date) if end_date else datetime.now(timezone.utc)
    start = _as_utc(start_date) if start_date else end - timedelta(days=DEFAULT_RANGE_DAYS)
    if start > end:
        raise ValidationError("startDate must not be after endDate")
    return DateRange(site_id, start, end)


def _fetch(what: str, compute):
    try:
        return {"success": True, "data": compute()}
    except StorageError:
        logger.exception("Failed to fetch %s", what)
        return JSONResponse(
            status_code=500, content={"success": False, "error": f"Failed to fetch {what}"}
        )


@router.get("/dashboard")
def dashboard(
    q: DateRange = Depends(date_range),
    conn: duckdb.DuckDBPyConnection = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    result = _fetch(
        "dashboard data",
        lambda: metrics.get_dashboard(
            conn, q.site_id, q.start, q.end, settings.active_window_minutes
        ).to_dict(),
    )
    if isinstance(result, dict):
        result["dateRange"] = q.to_dict()
    return result


@router.get("/overview")
def overview(
    q: DateRange = Depends(date_range),
    conn: duckdb.DuckDBPyConnection = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    def compute() -> dict:
        stats = metrics.get_overview(conn, q.site_id, q.start, q.end)
        active = metrics.get_active_sessions(conn, q.site_id, settings.active_window_minutes)
        return {**stats.to_dict(), "activeSessions": active}

    return _fetch("overview", compute)


@router.get("/pageviews")
def pageviews(
    q: DateRange = Depends(date_range),
    interval: Interval = Query(Interval.DAY),
    conn: duckdb.DuckDBPyConnection = Depends(get_db),
):
    return _fetch(
        "pageviews",
        lambda: [
            b.to_dict()
            for b in metrics.get_pageviews_over_time(conn, q.site_id, q.start, q.end, interval)
        ],
    )


def _breakdown_route(path: str, what: str, dimension: str, query_fn):
    @router.get(path, name=f"{dimension}_breakdown")
    def breakdown(
        q: DateRange = Depends(date_range),
        limit: int = Query(metrics.DEFAULT_LIMIT, ge=1, le=100),
        conn: duckdb.DuckDBPyConnection = Depends(get_db),
    ):
        return _fetch(
            what,
            lambda: [
                row.to_dict(dimension)
                for row in query_fn(conn, q.site_id, q.start, q.end, limit)
            ],
        )

    return breakdown


_breakdown_route("/pages", "top pages", "page", metrics.get_top_pages)
_breakdown_route("/referrers", "referrers", "referrer", metrics.get_top_referrers)
_breakdown_route("/devices", "device stats", "device", metrics.get_device_stats)
_breakdown_route("/browsers", "browser stats", "browser", metrics.get_browser_stats)
_breakdown_route("/countries", "country stats", "country", metrics.get_country_stats)
