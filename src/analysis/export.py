"""Export a site's dashboard data as JSON for static reporting.

Writes the same document the ``/analytics/dashboard`` endpoint returns,
plus the date range and export time.

Usage:
    python -m src.analysis.export --site my-site
    python -m src.analysis.export --site my-site --db data/tracker.duckdb --out reports/my-site.json
"""

import argparse
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from src.analysis.metrics import Interval, get_dashboard, get_pageviews_over_time
from src.config import get_settings
from src.warehouse.db import get_connection, init_db


def export_dashboard_data(
    site_id: str,
    db_path: str = "data/tracker.duckdb",
    output_path: str = "reports/dashboard.json",
    days: int = 30,
    interval: Interval | str = Interval.DAY,
    now: datetime | None = None,
) -> dict:
    """Export dashboard data for one site to a JSON file."""
    end = now or datetime.now(timezone.utc)
    start = end - timedelta(days=days)

    conn = get_connection(db_path)
    try:
        init_db(conn)
        data = get_dashboard(conn, site_id, start, end, now=end).to_dict()
        if Interval(interval) != Interval.DAY:
            data["charts"]["pageviewsOverTime"] = [
                b.to_dict() for b in get_pageviews_over_time(conn, site_id, start, end, interval)
            ]
    finally:
        conn.close()

    data["siteId"] = site_id
    data["dateRange"] = {"start": start.isoformat(), "end": end.isoformat()}
    data["exportedAt"] = datetime.now(timezone.utc).isoformat()

    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(data, indent=2))
    print(f"Dashboard data for {site_id} exported to {output_path}")
    return data


def main(args: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Export dashboard data")
    parser.add_argument("--site", required=True, help="Site ID")
    parser.add_argument("--db", default=get_settings().db_path, help="Database path")
    parser.add_argument("--out", default="reports/dashboard.json", help="Output JSON path")
    parser.add_argument("--days", type=int, default=30, help="Export window in days")
    parser.add_argument(
        "--interval", choices=[i.value for i in Interval], default="day", help="Time series bucket"
    )
    opts = parser.parse_args(args)
    export_dashboard_data(opts.site, opts.db, opts.out, opts.days, opts.interval)


if __name__ == "__main__":
    main()
