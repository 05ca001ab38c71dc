"""CLI entrypoint: print a site's analytics report from the warehouse.

Usage:
    python -m src.analysis.run --site my-site
    python -m src.analysis.run --site my-site --db data/tracker.duckdb --days 7
"""

import argparse
from datetime import datetime, timedelta, timezone

from src.analysis.metrics import Dashboard, format_report, get_dashboard
from src.config import get_settings
from src.warehouse.db import count_events, get_connection, init_db


def run_report(
    site_id: str,
    db_path: str = "data/tracker.duckdb",
    days: int = 30,
    now: datetime | None = None,
) -> Dashboard | None:
    """Compute and print the dashboard for the last ``days`` days."""
    end = now or datetime.now(timezone.utc)
    start = end - timedelta(days=days)

    conn = get_connection(db_path)
    try:
        init_db(conn)
        if count_events(conn, site_id) == 0:
            print(f"No events found for site {site_id}.")
            return None
        dashboard = get_dashboard(conn, site_id, start, end, now=end)
    finally:
        conn.close()

    print(format_report(site_id, start, end, dashboard))
    return dashboard


def main(args: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Print a site analytics report")
    parser.add_argument("--site", required=True, help="Site ID")
    parser.add_argument("--db", type=str, default=get_settings().db_path, help="Database path")
    parser.add_argument("--days", type=int, default=30, help="Report window in days")
    opts = parser.parse_args(args)
    run_report(opts.site, opts.db, opts.days)


if __name__ == "__main__":
    main()
