"""Tests for dashboard data export and the report CLI."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import duckdb
import pytest

from src.analysis import export, run
from src.analysis.export import export_dashboard_data
from src.analysis.run import run_report
from src.collector.schemas import Event, EventType
from src.errors import StorageError
from src.sessions.stitcher import stitch_event
from src.warehouse.db import get_connection, init_db, insert_event

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def populated_db(tmp_path):
    """File-backed DB with a handful of pageviews for site_a."""
    db_path = str(tmp_path / "test.duckdb")
    conn = get_connection(db_path)
    init_db(conn)

    for i, (page, hours_ago) in enumerate([("/", 50), ("/", 26), ("/pricing", 2), ("/docs", 1)]):
        event = Event(
            site_id="site_a",
            event_type=EventType.PAGEVIEW,
            page=page,
            session_id=f"s{i}",
            visitor_id=f"v{i % 2}",
            timestamp=NOW - timedelta(hours=hours_ago),
        )
        insert_event(conn, event)
        stitch_event(conn, event)
    conn.close()
    return db_path


class TestExportDashboardData:
    def test_export_creates_json_file(self, populated_db, tmp_path):
        out = str(tmp_path / "dashboard" / "data.json")
        export_dashboard_data("site_a", populated_db, out, now=NOW)

        assert Path(out).exists()
        content = json.loads(Path(out).read_text())
        assert "overview" in content
        assert "charts" in content
        assert content["siteId"] == "site_a"
        assert content["dateRange"]["end"] == NOW.isoformat()
        assert "exportedAt" in content

    def test_overview_totals(self, populated_db, tmp_path):
        data = export_dashboard_data("site_a", populated_db, str(tmp_path / "out.json"), now=NOW)
        assert data["overview"]["pageviews"] == 4
        assert data["overview"]["uniqueVisitors"] == 2
        assert data["overview"]["sessions"] == 4
        assert data["charts"]["topPages"][0] == {"page": "/", "pageviews": 2, "uniqueVisitors": 2}

    def test_days_window_applied(self, populated_db, tmp_path):
        data = export_dashboard_data(
            "site_a", populated_db, str(tmp_path / "out.json"), days=1, now=NOW
        )
        assert data["overview"]["pageviews"] == 2

    def test_hourly_interval(self, populated_db, tmp_path):
        data = export_dashboard_data(
            "site_a", populated_db, str(tmp_path / "out.json"), interval="hour", now=NOW
        )
        labels = [b["date"] for b in data["charts"]["pageviewsOverTime"]]
        assert labels == sorted(labels)
        assert len(labels) == 4

    def test_unknown_site_exports_zeros(self, populated_db, tmp_path):
        data = export_dashboard_data("nobody", populated_db, str(tmp_path / "out.json"), now=NOW)
        assert data["overview"]["pageviews"] == 0
        assert data["charts"]["topPages"] == []


class TestRunReport:
    def test_prints_report(self, populated_db, capsys):
        dashboard = run_report("site_a", populated_db, days=7, now=NOW)
        out = capsys.readouterr().out
        assert dashboard is not None
        assert dashboard.overview.pageviews == 4
        assert "SITE ANALYTICS: site_a" in out
        assert "/pricing" in out

    def test_empty_site(self, populated_db, capsys):
        assert run_report("nobody", populated_db) is None
        assert "No events found for site nobody." in capsys.readouterr().out


@pytest.fixture()
def failing_dashboard(monkeypatch):
    """Make every dashboard query fail and record the connections opened."""
    opened = []

    def tracking_connection(db_path):
        conn = get_connection(db_path)
        opened.append(conn)
        return conn

    def fail(*args, **kwargs):
        raise StorageError("Aggregation query failed")

    for module in (run, export):
        monkeypatch.setattr(module, "get_connection", tracking_connection)
        monkeypatch.setattr(module, "get_dashboard", fail)
    return opened


class TestConnectionCleanup:
    def test_report_closes_connection_on_failure(self, populated_db, failing_dashboard):
        with pytest.raises(StorageError):
            run_report("site_a", populated_db, now=NOW)
        with pytest.raises(duckdb.Error):
            failing_dashboard[0].execute("SELECT 1")

    def test_export_closes_connection_on_failure(self, populated_db, failing_dashboard, tmp_path):
        out = tmp_path / "out.json"
        with pytest.raises(StorageError):
            export_dashboard_data("site_a", populated_db, str(out), now=NOW)
        with pytest.raises(duckdb.Error):
            failing_dashboard[0].execute("SELECT 1")
        assert not out.exists()
