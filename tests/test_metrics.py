"""Tests for dashboard aggregations."""

from datetime import datetime, timedelta, timezone

import pytest

from src.analysis import metrics
from src.analysis.metrics import (
    Interval,
    bounce_rate,
    format_report,
    get_active_sessions,
    get_browser_stats,
    get_country_stats,
    get_dashboard,
    get_device_stats,
    get_overview,
    get_pageviews_over_time,
    get_top_pages,
    get_top_referrers,
    round_half_up,
)
from src.collector.schemas import Event, EventType
from src.context.referrer import ReferrerType
from src.context.useragent import Device
from src.errors import StorageError
from src.sessions.stitcher import end_session, stitch_event
from src.warehouse.db import get_connection, init_db, insert_event

SITE = "site_a"
T0 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
START = T0 - timedelta(days=1)
END = T0 + timedelta(days=3)


@pytest.fixture
def db():
    conn = get_connection(":memory:")
    init_db(conn)
    yield conn
    conn.close()


def _evt(conn, session_id, page="/", at=T0, event_type=EventType.PAGEVIEW, site_id=SITE, **fields):
    event = Event(
        site_id=site_id,
        event_type=event_type,
        page=page,
        session_id=session_id,
        visitor_id=f"v-{session_id}",
        timestamp=at,
        **fields,
    )
    insert_event(conn, event)
    stitch_event(conn, event)


class TestRounding:
    @pytest.mark.parametrize("value, expected", [(0.5, 1), (1.49, 1), (2.5, 3), (90.5, 91), (33.3, 33)])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected

    def test_bounce_rate_no_sessions(self):
        assert bounce_rate(0, 0) == 0

    def test_bounce_rate_half(self):
        assert bounce_rate(1, 2) == 50


class TestOverview:
    def test_empty_site(self, db):
        stats = get_overview(db, SITE, START, END)
        assert stats.pageviews == 0
        assert stats.unique_visitors == 0
        assert stats.sessions == 0
        assert stats.avg_duration == 0
        assert stats.bounce_rate == 0

    def test_bounce_rate_over_ten_sessions(self, db):
        for i, pageviews in enumerate([1, 1, 2, 3, 1, 1, 4, 2, 1, 1]):
            for n in range(pageviews):
                _evt(db, f"s{i}", page=f"/p{n}", at=T0 + timedelta(seconds=n))
        stats = get_overview(db, SITE, START, END)
        assert stats.sessions == 10
        assert stats.pageviews == 17
        assert stats.unique_visitors == 10
        assert stats.bounce_rate == 60

    def test_avg_duration_excludes_zero_length_sessions(self, db):
        _evt(db, "bounce")
        _evt(db, "short")
        _evt(db, "short", at=T0 + timedelta(seconds=60))
        _evt(db, "long")
        _evt(db, "long", at=T0 + timedelta(seconds=121))
        stats = get_overview(db, SITE, START, END)
        assert stats.avg_duration == 91
        assert stats.bounce_rate == 33

    def test_non_pageview_events_not_counted_as_pageviews(self, db):
        _evt(db, "s1")
        _evt(db, "s1", at=T0 + timedelta(seconds=1), event_type=EventType.CLICK)
        stats = get_overview(db, SITE, START, END)
        assert stats.pageviews == 1
        assert stats.bounce_rate == 100

    def test_scoped_to_site_and_range(self, db):
        _evt(db, "mine")
        _evt(db, "other", site_id="site_b")
        _evt(db, "old", at=T0 - timedelta(days=10))
        stats = get_overview(db, SITE, START, END)
        assert stats.pageviews == 1
        assert stats.sessions == 1


class TestPageviewsOverTime:
    def _seed(self, db):
        _evt(db, "a")
        _evt(db, "b", at=T0 + timedelta(minutes=5))
        _evt(db, "c", at=T0 + timedelta(days=1, hours=-1))

    def test_daily_buckets_ascending(self, db):
        self._seed(db)
        buckets = get_pageviews_over_time(db, SITE, START, END, Interval.DAY)
        assert [b.label for b in buckets] == ["2024-05-01", "2024-05-02"]
        assert [b.pageviews for b in buckets] == [2, 1]
        assert [b.unique_visitors for b in buckets] == [2, 1]
        assert buckets[0].start == datetime(2024, 5, 1, tzinfo=timezone.utc)

    def test_hourly_labels(self, db):
        self._seed(db)
        buckets = get_pageviews_over_time(db, SITE, START, END, "hour")
        assert buckets[0].label == "2024-05-01 10:00"
        assert buckets[0].pageviews == 2

    def test_week_and_month_labels(self, db):
        self._seed(db)
        week = get_pageviews_over_time(db, SITE, START, END, Interval.WEEK)
        assert [b.label for b in week] == ["2024-W18"]
        month = get_pageviews_over_time(db, SITE, START, END, Interval.MONTH)
        assert [(b.label, b.pageviews) for b in month] == [("2024-05", 3)]

    def test_empty_buckets_omitted(self, db):
        assert get_pageviews_over_time(db, SITE, START, END) == []

    def test_unknown_interval(self, db):
        with pytest.raises(ValueError):
            get_pageviews_over_time(db, SITE, START, END, "year")


class TestBreakdowns:
    def test_top_pages_ordered_and_limited(self, db):
        for i, page in enumerate(["/a", "/a", "/a", "/b", "/b", "/c"]):
            _evt(db, f"s{i}", page=page)
        _evt(db, "s9", page="/z", event_type=EventType.CLICK)
        rows = get_top_pages(db, SITE, START, END, limit=2)
        assert [(r.value, r.pageviews) for r in rows] == [("/a", 3), ("/b", 2)]

    def test_ties_broken_by_value(self, db):
        _evt(db, "s1", page="/b")
        _evt(db, "s2", page="/a")
        rows = get_top_pages(db, SITE, START, END)
        assert [r.value for r in rows] == ["/a", "/b"]

    def test_referrers_only_external(self, db):
        external = ReferrerType.EXTERNAL
        _evt(db, "s1", referrer="https://google.com/", referrer_type=external)
        _evt(db, "s2", referrer="https://google.com/", referrer_type=external)
        _evt(db, "s3", referrer="https://bing.com/", referrer_type=external)
        _evt(db, "s4", referrer="https://mysite.com/x", referrer_type=ReferrerType.INTERNAL)
        _evt(db, "s5")
        rows = get_top_referrers(db, SITE, START, END)
        assert [(r.value, r.pageviews) for r in rows] == [
            ("https://google.com/", 2),
            ("https://bing.com/", 1),
        ]

    def test_countries_exclude_unknown(self, db):
        _evt(db, "s1", country="DE")
        _evt(db, "s2", country="DE")
        _evt(db, "s3")
        rows = get_country_stats(db, SITE, START, END)
        assert [(r.value, r.pageviews, r.unique_visitors) for r in rows] == [("DE", 2, 2)]

    def test_devices_and_browsers(self, db):
        _evt(db, "s1", device=Device.MOBILE, browser="Safari 17.1")
        _evt(db, "s2", device=Device.MOBILE, browser="Chrome 120")
        _evt(db, "s3", device=Device.DESKTOP, browser="Chrome 120")
        devices = get_device_stats(db, SITE, START, END)
        assert [(r.value, r.pageviews) for r in devices] == [("mobile", 2), ("desktop", 1)]
        browsers = get_browser_stats(db, SITE, START, END)
        assert browsers[0].value == "Chrome 120"

    def test_to_dict_uses_dimension_key(self, db):
        _evt(db, "s1", page="/a")
        (row,) = get_top_pages(db, SITE, START, END)
        assert row.to_dict("page") == {"page": "/a", "pageviews": 1, "uniqueVisitors": 1}


class TestActiveSessions:
    def test_counts_recent_open_sessions(self, db):
        now = T0 + timedelta(hours=1)
        _evt(db, "recent", at=now - timedelta(minutes=10))
        _evt(db, "stale", at=now - timedelta(minutes=40))
        _evt(db, "ended", at=now - timedelta(minutes=5))
        end_session(db, "ended", now=now)
        assert get_active_sessions(db, SITE, minutes=30, now=now) == 1


class TestDashboard:
    def test_combines_all_sections(self, db):
        _evt(db, "s1", page="/a", country="DE", device=Device.DESKTOP)
        _evt(db, "s1", page="/b", at=T0 + timedelta(seconds=30))
        dash = get_dashboard(db, SITE, START, END, now=T0 + timedelta(minutes=1))
        data = dash.to_dict()
        assert data["overview"] == {
            "pageviews": 2,
            "uniqueVisitors": 1,
            "sessions": 1,
            "avgDuration": 30,
            "bounceRate": 0,
            "activeSessions": 1,
        }
        assert set(data["charts"]) == {
            "pageviewsOverTime",
            "topPages",
            "referrers",
            "devices",
            "browsers",
            "countries",
        }
        assert data["charts"]["pageviewsOverTime"] == [
            {"date": "2024-05-01", "pageviews": 2, "uniqueVisitors": 1}
        ]
        assert data["charts"]["countries"] == [{"country": "DE", "pageviews": 1, "uniqueVisitors": 1}]

    def test_any_failing_query_fails_dashboard(self, db, monkeypatch):
        def boom(*args, **kwargs):
            raise StorageError("Aggregation query failed")

        monkeypatch.setattr(metrics, "get_top_pages", boom)
        with pytest.raises(StorageError):
            get_dashboard(db, SITE, START, END)

    def test_closed_connection_is_storage_error(self):
        conn = get_connection(":memory:")
        init_db(conn)
        conn.close()
        with pytest.raises(StorageError):
            get_dashboard(conn, SITE, START, END)


class TestFormatReport:
    def test_report_lists_sections(self, db):
        _evt(db, "s1", page="/pricing")
        dash = get_dashboard(db, SITE, START, END, now=T0)
        report = format_report(SITE, START, END, dash)
        assert f"SITE ANALYTICS: {SITE}" in report
        assert "Pageviews:        1" in report
        assert "Bounce rate:      100%" in report
        assert "/pricing" in report
        assert "(none)" in report
