"""
Tests for the SQLite store: schema, writes, retention, rollups and listing queries.
"""

import datetime
import sqlite3

import pytest

from squache_monitor import database
from squache_monitor.state import WindowTotals

UTC = datetime.timezone.utc
NOW = datetime.datetime(2024, 3, 10, 12, 30, 0, tzinfo=UTC)


def _count(db_path, table):
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


def _window_row(window_start, requests=2, hits=1, bytes_sent=300, cache_bytes=100, avg=50.0, period="minute"):
    return {
        "window_start": database.iso_utc(window_start),
        "period": period,
        "total_requests": requests,
        "cache_hits": hits,
        "cache_misses": requests - hits,
        "bytes_sent": bytes_sent,
        "bytes_from_cache": cache_bytes,
        "avg_response_time": avg,
    }


def test_init_db_creates_tables_and_indexes(temp_db):
    conn = sqlite3.connect(temp_db)
    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    indexes = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}
    conn.close()

    assert {"access_logs", "cache_stats"} <= tables
    assert {
        "idx_access_logs_timestamp",
        "idx_access_logs_cache_status",
        "idx_access_logs_url",
        "idx_access_logs_client_ip",
        "idx_cache_stats_period_time",
    } <= indexes


def test_init_db_is_idempotent(temp_db):
    database.init_db(temp_db)
    database.init_db(temp_db)
    assert _count(temp_db, "access_logs") == 0


def test_batch_write_round_trips_fields(temp_db, make_event):
    ts = datetime.datetime(2024, 3, 10, 12, 0, 0, 123000, tzinfo=UTC)
    event = make_event(timestamp=ts, cache_status="TCP_HIT", upstream_type="vpn", upstream_country="US")

    database.blocking_db_batch_write(temp_db, [event])
    events = database.blocking_get_events_in_range(temp_db, ts - datetime.timedelta(seconds=1))

    assert len(events) == 1
    stored = events[0]
    assert stored["timestamp"] == ts
    assert stored["is_hit"] is True
    assert stored["upstream_type"] == "vpn"
    assert stored["upstream_country"] == "US"
    assert stored["username"] is None
    assert stored["id"] > 0


def test_negative_bytes_are_rejected(temp_db, make_event):
    with pytest.raises(sqlite3.IntegrityError):
        database.blocking_write_access_event(temp_db, make_event(bytes_sent=-1))
    assert _count(temp_db, "access_logs") == 0


def test_window_stats_are_never_overwritten(temp_db):
    start = datetime.datetime(2024, 3, 10, 12, 0, tzinfo=UTC)

    assert database.blocking_write_window_stats(temp_db, _window_row(start, requests=5)) is True
    assert database.blocking_write_window_stats(temp_db, _window_row(start, requests=9)) is False

    rows = database.blocking_get_window_stats(temp_db, start)
    assert len(rows) == 1
    assert rows[0]["total_requests"] == 5


def test_prune_access_events_respects_horizon(temp_db, make_event):
    old = make_event(timestamp=NOW - datetime.timedelta(days=7, seconds=1))
    boundary = make_event(timestamp=NOW - datetime.timedelta(days=7))
    recent = make_event(timestamp=NOW - datetime.timedelta(days=1))
    database.blocking_db_batch_write(temp_db, [old, boundary, recent])

    deleted = database.blocking_prune_access_events(temp_db, 7, now=NOW)

    assert deleted == 1
    remaining = database.blocking_get_events_in_range(temp_db, NOW - datetime.timedelta(days=30))
    assert [e["timestamp"] for e in remaining] == [boundary["timestamp"], recent["timestamp"]]


def test_db_prune_applies_separate_rollup_retention(temp_db, make_event):
    database.blocking_db_batch_write(temp_db, [make_event(timestamp=NOW - datetime.timedelta(days=10))])
    database.blocking_write_window_stats(temp_db, _window_row(NOW - datetime.timedelta(days=40)))
    database.blocking_write_window_stats(temp_db, _window_row(NOW - datetime.timedelta(days=10)))
    database.blocking_write_window_stats(temp_db, _window_row(NOW - datetime.timedelta(days=400), period="hour"))

    pruned = database.blocking_db_prune(temp_db, 7, minute_stats_retention_days=30, hour_stats_retention_days=0,
                                        now=NOW)

    assert pruned == {"access_logs": 1, "minute_stats": 1}
    assert _count(temp_db, "access_logs") == 0
    assert _count(temp_db, "cache_stats") == 2


def test_hourly_rollup_uses_weighted_average(temp_db):
    hour = datetime.datetime(2024, 3, 10, 10, 0, tzinfo=UTC)
    database.blocking_write_window_stats(temp_db, _window_row(hour, requests=1, hits=1, avg=100.0))
    database.blocking_write_window_stats(
        temp_db, _window_row(hour + datetime.timedelta(minutes=5), requests=3, hits=0, avg=20.0))
    # The current hour is still open and must not be compacted
    database.blocking_write_window_stats(temp_db, _window_row(NOW.replace(minute=0)))

    written = database.blocking_rollup_hourly_stats(temp_db, now=NOW)

    assert written == 1
    rows = database.blocking_get_window_stats(temp_db, hour, period="hour")
    assert len(rows) == 1
    row = rows[0]
    assert row["window_start"] == "2024-03-10T10:00:00.000+00:00"
    assert row["total_requests"] == 4
    assert row["cache_hits"] == 1
    assert row["cache_misses"] == 3
    assert row["avg_response_time"] == pytest.approx((100.0 + 3 * 20.0) / 4)

    assert database.blocking_rollup_hourly_stats(temp_db, now=NOW) == 0


def test_hourly_rollup_picks_up_late_minute_rows(temp_db):
    hour = datetime.datetime(2024, 3, 10, 11, 0, tzinfo=UTC)
    database.blocking_write_window_stats(
        temp_db, _window_row(hour + datetime.timedelta(minutes=10), requests=5, hits=5, avg=10.0))
    assert database.blocking_rollup_hourly_stats(temp_db, now=NOW) == 1

    # The last minute of the hour is flushed after the hour was first compacted
    database.blocking_write_window_stats(
        temp_db, _window_row(hour + datetime.timedelta(minutes=59), requests=7, hits=0, avg=40.0))
    assert database.blocking_rollup_hourly_stats(temp_db, now=NOW) == 1

    rows = database.blocking_get_window_stats(temp_db, hour, period="hour")
    assert len(rows) == 1
    assert rows[0]["total_requests"] == 12
    assert rows[0]["cache_hits"] == 5
    assert rows[0]["cache_misses"] == 7
    assert rows[0]["avg_response_time"] == pytest.approx((5 * 10.0 + 7 * 40.0) / 12)


def test_hourly_rollup_keeps_hour_row_after_minute_pruning(temp_db):
    hour = datetime.datetime(2024, 3, 10, 11, 0, tzinfo=UTC)
    for minute, requests in ((5, 3), (50, 4)):
        database.blocking_write_window_stats(
            temp_db, _window_row(hour + datetime.timedelta(minutes=minute), requests=requests, hits=0))
    database.blocking_rollup_hourly_stats(temp_db, now=NOW)

    conn = sqlite3.connect(temp_db)
    try:
        conn.execute("DELETE FROM cache_stats WHERE period = 'minute' AND window_start < ?",
                     (database.iso_utc(hour + datetime.timedelta(minutes=30)),))
        conn.commit()
    finally:
        conn.close()

    assert database.blocking_rollup_hourly_stats(temp_db, now=NOW) == 0
    rows = database.blocking_get_window_stats(temp_db, hour, period="hour")
    assert rows[0]["total_requests"] == 7


def test_backfill_builds_minute_rows_from_events(temp_db, make_event):
    minute = datetime.datetime(2024, 3, 10, 9, 15, tzinfo=UTC)
    database.blocking_db_batch_write(temp_db, [
        make_event(timestamp=minute + datetime.timedelta(seconds=1), cache_status="TCP_HIT",
                   bytes_sent=100, response_time_ms=10),
        make_event(timestamp=minute + datetime.timedelta(seconds=59), cache_status="TCP_MISS",
                   bytes_sent=300, response_time_ms=30),
        make_event(timestamp=minute + datetime.timedelta(minutes=1), cache_status="TCP_MISS"),
    ])

    assert database.blocking_backfill_window_stats(temp_db) == 2
    rows = database.blocking_get_window_stats(temp_db, minute)
    assert [r["window_start"] for r in rows] == ["2024-03-10T09:15:00.000+00:00", "2024-03-10T09:16:00.000+00:00"]
    first = rows[0]
    assert first["total_requests"] == 2
    assert first["cache_hits"] == 1
    assert first["bytes_from_cache"] == 100
    assert first["avg_response_time"] == pytest.approx(20.0)

    # Existing windows are kept as they are
    assert database.blocking_backfill_window_stats(temp_db) == 0


def test_backfill_rows_match_live_window_rows(temp_db, make_event):
    ts = datetime.datetime(2024, 3, 10, 9, 15, 30, tzinfo=UTC)
    event = make_event(timestamp=ts, cache_status="TCP_HIT", bytes_sent=42, response_time_ms=7)
    database.blocking_db_batch_write(temp_db, [event])
    database.blocking_backfill_window_stats(temp_db)

    totals = WindowTotals()
    totals.add_event(event)
    live_row = totals.to_row(ts, "minute")
    stored = database.blocking_get_window_stats(temp_db, ts.replace(second=0))[0]
    assert stored == live_row


class TestGetAccessLogs:
    @pytest.fixture
    def populated_db(self, temp_db, make_event):
        base = datetime.datetime(2024, 3, 10, 8, 0, tzinfo=UTC)
        events = [
            make_event(timestamp=base, url="http://example.com/a", client_ip="10.0.0.1", method="GET"),
            make_event(timestamp=base + datetime.timedelta(minutes=1), url="http://EXAMPLE.com/b",
                       client_ip="10.0.0.2", http_status=404, method="GET"),
            make_event(timestamp=base + datetime.timedelta(minutes=2), url="https://other.org/100%_done",
                       client_ip="10.0.0.1", method="POST"),
        ]
        database.blocking_db_batch_write(temp_db, events)
        return temp_db, base

    def test_newest_first_with_total(self, populated_db):
        db_path, _ = populated_db
        result = database.blocking_get_access_logs(db_path)

        assert result["total"] == 3
        assert [log["url"] for log in result["logs"]] == [
            "https://other.org/100%_done", "http://EXAMPLE.com/b", "http://example.com/a"]
        assert isinstance(result["logs"][0]["timestamp"], str)

    def test_filters(self, populated_db):
        db_path, base = populated_db

        assert database.blocking_get_access_logs(db_path, {"url": "example.COM"})["total"] == 2
        assert database.blocking_get_access_logs(db_path, {"ip": "10.0.0.1"})["total"] == 2
        assert database.blocking_get_access_logs(db_path, {"status": 404})["total"] == 1
        assert database.blocking_get_access_logs(db_path, {"method": "post"})["total"] == 1
        assert database.blocking_get_access_logs(db_path, {"url": "100%_"})["total"] == 1
        assert database.blocking_get_access_logs(db_path, {"url": "0%x"})["total"] == 0
        window = {"from": base + datetime.timedelta(seconds=30), "to": base + datetime.timedelta(minutes=1)}
        assert database.blocking_get_access_logs(db_path, window)["total"] == 1

    def test_pagination_and_limit_cap(self, populated_db):
        db_path, _ = populated_db

        page = database.blocking_get_access_logs(db_path, limit=1, offset=1)
        assert page["total"] == 3
        assert page["limit"] == 1
        assert page["offset"] == 1
        assert [log["url"] for log in page["logs"]] == ["http://EXAMPLE.com/b"]

        assert database.blocking_get_access_logs(db_path, limit=50000)["limit"] == 1000
