"""
Shared fixtures for Squache Monitor tests.
"""

import builtins
import contextlib
import datetime
import os
import tempfile

import pytest

SAMPLE_LINE = (
    '1702900000.123 150 192.168.1.1 TCP_HIT/200 12345 GET http://example.com/image.jpg '
    '- HIER_DIRECT/1.2.3.4 image/jpeg "vpn" "US"'
)


@pytest.fixture
def temp_db(monkeypatch):
    """Create temporary test database with full schema."""
    import squache_monitor.config as config
    import squache_monitor.database as database

    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    monkeypatch.setattr(config, "DATABASE_FILE", path)
    monkeypatch.setattr(database, "DATABASE_FILE", path)

    try:
        database.init_db(path)

        yield path
    finally:
        for suffix in ("", "-wal", "-shm"):
            with contextlib.suppress(builtins.BaseException):
                os.unlink(path + suffix)


@pytest.fixture
def sample_line():
    """One strict-format access log line (cache hit, 12345 bytes)."""
    return SAMPLE_LINE


@pytest.fixture
def make_event():
    """Factory for access event dicts as produced by the parser."""

    def _make(
        timestamp=None,
        url="http://example.com/index.html",
        cache_status="TCP_MISS",
        http_status=200,
        bytes_sent=1000,
        response_time_ms=100,
        method="GET",
        client_ip="10.0.0.1",
        mime_type="text/html",
        upstream_type=None,
        upstream_country=None,
    ):
        timestamp = timestamp or datetime.datetime.now(datetime.timezone.utc)
        return {
            "timestamp": timestamp,
            "ts_unix": timestamp.timestamp(),
            "response_time_ms": response_time_ms,
            "client_ip": client_ip,
            "cache_status": cache_status,
            "http_status": http_status,
            "bytes_sent": bytes_sent,
            "method": method,
            "url": url,
            "username": None,
            "hierarchy_status": "HIER_DIRECT",
            "server_ip": "1.2.3.4",
            "mime_type": mime_type,
            "upstream_type": upstream_type,
            "upstream_country": upstream_country,
            "is_hit": "HIT" in cache_status,
        }

    return _make


@pytest.fixture
def app_state_stub(temp_db):
    """A plain dict carrying the shared handles the background tasks expect on the aiohttp app."""
    import asyncio
    import concurrent.futures

    from squache_monitor.state import IngestionCounters, WindowAccumulator

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=2)
    app = {
        "db_path": temp_db,
        "accumulator": WindowAccumulator(),
        "ingest_counters": IngestionCounters(),
        "db_write_queue": asyncio.Queue(maxsize=100),
        "db_write_lock": asyncio.Lock(),
        "db_executor": executor,
        "retention_days": 7,
    }
    try:
        yield app
    finally:
        executor.shutdown(wait=True)
