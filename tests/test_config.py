"""
Tests for configuration defaults.
"""

import importlib


def test_database_file_config():
    from squache_monitor.config import DATABASE_FILE

    assert isinstance(DATABASE_FILE, str)
    assert DATABASE_FILE


def test_retention_and_window_defaults():
    from squache_monitor import config

    assert config.DB_EVENTS_RETENTION_DAYS == 7
    assert config.STATS_WINDOW_SECONDS == 60
    assert config.WINDOW_GRANULARITIES[config.STATS_WINDOW_SECONDS] == "minute"
    assert config.LOG_RETRY_SECONDS == 30


def test_bandwidth_presets():
    from squache_monitor.config import BANDWIDTH_RANGE_PRESETS, DEFAULT_BANDWIDTH_RANGE

    assert DEFAULT_BANDWIDTH_RANGE in BANDWIDTH_RANGE_PRESETS
    assert BANDWIDTH_RANGE_PRESETS["5m"] == (300, 60)
    assert BANDWIDTH_RANGE_PRESETS["24h"][1] == 3600
    assert BANDWIDTH_RANGE_PRESETS["today"] == (None, 3600)
    for range_seconds, bucket_seconds in BANDWIDTH_RANGE_PRESETS.values():
        assert bucket_seconds > 0
        if range_seconds is not None:
            assert range_seconds % bucket_seconds == 0


def test_environment_overrides(monkeypatch):
    from squache_monitor import config

    monkeypatch.setenv("SQUID_LOG_PATH", "/tmp/proxy/access.log")
    monkeypatch.setenv("SQUACHE_MONITOR_DB_PATH", "/tmp/proxy/stats.db")
    monkeypatch.setenv("SQUACHE_MONITOR_RETENTION_DAYS", "3")
    try:
        reloaded = importlib.reload(config)
        assert reloaded.SQUID_LOG_PATH == "/tmp/proxy/access.log"
        assert reloaded.DATABASE_FILE == "/tmp/proxy/stats.db"
        assert reloaded.DB_EVENTS_RETENTION_DAYS == 3
    finally:
        monkeypatch.undo()
        importlib.reload(config)
