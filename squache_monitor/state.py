import datetime
import threading
from dataclasses import dataclass, asdict
from typing import Dict, Any


def iso_utc(dt: datetime.datetime) -> str:
    """Fixed-width UTC ISO-8601 text with milliseconds, so stored timestamps sort correctly as strings."""
    return dt.astimezone(datetime.timezone.utc).isoformat(timespec='milliseconds')


@dataclass
class WindowTotals:
    """Counters for one aggregation window."""
    requests: int = 0
    hits: int = 0
    misses: int = 0
    bytes_sent: int = 0
    cache_bytes: int = 0
    total_response_time: int = 0

    def add_event(self, event: Dict[str, Any]):
        bytes_sent = event['bytes_sent']
        self.requests += 1
        self.bytes_sent += bytes_sent
        self.total_response_time += event['response_time_ms']
        if event['is_hit']:
            self.hits += 1
            self.cache_bytes += bytes_sent
        else:
            self.misses += 1

    @property
    def avg_response_time(self) -> float:
        return self.total_response_time / self.requests if self.requests else 0.0

    def to_row(self, window_start: datetime.datetime, period: str) -> Dict[str, Any]:
        """Builds the cache_stats row for a completed window."""
        window_start = window_start.astimezone(datetime.timezone.utc).replace(second=0, microsecond=0)
        return {
            'window_start': iso_utc(window_start),
            'period': period,
            'total_requests': self.requests,
            'cache_hits': self.hits,
            'cache_misses': self.misses,
            'bytes_sent': self.bytes_sent,
            'bytes_from_cache': self.cache_bytes,
            'avg_response_time': self.avg_response_time,
        }


class WindowAccumulator:
    """
    Totals for the window currently being filled.

    The ingestion path calls add_event() while the rollup writer calls drain();
    both take the same lock so a drain never loses or double-counts an event.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._totals = WindowTotals()

    def add_event(self, event: Dict[str, Any]):
        with self._lock:
            self._totals.add_event(event)

    def drain(self) -> WindowTotals:
        """Returns the current totals and starts a fresh window in one step."""
        with self._lock:
            totals, self._totals = self._totals, WindowTotals()
        return totals

    def snapshot(self) -> WindowTotals:
        with self._lock:
            return WindowTotals(**asdict(self._totals))


@dataclass
class IngestionCounters:
    """Operator-facing counters for the ingestion pipeline."""
    lines: int = 0
    events: int = 0
    unparseable: int = 0
    relaxed_lines: int = 0
    dropped_events: int = 0
    failed_inserts: int = 0
    windows_flushed: int = 0
    windows_lost: int = 0

    def to_payload(self) -> Dict[str, int]:
        return asdict(self)
