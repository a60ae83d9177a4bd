import asyncio
import concurrent.futures
import datetime
import logging
import os
import re
import threading
import time
from typing import Optional, Dict, Any, List

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from .config import LOG_RETRY_SECONDS, LOG_POLL_SECONDS, DROP_WARNING_INTERVAL_SECONDS
from .state import WindowAccumulator, IngestionCounters

log = logging.getLogger("SquacheMonitor.LogProcessor")

# <ts> <ms> <client> <cache>/<status> <bytes> <method> <url> <user> <hier>/<server> <mime>
_BASE_PATTERN = (
    r'^(\d+\.\d+)\s+(\d+)\s+(\S+)\s+(\S+)/(\d+)\s+(\d+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(\S+)/(\S+)\s+(\S+)'
)
STRICT_LINE_RE = re.compile(_BASE_PATTERN + r'\s+"([^"]*)"\s+"([^"]*)"')
RELAXED_LINE_RE = re.compile(_BASE_PATTERN)

UNPARSEABLE = {"type": "unparseable"}


def _dash_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or value == '-':
        return None
    return value


def _build_event(groups: tuple) -> Optional[Dict[str, Any]]:
    """Converts matched groups into an access event. Any numeric conversion failure rejects the line."""
    try:
        ts_unix = round(float(groups[0]), 3)
        response_time_ms = int(groups[1])
        http_status = int(groups[4])
        bytes_sent = int(groups[5])
        timestamp = datetime.datetime.fromtimestamp(ts_unix, tz=datetime.timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None

    cache_status = groups[3]
    return {
        "timestamp": timestamp,
        "ts_unix": ts_unix,
        "response_time_ms": response_time_ms,
        "client_ip": groups[2],
        "cache_status": cache_status,
        "http_status": http_status,
        "bytes_sent": bytes_sent,
        "method": groups[6],
        "url": groups[7],
        "username": _dash_to_none(groups[8]),
        "hierarchy_status": groups[9],
        "server_ip": groups[10],
        "mime_type": groups[11],
        "upstream_type": _dash_to_none(groups[12] if len(groups) > 12 else None),
        "upstream_country": _dash_to_none(groups[13] if len(groups) > 13 else None),
        "is_hit": "HIT" in cache_status,
    }


def parse_log_line(line: str) -> Dict[str, Any]:
    """
    Parses one proxy access log line.

    Returns {"type": "access_event", "format": "strict"|"relaxed", "data": event}
    or {"type": "unparseable"}. Never raises. Lines written before the upstream
    route/country fields were added to the log format match only the relaxed
    pattern, and their route/country are reported as absent.
    """
    if not isinstance(line, str):
        return UNPARSEABLE
    line = line.strip()

    for fmt, pattern in (("strict", STRICT_LINE_RE), ("relaxed", RELAXED_LINE_RE)):
        match = pattern.match(line)
        if match is None:
            continue
        event = _build_event(match.groups())
        if event is None:
            return UNPARSEABLE
        return {"type": "access_event", "format": fmt, "data": event}
    return UNPARSEABLE


class DropOldestWarning:
    """Rate-limits the 'write queue full' warning."""

    def __init__(self, interval: float = DROP_WARNING_INTERVAL_SECONDS):
        self.interval = interval
        self._last_warning = None
        self._since_last = 0

    def record(self, counters: IngestionCounters, queue_size: int):
        self._since_last += 1
        now = time.monotonic()
        if self._last_warning is None or now - self._last_warning >= self.interval:
            log.warning(
                f"Database write queue is full ({queue_size} events). Dropped {self._since_last} oldest "
                f"event(s) since last warning, {counters.dropped_events} in total."
            )
            self._last_warning = now
            self._since_last = 0


def enqueue_for_write(write_queue: asyncio.Queue, event: Dict[str, Any], counters: IngestionCounters,
                      drop_warning: Optional[DropOldestWarning] = None):
    """Puts an event on the bounded write queue, discarding the oldest queued event when it is full."""
    while True:
        try:
            write_queue.put_nowait(event)
            return
        except asyncio.QueueFull:
            try:
                write_queue.get_nowait()
            except asyncio.QueueEmpty:
                continue
            counters.dropped_events += 1
            if drop_warning is not None:
                drop_warning.record(counters, write_queue.qsize())


def ingest_line(line: str, accumulator: WindowAccumulator, counters: IngestionCounters,
                write_queue: asyncio.Queue, drop_warning: Optional[DropOldestWarning] = None) -> Optional[Dict[str, Any]]:
    """Parses a line, queues the event for persistence and adds it to the current window."""
    counters.lines += 1
    parsed = parse_log_line(line)
    if parsed["type"] != "access_event":
        counters.unparseable += 1
        return None

    if parsed["format"] == "relaxed":
        counters.relaxed_lines += 1
    event = parsed["data"]
    counters.events += 1
    enqueue_for_write(write_queue, event, counters, drop_warning)
    accumulator.add_event(event)
    return event


async def log_processor_task(app, line_queue: asyncio.Queue):
    """
    Consumes (line, arrival_time) tuples from the follower and feeds the ingestion pipeline.
    """
    accumulator = app['accumulator']
    counters = app['ingest_counters']
    write_queue = app['db_write_queue']
    drop_warning = DropOldestWarning()
    log.info("Log processor task started.")

    while True:
        try:
            line, _arrival_time = await line_queue.get()
            ingest_line(line, accumulator, counters, write_queue, drop_warning)
        except asyncio.CancelledError:
            log.warning("Log processor task is cancelled.")
            raise
        except Exception:
            log.error("Unexpected error while ingesting a log line:", exc_info=True)


class LogFollower:
    """
    Follows a growing log file and returns complete new lines.

    The follower never raises for a missing file: poll() simply returns no
    lines until the file can be opened. Rotation (inode change or removal) and
    truncation are detected on every empty read.
    """

    def __init__(self, log_path: str, from_beginning: bool = False):
        self.log_path = log_path
        self.from_beginning = from_beginning
        self._file = None
        self._inode = None
        self._partial = ''
        self._first_attempt = True

    @property
    def attached(self) -> bool:
        return self._file is not None

    def attach(self) -> bool:
        """Opens the log file. Returns False when it does not exist yet or cannot be opened."""
        seek_to_end = self._first_attempt and not self.from_beginning
        self._first_attempt = False
        try:
            f = open(self.log_path, 'r', errors='replace')
        except FileNotFoundError:
            return False
        except OSError as e:
            log.debug(f"Cannot open log file '{self.log_path}': {e}")
            return False

        self._file = f
        self._inode = os.fstat(f.fileno()).st_ino
        self._partial = ''
        if seek_to_end:
            f.seek(0, os.SEEK_END)
        log.info(f"Tailing log file '{self.log_path}' with inode {self._inode} "
                 f"from {'end' if seek_to_end else 'start'}.")
        return True

    def close(self):
        if self._file is not None:
            self._file.close()
        self._file = None
        self._inode = None
        self._partial = ''

    def _read_lines(self) -> List[str]:
        lines = []
        while True:
            chunk = self._file.readline()
            if not chunk:
                break
            if not chunk.endswith('\n'):
                # Producer has not flushed the rest of this line yet
                self._partial += chunk
                break
            lines.append(self._partial + chunk.rstrip('\r\n'))
            self._partial = ''
        return lines

    def check_rotation(self):
        """Re-opens or rewinds the file if it was rotated, removed or truncated."""
        try:
            st = os.stat(self.log_path)
        except OSError:
            log.warning(f"Log file '{self.log_path}' disappeared or is no longer accessible. Will attempt to re-open.")
            self.close()
            return

        if st.st_ino != self._inode:
            log.warning(f"Log rotation by inode change detected for '{self.log_path}'. Re-opening.")
            self.close()
            self.attach()
        elif self._file.tell() > st.st_size:
            log.warning(f"Log truncation detected for '{self.log_path}'. Seeking to start.")
            self._file.seek(0)
            self._partial = ''

    def poll(self) -> List[str]:
        """Returns the complete lines appended since the last poll."""
        if self._file is None and not self.attach():
            return []

        lines = self._read_lines()
        if lines:
            return lines

        self.check_rotation()
        if self._file is not None:
            lines = self._read_lines()
        return lines


def _deliver(loop: asyncio.AbstractEventLoop, aio_queue: asyncio.Queue, item: tuple,
             shutdown_event: threading.Event) -> bool:
    """Hands one item to the event loop, waiting while the queue is full. Returns False on shutdown."""
    future = asyncio.run_coroutine_threadsafe(aio_queue.put(item), loop)
    while not shutdown_event.is_set():
        try:
            future.result(timeout=1.0)
            return True
        except concurrent.futures.TimeoutError:
            continue
    future.cancel()
    return False


def blocking_log_reader(log_path: str, loop: asyncio.AbstractEventLoop, aio_queue: asyncio.Queue,
                        shutdown_event: threading.Event, from_beginning: bool = False,
                        retry_seconds: float = LOG_RETRY_SECONDS, poll_seconds: float = LOG_POLL_SECONDS):
    """
    An event-driven log reader that runs in a separate thread.
    Uses watchdog for file system notifications and falls back to polling.
    Retries forever while the file (or its directory) does not exist.
    Puts (line, arrival_time) tuples onto the queue.
    """
    log.info(f"Starting event-driven log reader for {log_path}")
    file_changed_event = threading.Event()
    directory = os.path.dirname(os.path.abspath(log_path))
    follower = LogFollower(log_path, from_beginning=from_beginning)

    class ChangeHandler(FileSystemEventHandler):
        def on_any_event(self, event):
            file_changed_event.set()

    observer = None
    waiting_logged = False
    try:
        while not shutdown_event.is_set():
            if observer is None and os.path.isdir(directory):
                observer = Observer()
                observer.schedule(ChangeHandler(), directory, recursive=False)
                observer.start()

            try:
                was_attached = follower.attached
                lines = follower.poll()
            except Exception:
                log.error(f"Error reading log file '{log_path}'. Re-opening.", exc_info=True)
                follower.close()
                shutdown_event.wait(poll_seconds)
                continue

            if not follower.attached:
                if was_attached:
                    continue
                if not waiting_logged:
                    log.warning(f"Log file '{log_path}' is not available yet. Retrying every {retry_seconds}s.")
                    waiting_logged = True
                shutdown_event.wait(retry_seconds)
                continue
            waiting_logged = False

            if lines:
                # Arrival timestamp is taken here, in the reader thread, for accuracy
                arrival_time = time.time()
                for line in lines:
                    if not _deliver(loop, aio_queue, (line, arrival_time), shutdown_event):
                        break
                continue

            file_changed_event.clear()
            file_changed_event.wait(timeout=poll_seconds)
    finally:
        if observer is not None:
            observer.stop()
            observer.join()
        follower.close()
        log.info(f"Log reader for {log_path} has stopped.")
