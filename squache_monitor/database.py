import datetime
import logging
import sqlite3
from typing import List, Dict, Any, Optional

from .config import (DATABASE_FILE, DB_CONNECTION_TIMEOUT, DB_MAX_RETRIES, DB_RETRY_BASE_DELAY,
                     DB_RETRY_MAX_DELAY, MAX_QUERY_LIMIT)
from .db_utils import retry_on_db_lock, db_connection
from .state import iso_utc

log = logging.getLogger("SquacheMonitor.Database")

ACCESS_LOG_COLUMNS = (
    'timestamp', 'response_time', 'client_ip', 'cache_status', 'http_status', 'bytes_sent', 'method',
    'url', 'username', 'hierarchy_status', 'server_ip', 'mime_type', 'upstream_type', 'upstream_country',
)
INSERT_ACCESS_LOG_SQL = (
    f"INSERT INTO access_logs ({', '.join(ACCESS_LOG_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in ACCESS_LOG_COLUMNS)})"
)
WINDOW_STATS_COLUMNS = (
    'window_start', 'period', 'total_requests', 'cache_hits', 'cache_misses',
    'bytes_sent', 'bytes_from_cache', 'avg_response_time',
)


def init_db(db_path: Optional[str] = None):
    db_path = db_path or DATABASE_FILE
    log.info(f"Connecting to database '{db_path}' and checking schema...")
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        mode = conn.execute('PRAGMA journal_mode;').fetchone()
        if mode and mode[0].lower() == 'wal':
            log.info("Database journal mode is set to WAL.")
        else:
            log.warning(f"Failed to set database journal mode to WAL. Current mode: {mode[0] if mode else 'unknown'}")

        # --- Raw access events ---
        conn.execute('''
            CREATE TABLE IF NOT EXISTS access_logs (
                id INTEGER PRIMARY KEY,
                timestamp TEXT NOT NULL,
                response_time INTEGER NOT NULL,
                client_ip TEXT NOT NULL,
                cache_status TEXT NOT NULL,
                http_status INTEGER NOT NULL,
                bytes_sent INTEGER NOT NULL CHECK (bytes_sent >= 0),
                method TEXT NOT NULL,
                url TEXT NOT NULL,
                username TEXT,
                hierarchy_status TEXT NOT NULL,
                server_ip TEXT NOT NULL,
                mime_type TEXT NOT NULL,
                upstream_type TEXT,
                upstream_country TEXT
            )
        ''')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_access_logs_timestamp ON access_logs (timestamp);')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_access_logs_cache_status ON access_logs (cache_status);')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_access_logs_url ON access_logs (url);')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_access_logs_client_ip ON access_logs (client_ip);')

        # --- Window rollups ---
        conn.execute('''
            CREATE TABLE IF NOT EXISTS cache_stats (
                window_start TEXT NOT NULL,
                period TEXT NOT NULL,
                total_requests INTEGER NOT NULL DEFAULT 0,
                cache_hits INTEGER NOT NULL DEFAULT 0,
                cache_misses INTEGER NOT NULL DEFAULT 0,
                bytes_sent INTEGER NOT NULL DEFAULT 0,
                bytes_from_cache INTEGER NOT NULL DEFAULT 0,
                avg_response_time REAL NOT NULL DEFAULT 0,
                PRIMARY KEY (window_start, period)
            )
        ''')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_cache_stats_period_time ON cache_stats (period, window_start);')
    log.info("Database schema is valid and ready.")


def _event_to_tuple(e: Dict[str, Any]) -> tuple:
    return (
        iso_utc(e['timestamp']), e['response_time_ms'], e['client_ip'], e['cache_status'], e['http_status'],
        e['bytes_sent'], e['method'], e['url'], e['username'], e['hierarchy_status'], e['server_ip'],
        e['mime_type'], e['upstream_type'], e['upstream_country'],
    )


def _row_to_event(row: sqlite3.Row) -> Dict[str, Any]:
    timestamp = datetime.datetime.fromisoformat(row['timestamp'])
    return {
        'id': row['id'], 'timestamp': timestamp, 'ts_unix': timestamp.timestamp(),
        'response_time_ms': row['response_time'], 'client_ip': row['client_ip'],
        'cache_status': row['cache_status'], 'http_status': row['http_status'],
        'bytes_sent': row['bytes_sent'], 'method': row['method'], 'url': row['url'],
        'username': row['username'], 'hierarchy_status': row['hierarchy_status'],
        'server_ip': row['server_ip'], 'mime_type': row['mime_type'],
        'upstream_type': row['upstream_type'], 'upstream_country': row['upstream_country'],
        'is_hit': 'HIT' in row['cache_status'],
    }


def event_to_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-ready copy of an event."""
    payload = dict(event)
    payload['timestamp'] = iso_utc(event['timestamp'])
    return payload


def _like_pattern(text: str) -> str:
    escaped = text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_db_batch_write(db_path: str, events: List[Dict[str, Any]]):
    """Inserts a batch of access events in one transaction."""
    if not events:
        return
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        conn.executemany(INSERT_ACCESS_LOG_SQL, [_event_to_tuple(e) for e in events])
    log.debug(f"Wrote {len(events)} access events to the database.")


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_write_access_event(db_path: str, event: Dict[str, Any]) -> int:
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        cursor = conn.execute(INSERT_ACCESS_LOG_SQL, _event_to_tuple(event))
        return cursor.lastrowid


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_write_window_stats(db_path: str, row: Dict[str, Any]) -> bool:
    """
    Persists one completed window. Rows are never overwritten: a second write
    for the same (window_start, period) is rejected and False is returned.
    """
    try:
        with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
            conn.execute(
                f"INSERT INTO cache_stats ({', '.join(WINDOW_STATS_COLUMNS)}) "
                f"VALUES ({', '.join(':' + c for c in WINDOW_STATS_COLUMNS)})",
                row,
            )
    except sqlite3.IntegrityError:
        log.warning(f"Window {row['window_start']} ({row['period']}) was already flushed; keeping the existing row.")
        return False
    log.info(
        f"Wrote {row['period']} stats for {row['window_start']}: {row['total_requests']} requests, "
        f"{row['cache_hits']} hits, {row['bytes_sent']} bytes."
    )
    return True


def _cutoff_iso(now: Optional[datetime.datetime], days: float) -> str:
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return iso_utc(now - datetime.timedelta(days=days))


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_prune_access_events(db_path: str, retention_days: float,
                                 now: Optional[datetime.datetime] = None) -> int:
    """Deletes access events older than the retention horizon. Returns the number deleted."""
    cutoff_iso = _cutoff_iso(now, retention_days)
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        deleted = conn.execute("DELETE FROM access_logs WHERE timestamp < ?", (cutoff_iso,)).rowcount
    if deleted:
        log.info(f"[RETENTION] Pruned {deleted} access event(s) older than {cutoff_iso}.")
    return deleted


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_db_prune(db_path: str, events_retention_days: float, minute_stats_retention_days: float = 0,
                      hour_stats_retention_days: float = 0,
                      now: Optional[datetime.datetime] = None) -> Dict[str, int]:
    """
    Prune old data from the database based on retention policies.

    Args:
        db_path: Path to database file
        events_retention_days: Days to retain raw access events
        minute_stats_retention_days: Days to retain minute rollups (0 keeps them forever)
        hour_stats_retention_days: Days to retain hourly rollups (0 keeps them forever)
    """
    log.info(
        f"[DB_PRUNER] Starting database pruning. Retention: events={events_retention_days}d, "
        f"minute_stats={minute_stats_retention_days or 'forever'}, hour_stats={hour_stats_retention_days or 'forever'}")

    pruned = {'access_logs': blocking_prune_access_events(db_path, events_retention_days, now=now)}
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        for period, days in (('minute', minute_stats_retention_days), ('hour', hour_stats_retention_days)):
            if not days:
                continue
            pruned[f'{period}_stats'] = conn.execute(
                "DELETE FROM cache_stats WHERE period = ? AND window_start < ?",
                (period, _cutoff_iso(now, days)),
            ).rowcount
    log.info(f"[DB_PRUNER] Pruning complete: {pruned}")
    return pruned


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_rollup_hourly_stats(db_path: str, now: Optional[datetime.datetime] = None) -> int:
    """
    Compacts every completed hour of minute rollups into an 'hour' row.
    An existing hour row is recomputed when minute rows arrived after it was
    written. Minute rows are insert-only, so a smaller sum only means retention
    already pruned part of the hour and the stored row is kept.
    Returns the number of hour rows inserted or changed.
    """
    now = now or datetime.datetime.now(datetime.timezone.utc)
    current_hour_iso = iso_utc(now.replace(minute=0, second=0, microsecond=0))
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        rows = conn.execute("""
            SELECT substr(window_start, 1, 13) AS hour_key,
                   SUM(total_requests) AS total_requests,
                   SUM(cache_hits) AS cache_hits,
                   SUM(cache_misses) AS cache_misses,
                   SUM(bytes_sent) AS bytes_sent,
                   SUM(bytes_from_cache) AS bytes_from_cache,
                   SUM(avg_response_time * total_requests) AS weighted_response_time
            FROM cache_stats
            WHERE period = 'minute' AND window_start < ?
            GROUP BY hour_key
        """, (current_hour_iso,)).fetchall()

        written = 0
        for row in rows:
            requests = row['total_requests'] or 0
            if not requests:
                continue
            written += conn.execute(
                f"""INSERT INTO cache_stats ({', '.join(WINDOW_STATS_COLUMNS)}) VALUES (?, 'hour', ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(window_start, period) DO UPDATE SET
                        total_requests = excluded.total_requests,
                        cache_hits = excluded.cache_hits,
                        cache_misses = excluded.cache_misses,
                        bytes_sent = excluded.bytes_sent,
                        bytes_from_cache = excluded.bytes_from_cache,
                        avg_response_time = excluded.avg_response_time
                    WHERE excluded.total_requests > cache_stats.total_requests""",
                (f"{row['hour_key']}:00:00.000+00:00", requests, row['cache_hits'], row['cache_misses'],
                 row['bytes_sent'], row['bytes_from_cache'], row['weighted_response_time'] / requests),
            ).rowcount
    if written:
        log.info(f"[AGGREGATOR] Wrote {written} hourly rollup(s).")
    return written


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_backfill_window_stats(db_path: str) -> int:
    """
    Builds minute rollups from raw access events for every minute that has no
    row yet. Used after a one-time historical ingestion.
    """
    log.info("[BACKFILL] Building minute statistics from stored access events.")
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        written = conn.execute(f"""
            INSERT OR IGNORE INTO cache_stats ({', '.join(WINDOW_STATS_COLUMNS)})
            SELECT substr(timestamp, 1, 16) || ':00.000+00:00', 'minute',
                   COUNT(*),
                   SUM(CASE WHEN instr(cache_status, 'HIT') > 0 THEN 1 ELSE 0 END),
                   SUM(CASE WHEN instr(cache_status, 'HIT') > 0 THEN 0 ELSE 1 END),
                   SUM(bytes_sent),
                   SUM(CASE WHEN instr(cache_status, 'HIT') > 0 THEN bytes_sent ELSE 0 END),
                   AVG(response_time)
            FROM access_logs
            GROUP BY substr(timestamp, 1, 16)
        """).rowcount
    log.info(f"[BACKFILL] Wrote {written} minute rollup(s).")
    return written


def blocking_get_access_logs(db_path: str, filters: Optional[Dict[str, Any]] = None, limit: int = 100,
                             offset: int = 0) -> Dict[str, Any]:
    """
    Paginated, newest-first listing of access events.

    Supported filters: url (substring, case-insensitive), ip, status, method,
    from / to (aware datetimes, inclusive).
    """
    filters = filters or {}
    limit = max(1, min(int(limit), MAX_QUERY_LIMIT))
    offset = max(0, int(offset))

    where_clauses = []
    params: List[Any] = []
    if filters.get('url'):
        where_clauses.append("url LIKE ? ESCAPE '\\'")
        params.append(_like_pattern(filters['url']))
    if filters.get('ip'):
        where_clauses.append("client_ip = ?")
        params.append(filters['ip'])
    if filters.get('status') is not None:
        where_clauses.append("http_status = ?")
        params.append(int(filters['status']))
    if filters.get('method'):
        where_clauses.append("method = ?")
        params.append(filters['method'].upper())
    if filters.get('from'):
        where_clauses.append("timestamp >= ?")
        params.append(iso_utc(filters['from']))
    if filters.get('to'):
        where_clauses.append("timestamp <= ?")
        params.append(iso_utc(filters['to']))

    where_sql = f" WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        total = conn.execute(f"SELECT COUNT(*) FROM access_logs{where_sql}", params).fetchone()[0]
        rows = conn.execute(
            f"SELECT * FROM access_logs{where_sql} ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ).fetchall()

    return {
        'logs': [event_to_payload(_row_to_event(row)) for row in rows],
        'total': total,
        'limit': limit,
        'offset': offset,
    }


def blocking_get_events_in_range(db_path: str, since: datetime.datetime,
                                 until: Optional[datetime.datetime] = None,
                                 url_contains: Optional[str] = None) -> List[Dict[str, Any]]:
    """Access events with since <= timestamp < until, oldest first."""
    query = "SELECT * FROM access_logs WHERE timestamp >= ?"
    params: List[Any] = [iso_utc(since)]
    if until is not None:
        query += " AND timestamp < ?"
        params.append(iso_utc(until))
    if url_contains:
        query += " AND url LIKE ? ESCAPE '\\'"
        params.append(_like_pattern(url_contains))
    query += " ORDER BY timestamp ASC, id ASC"

    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        events = [_row_to_event(row) for row in conn.execute(query, params).fetchall()]
    log.debug(f"Fetched {len(events)} access events since {params[0]}.")
    return events


def blocking_get_window_stats(db_path: str, since: datetime.datetime,
                              until: Optional[datetime.datetime] = None,
                              period: str = 'minute') -> List[Dict[str, Any]]:
    query = "SELECT * FROM cache_stats WHERE period = ? AND window_start >= ?"
    params: List[Any] = [period, iso_utc(since)]
    if until is not None:
        query += " AND window_start < ?"
        params.append(iso_utc(until))
    query += " ORDER BY window_start ASC"

    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        return [dict(row) for row in conn.execute(query, params).fetchall()]
