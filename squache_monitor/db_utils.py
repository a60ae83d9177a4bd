"""
Database Utilities

Provides retry logic and connection setup for SQLite operations that run
concurrently with the ingestion pipeline.
"""

import contextlib
import functools
import logging
import sqlite3
import time
from typing import Any, Callable, Iterator

log = logging.getLogger("SquacheMonitor.DbUtils")


def retry_on_db_lock(max_attempts: int = 3, base_delay: float = 0.5, max_delay: float = 5.0):
    """
    Decorator to retry database operations on lock/busy errors with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = base_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except (sqlite3.OperationalError, sqlite3.DatabaseError) as e:
                    error_msg = str(e).lower()

                    # Only retry on lock/busy errors, not other operational errors
                    if not any(err in error_msg for err in ["locked", "busy", "unable to open"]):
                        raise
                    if attempt >= max_attempts:
                        log.error(f"Database operation failed after {max_attempts} attempts: {e}")
                        raise
                    log.warning(
                        f"Database operation failed (attempt {attempt}/{max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    # Exponential backoff with jitter
                    delay = min(delay * 2 + (time.time() % 0.1), max_delay)

        return wrapper

    return decorator


def get_optimized_connection(db_path: str, timeout: float = 30.0) -> sqlite3.Connection:
    """
    Create an SQLite connection tuned for one writer and concurrent readers.

    Args:
        db_path: Path to database file
        timeout: Connection timeout in seconds

    Returns:
        Configured SQLite connection
    """
    conn = sqlite3.connect(db_path, timeout=timeout)
    cursor = conn.cursor()

    # WAL lets queries read a committed snapshot while ingestion appends
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.execute("PRAGMA cache_size=-64000;")  # 64MB cache
    cursor.execute("PRAGMA temp_store=MEMORY;")
    cursor.execute(f"PRAGMA busy_timeout={int(timeout * 1000)};")

    log.debug(f"Created SQLite connection to '{db_path}' (timeout={timeout}s)")

    return conn


@contextlib.contextmanager
def db_connection(db_path: str, timeout: float = 30.0) -> Iterator[sqlite3.Connection]:
    """Yields a row-factory connection, committing on success and always closing it."""
    conn = get_optimized_connection(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    try:
        with conn:
            yield conn
    finally:
        conn.close()
