import asyncio
import datetime
import logging
import math
import time
from typing import Optional, Dict, Any

from .config import (
    DB_WRITE_BATCH_INTERVAL_SECONDS,
    STATS_WINDOW_SECONDS,
    WINDOW_GRANULARITIES,
    HOURLY_AGG_INTERVAL_MINUTES,
    DB_PRUNE_INTERVAL_HOURS,
    DB_EVENTS_RETENTION_DAYS,
    DB_MINUTE_STATS_RETENTION_DAYS,
    DB_HOUR_STATS_RETENTION_DAYS,
    HEARTBEAT_INTERVAL_SECONDS,
)
from .database import (
    blocking_db_batch_write,
    blocking_write_access_event,
    blocking_write_window_stats,
    blocking_prune_access_events,
    blocking_rollup_hourly_stats,
    blocking_db_prune,
)

log = logging.getLogger("SquacheMonitor.Tasks")


def _drain_queue(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        try:
            items.append(queue.get_nowait())
        except asyncio.QueueEmpty:
            break
    return items


async def write_event_batch(app, events_to_write: list):
    """
    Persists a batch of access events. When the batch insert fails, the events
    are retried one by one so only the rows that cannot be stored are lost.
    """
    loop = asyncio.get_running_loop()
    db_path = app["db_path"]
    counters = app["ingest_counters"]

    async with app["db_write_lock"]:
        try:
            await loop.run_in_executor(app["db_executor"], blocking_db_batch_write, db_path, events_to_write)
            return
        except Exception:
            log.error(f"Batch insert of {len(events_to_write)} events failed. Retrying row by row.", exc_info=True)

        failed = 0
        for event in events_to_write:
            try:
                await loop.run_in_executor(app["db_executor"], blocking_write_access_event, db_path, event)
            except Exception as e:
                failed += 1
                log.debug(f"Dropping access event at {event['timestamp']}: {e}")
        if failed:
            counters.failed_inserts += failed
            log.error(f"[DB_WRITER] {failed} of {len(events_to_write)} access events could not be stored "
                      f"({counters.failed_inserts} lost in total).")


async def database_writer_task(app):
    log.info("Database writer task started.")
    write_queue = app["db_write_queue"]

    while True:
        await asyncio.sleep(DB_WRITE_BATCH_INTERVAL_SECONDS)
        events_to_write = _drain_queue(write_queue)
        if not events_to_write:
            continue

        log.debug(f"[DB_WRITER] Preparing to write {len(events_to_write)} events. Queue size: {write_queue.qsize()}")
        try:
            await write_event_batch(app, events_to_write)
        except Exception:
            log.error("Error during blocking database write execution:", exc_info=True)


def next_window_boundary(now: float, window_seconds: int, last_boundary: Optional[float] = None) -> float:
    """
    The first aligned boundary after `now`. Never returns a boundary at or before
    `last_boundary`, so consecutive windows cannot be flushed twice.
    """
    boundary = (math.floor(now / window_seconds) + 1) * window_seconds
    if last_boundary is not None and boundary <= last_boundary:
        boundary = last_boundary + window_seconds
    return boundary


async def flush_window(app, window_start: datetime.datetime,
                       window_seconds: int = STATS_WINDOW_SECONDS) -> Optional[Dict[str, Any]]:
    """
    Drains the accumulator and persists one WindowStats row for the completed window,
    then sweeps expired access events. Returns the row written, or None.
    """
    totals = app["accumulator"].drain()
    if totals.requests == 0:
        return None

    loop = asyncio.get_running_loop()
    counters = app["ingest_counters"]
    period = WINDOW_GRANULARITIES.get(window_seconds, f"{window_seconds}s")
    row = totals.to_row(window_start, period)

    async with app["db_write_lock"]:
        try:
            written = await loop.run_in_executor(
                app["db_executor"], blocking_write_window_stats, app["db_path"], row
            )
        except Exception:
            counters.windows_lost += 1
            log.error(
                f"[ROLLUP] Could not persist window {row['window_start']}; its {totals.requests} "
                f"request(s) are not in the rollups ({counters.windows_lost} window(s) lost so far).",
                exc_info=True,
            )
            return None

        if not written:
            return None
        counters.windows_flushed += 1

        try:
            await loop.run_in_executor(
                app["db_executor"], blocking_prune_access_events, app["db_path"],
                app.get("retention_days", DB_EVENTS_RETENTION_DAYS),
            )
        except Exception:
            log.error("[RETENTION] Sweep of expired access events failed; will retry next window.", exc_info=True)
    return row


async def rollup_writer_task(app, window_seconds: int = STATS_WINDOW_SECONDS):
    log.info(f"Rollup writer task started with {window_seconds}s windows.")
    last_boundary = None

    while True:
        boundary = next_window_boundary(time.time(), window_seconds, last_boundary)
        await asyncio.sleep(max(0.0, boundary - time.time()))
        window_start = datetime.datetime.fromtimestamp(boundary - window_seconds, tz=datetime.timezone.utc)
        last_boundary = boundary
        try:
            await flush_window(app, window_start, window_seconds)
        except Exception:
            log.error("Error in rollup writer task:", exc_info=True)


async def hourly_rollup_task(app):
    log.info("Hourly rollup task started.")
    while True:
        await asyncio.sleep(60 * HOURLY_AGG_INTERVAL_MINUTES)
        try:
            loop = asyncio.get_running_loop()
            async with app["db_write_lock"]:
                await loop.run_in_executor(app["db_executor"], blocking_rollup_hourly_stats, app["db_path"])
        except Exception:
            log.error("Error in hourly rollup task:", exc_info=True)


async def database_pruner_task(app):
    log.info("Database pruner task started.")

    while True:
        try:
            loop = asyncio.get_running_loop()
            async with app["db_write_lock"]:
                await loop.run_in_executor(
                    app["db_executor"],
                    blocking_db_prune,
                    app["db_path"],
                    app.get("retention_days", DB_EVENTS_RETENTION_DAYS),
                    DB_MINUTE_STATS_RETENTION_DAYS,
                    DB_HOUR_STATS_RETENTION_DAYS,
                )
        except Exception:
            log.error("Error in database pruner task:", exc_info=True)
        await asyncio.sleep(3600 * DB_PRUNE_INTERVAL_HOURS)


async def debug_logger_task(app):
    log.info("Debug heartbeat task started.")
    while True:
        await asyncio.sleep(HEARTBEAT_INTERVAL_SECONDS)
        c = app["ingest_counters"]
        window = app["accumulator"].snapshot()
        log.info(
            f"[HEARTBEAT] Lines: {c.lines}, Events: {c.events}, Unparseable: {c.unparseable}, "
            f"Relaxed: {c.relaxed_lines}, Dropped: {c.dropped_events}, Failed inserts: {c.failed_inserts}, "
            f"DB Queue: {app['db_write_queue'].qsize()}, Current window: {window.requests} requests"
        )


async def start_background_tasks(app):
    import concurrent.futures
    import threading
    from .log_processor import blocking_log_reader, log_processor_task
    from .database import init_db
    from .config import DB_THREAD_POOL_SIZE, LINE_QUEUE_MAX_SIZE

    log.info("Starting background tasks...")
    init_db(app["db_path"])

    app["db_executor"] = concurrent.futures.ThreadPoolExecutor(max_workers=DB_THREAD_POOL_SIZE)
    log.info(f"Database thread pool initialized with {DB_THREAD_POOL_SIZE} workers")
    app["log_executor"] = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    app["tasks"] = []

    loop = asyncio.get_running_loop()
    line_queue = asyncio.Queue(maxsize=LINE_QUEUE_MAX_SIZE)
    app["line_queue"] = line_queue
    shutdown_event = threading.Event()
    app["log_reader_shutdown_event"] = shutdown_event
    app["log_reader_future"] = loop.run_in_executor(
        app["log_executor"],
        blocking_log_reader,
        app["log_path"],
        loop,
        line_queue,
        shutdown_event,
        app.get("from_beginning", False),
    )

    app["tasks"].extend(
        [
            asyncio.create_task(log_processor_task(app, line_queue)),
            asyncio.create_task(database_writer_task(app)),
            asyncio.create_task(rollup_writer_task(app)),
            asyncio.create_task(hourly_rollup_task(app)),
            asyncio.create_task(database_pruner_task(app)),
            asyncio.create_task(debug_logger_task(app)),
        ]
    )
    log.info(f"{len(app['tasks'])} background tasks started; following '{app['log_path']}'.")


async def cleanup_background_tasks(app):
    log.warning("Application cleanup started.")

    # Stop the reader first so no new lines arrive while tasks wind down
    if "log_reader_shutdown_event" in app:
        app["log_reader_shutdown_event"].set()

    for task in app.get("tasks", []):
        task.cancel()
    if "tasks" in app:
        await asyncio.gather(*app["tasks"], return_exceptions=True)
    log.info("Asyncio background tasks cancelled.")

    # Lines the reader already delivered still go through ingestion
    if "line_queue" in app:
        from .log_processor import ingest_line
        pending_lines = _drain_queue(app["line_queue"])
        for line, _arrival_time in pending_lines:
            ingest_line(line, app["accumulator"], app["ingest_counters"], app["db_write_queue"])
        if pending_lines:
            log.info(f"Ingested {len(pending_lines)} pending log lines before shutdown.")

    # Flush whatever is still queued so a clean shutdown loses no stored events
    remaining = _drain_queue(app["db_write_queue"])
    if remaining and "db_executor" in app:
        log.info(f"Writing {len(remaining)} queued events before shutdown.")
        try:
            await write_event_batch(app, remaining)
        except Exception:
            log.error("Could not write queued events during shutdown:", exc_info=True)

    for executor_name in ["db_executor", "log_executor"]:
        if executor_name in app and app[executor_name]:
            app[executor_name].shutdown(wait=True)
            log.info(f"{executor_name} shut down.")
