import argparse
import logging
import os
import sys

# This boilerplate allows the script to be run directly (e.g., `uv run squache_monitor`)
# by adding the project root to the Python path so the absolute imports below resolve.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    sys.path.insert(0, project_root)

from squache_monitor import server, database, log_processor, config

log = logging.getLogger("SquacheMonitor")

INGEST_BATCH_SIZE = 50000


def ingest_log_file(log_path: str, db_path: str) -> dict:
    """Reads a log file from start to finish, parsing and inserting all access events into the database."""
    log.info(f"Starting ingestion from log file '{log_path}' into '{db_path}'.")

    events_to_write = []
    counts = {'lines': 0, 'events': 0, 'relaxed': 0, 'unparseable': 0}

    with open(log_path, 'r', errors='replace') as f:
        for line in f:
            counts['lines'] += 1
            if counts['lines'] % 100000 == 0:
                log.info(f"Processed {counts['lines']} lines...")

            parsed = log_processor.parse_log_line(line)
            if parsed['type'] != 'access_event':
                counts['unparseable'] += 1
                continue
            if parsed['format'] == 'relaxed':
                counts['relaxed'] += 1
            events_to_write.append(parsed['data'])

            if len(events_to_write) >= INGEST_BATCH_SIZE:
                log.info(f"Writing a batch of {len(events_to_write)} access events to the database...")
                database.blocking_db_batch_write(db_path, events_to_write)
                counts['events'] += len(events_to_write)
                events_to_write.clear()

    if events_to_write:
        log.info(f"Writing the final batch of {len(events_to_write)} access events...")
        database.blocking_db_batch_write(db_path, events_to_write)
        counts['events'] += len(events_to_write)

    log.info(f"Ingestion complete. Total lines processed: {counts['lines']}. "
             f"Access events ingested: {counts['events']} ({counts['relaxed']} without upstream fields). "
             f"Unparseable lines skipped: {counts['unparseable']}.")
    return counts


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Squache Monitor - traffic statistics for a caching proxy's access log",
        epilog="""
Examples:
  # Follow the live proxy log and serve the query API
  %(prog)s --log-path /var/log/squid/access.log --db-path /var/lib/squache/stats.db

  # Replay the existing log content before following it
  %(prog)s --log-path /var/log/squid/access.log --from-beginning

  # One-time historical log ingestion
  %(prog)s --ingest-log /var/log/squid/access.log.1
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('--log-path', default=config.SQUID_LOG_PATH,
                        help=f"SERVER MODE: proxy access log to follow (default: {config.SQUID_LOG_PATH}).")
    parser.add_argument('--from-beginning', action='store_true',
                        help="SERVER MODE: read the log from its start instead of only new lines.")
    parser.add_argument('--ingest-log', metavar='PATH',
                        help="INGEST MODE: one-time ingestion of a log file into the database, then exit.")
    parser.add_argument('--db-path', default=config.DATABASE_FILE,
                        help=f"SQLite database file (default: {config.DATABASE_FILE}).")
    parser.add_argument('--host', default=config.SERVER_HOST, help="Address to bind the query API to.")
    parser.add_argument('--port', type=int, default=config.SERVER_PORT, help="Port for the query API.")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    if not 1 <= args.port <= 65535:
        log.critical(f"Invalid port: {args.port}. Expected 1-65535.")
        sys.exit(1)

    if args.ingest_log:
        if not os.path.isfile(args.ingest_log):
            log.critical(f"Log file not found: {args.ingest_log}")
            sys.exit(1)

        database.init_db(args.db_path)
        ingest_log_file(args.ingest_log, args.db_path)
        log.info("Ingestion finished. Now backfilling minute statistics. This may take a while...")
        database.blocking_backfill_window_stats(args.db_path)
        database.blocking_rollup_hourly_stats(args.db_path)
        log.info("Statistics backfilled. Process complete.")
        sys.exit(0)

    if os.path.exists(args.log_path):
        log.info(f"Log file exists at '{args.log_path}'.")
    else:
        log.warning(f"Log file does not currently exist at '{args.log_path}' (may be created later).")
    server.run_server(log_path=args.log_path, db_path=args.db_path, host=args.host, port=args.port,
                      from_beginning=args.from_beginning)


if __name__ == "__main__":
    main()
