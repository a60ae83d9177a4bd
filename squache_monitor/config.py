import os

# --- Configuration ---
# The proxy access log to follow. The proxy must be configured with the
# squache logformat:
#   %ts.%03tu %6tr %>a %Ss/%03>Hs %<st %rm %ru %[un %Sh/%<a %mt "%{X-Squache-Upstream}>h" "%{X-Squache-Country}>h"
SQUID_LOG_PATH = os.getenv('SQUID_LOG_PATH', '/var/log/squid/access.log')
# The database file path.
# This is a relative path by default, so it will be created in the current
# working directory. It can be overridden with the SQUACHE_MONITOR_DB_PATH
# environment variable or the --db-path argument.
DATABASE_FILE = os.getenv('SQUACHE_MONITOR_DB_PATH', 'squache_stats.db')

SERVER_HOST = "0.0.0.0"
SERVER_PORT = 3010

# --- Log Follower ---
LOG_RETRY_SECONDS = 30  # How long to wait before re-attaching to a missing log file
LOG_POLL_SECONDS = 5.0  # Fallback poll interval when no file system event arrives
LINE_QUEUE_MAX_SIZE = 5000

# --- Ingestion ---
DB_WRITE_BATCH_INTERVAL_SECONDS = 2
DB_QUEUE_MAX_SIZE = 30000  # Oldest events are dropped when the store falls this far behind
DROP_WARNING_INTERVAL_SECONDS = 60
HEARTBEAT_INTERVAL_SECONDS = 60

# --- Rollups ---
STATS_WINDOW_SECONDS = 60  # Length of one aggregation window
HOURLY_AGG_INTERVAL_MINUTES = 10
WINDOW_GRANULARITIES = {60: 'minute', 3600: 'hour', 86400: 'day'}

# --- Data Retention ---
DB_EVENTS_RETENTION_DAYS = int(os.getenv('SQUACHE_MONITOR_RETENTION_DAYS', '7'))
DB_MINUTE_STATS_RETENTION_DAYS = 30  # 0 keeps minute rollups forever
DB_HOUR_STATS_RETENTION_DAYS = 0  # 0 keeps hourly rollups forever
DB_PRUNE_INTERVAL_HOURS = 6

# --- Database Concurrency Configuration ---
DB_THREAD_POOL_SIZE = 4
DB_CONNECTION_TIMEOUT = 30.0  # seconds
DB_MAX_RETRIES = 3  # Number of retry attempts for locked database
DB_RETRY_BASE_DELAY = 0.5  # Base delay between retries (seconds)
DB_RETRY_MAX_DELAY = 5.0  # Maximum delay between retries (seconds)

# --- Queries ---
DEFAULT_QUERY_LIMIT = 100
MAX_QUERY_LIMIT = 1000
DEFAULT_QUERY_HOURS = 24
MAX_DOMAIN_SUBDOMAINS_LISTED = 10

# Named range preset -> (range length in seconds, bucket width in seconds).
# A range of None means "since midnight UTC".
BANDWIDTH_RANGE_PRESETS = {
    '5m': (5 * 60, 60),
    '15m': (15 * 60, 60),
    '1h': (3600, 5 * 60),
    '6h': (6 * 3600, 15 * 60),
    '24h': (24 * 3600, 3600),
    'today': (None, 3600),
}
DEFAULT_BANDWIDTH_RANGE = '24h'
