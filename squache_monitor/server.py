import asyncio
import datetime
import logging
import time
from typing import Optional

from aiohttp import web

from .tasks import start_background_tasks, cleanup_background_tasks
from . import aggregations, database
from .config import (SERVER_HOST, SERVER_PORT, DATABASE_FILE, SQUID_LOG_PATH, DB_EVENTS_RETENTION_DAYS,
                     DB_QUEUE_MAX_SIZE, DEFAULT_QUERY_LIMIT, DEFAULT_QUERY_HOURS, DEFAULT_BANDWIDTH_RANGE,
                     BANDWIDTH_RANGE_PRESETS)
from .state import WindowAccumulator, IngestionCounters

log = logging.getLogger("SquacheMonitor.Server")


class QueryParameterError(ValueError):
    """A request parameter could not be understood. Reported to the caller as HTTP 400."""


def _int_param(request: web.Request, name: str, default: Optional[int] = None, minimum: int = 0) -> Optional[int]:
    raw = request.query.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise QueryParameterError(f"'{name}' must be an integer, got '{raw}'")
    if value < minimum:
        raise QueryParameterError(f"'{name}' must be >= {minimum}")
    return value


def _hours_param(request: web.Request) -> float:
    raw = request.query.get('hours')
    if raw is None or raw == '':
        return DEFAULT_QUERY_HOURS
    try:
        hours = float(raw)
    except ValueError:
        raise QueryParameterError(f"'hours' must be a number, got '{raw}'")
    if not 0 < hours <= 24 * 365:
        raise QueryParameterError("'hours' must be between 0 and 8760")
    return hours


def parse_time_param(value: str) -> datetime.datetime:
    """Accepts epoch seconds or ISO-8601. Naive timestamps are taken as UTC."""
    try:
        return datetime.datetime.fromtimestamp(float(value), tz=datetime.timezone.utc)
    except (ValueError, OverflowError, OSError):
        pass
    try:
        dt = datetime.datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise QueryParameterError(f"Invalid timestamp '{value}'")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


async def _run_query(request: web.Request, func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(request.app.get("db_executor"), func, *args)


@web.middleware
async def json_error_middleware(request, handler):
    """Turns bad parameters into 400 and unexpected failures into 500, both as JSON."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except QueryParameterError as e:
        return web.json_response({'error': str(e)}, status=400)
    except Exception:
        log.error(f"Error handling {request.method} {request.path}:", exc_info=True)
        return web.json_response({'error': 'Internal server error'}, status=500)


async def handle_health(request):
    app = request.app
    return web.json_response({
        'status': 'ok',
        'uptime_seconds': round(time.time() - app['start_time'], 1),
        'log_path': app['log_path'],
    })


async def handle_stats(request):
    hours = _hours_param(request)
    summary = await _run_query(request, aggregations.blocking_get_summary, request.app['db_path'], hours)
    return web.json_response(summary)


async def handle_bandwidth(request):
    preset = request.query.get('range', DEFAULT_BANDWIDTH_RANGE)
    if preset not in BANDWIDTH_RANGE_PRESETS:
        raise QueryParameterError(
            f"Unknown range '{preset}'. Expected one of: {', '.join(BANDWIDTH_RANGE_PRESETS)}")
    result = await _run_query(request, aggregations.blocking_get_bandwidth, request.app['db_path'], preset)
    return web.json_response(result)


async def handle_ingestion(request):
    app = request.app
    window = app['accumulator'].snapshot()
    payload = app['ingest_counters'].to_payload()
    payload['queue_depth'] = app['db_write_queue'].qsize()
    payload['current_window'] = {
        'requests': window.requests,
        'hits': window.hits,
        'misses': window.misses,
        'bytes_sent': window.bytes_sent,
    }
    return web.json_response(payload)


async def handle_logs(request):
    query = request.query
    filters = {
        'url': query.get('url'),
        'ip': query.get('ip'),
        'status': _int_param(request, 'status'),
        'method': query.get('method'),
        'from': parse_time_param(query['from']) if query.get('from') else None,
        'to': parse_time_param(query['to']) if query.get('to') else None,
    }
    limit = _int_param(request, 'limit', DEFAULT_QUERY_LIMIT, minimum=1)
    offset = _int_param(request, 'offset', 0)
    result = await _run_query(request, database.blocking_get_access_logs, request.app['db_path'],
                              filters, limit, offset)
    return web.json_response(result)


async def handle_domains(request):
    hours = _hours_param(request)
    search = request.query.get('search') or None
    limit = _int_param(request, 'limit', DEFAULT_QUERY_LIMIT, minimum=1)
    offset = _int_param(request, 'offset', 0)
    result = await _run_query(request, aggregations.blocking_get_domain_stats, request.app['db_path'],
                              hours, search, limit, offset)
    return web.json_response(result)


async def handle_domain_detail(request):
    domain = request.match_info['domain'].strip().lower()
    if not domain:
        raise QueryParameterError("Domain must not be empty")
    hours = _hours_param(request)
    result = await _run_query(request, aggregations.blocking_get_domain_detail, request.app['db_path'],
                              domain, hours)
    return web.json_response(result)


def create_app(log_path: str = SQUID_LOG_PATH, db_path: str = DATABASE_FILE, from_beginning: bool = False,
               retention_days: float = DB_EVENTS_RETENTION_DAYS, start_tasks: bool = True) -> web.Application:
    app = web.Application(middlewares=[json_error_middleware])
    app["log_path"] = log_path
    app["db_path"] = db_path
    app["from_beginning"] = from_beginning
    app["retention_days"] = retention_days
    app["start_time"] = time.time()

    app["accumulator"] = WindowAccumulator()
    app["ingest_counters"] = IngestionCounters()
    app["db_write_queue"] = asyncio.Queue(maxsize=DB_QUEUE_MAX_SIZE)
    app["db_write_lock"] = asyncio.Lock()

    if start_tasks:
        app.on_startup.append(start_background_tasks)
        app.on_cleanup.append(cleanup_background_tasks)

    app.router.add_get("/health", handle_health)
    app.router.add_get("/api/stats", handle_stats)
    app.router.add_get("/api/stats/bandwidth", handle_bandwidth)
    app.router.add_get("/api/stats/ingestion", handle_ingestion)
    app.router.add_get("/api/logs", handle_logs)
    app.router.add_get("/api/domains", handle_domains)
    app.router.add_get("/api/domains/{domain}", handle_domain_detail)
    return app


def run_server(log_path: str = SQUID_LOG_PATH, db_path: str = DATABASE_FILE, host: str = SERVER_HOST,
               port: int = SERVER_PORT, from_beginning: bool = False):
    app = create_app(log_path=log_path, db_path=db_path, from_beginning=from_beginning)

    log.info(f"Server starting on http://{host}:{port}")
    log.info(f"Following proxy log '{log_path}', storing to '{db_path}'")
    web.run_app(app, host=host, port=port)
