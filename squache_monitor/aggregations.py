"""
Read-time aggregations over stored access events and window rollups.

Every function here works on rows fetched for a single request and keeps no
state between calls, so the same rows always produce the same result.
"""

import datetime
import logging
from typing import List, Dict, Any, Optional, Tuple

from .config import (BANDWIDTH_RANGE_PRESETS, DATABASE_FILE, DEFAULT_QUERY_HOURS, DEFAULT_QUERY_LIMIT,
                     MAX_QUERY_LIMIT, MAX_DOMAIN_SUBDOMAINS_LISTED)
from .database import blocking_get_events_in_range, blocking_get_window_stats
from .domains import extract_hostname, extract_primary_domain, UNKNOWN
from .state import iso_utc

log = logging.getLogger("SquacheMonitor.Aggregations")


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole else 0


def _floor_to_bucket(ts_unix: float, bucket_seconds: int) -> int:
    return int(ts_unix // bucket_seconds) * bucket_seconds


def resolve_range_preset(preset: str, now: Optional[datetime.datetime] = None) -> Tuple[datetime.datetime, datetime.datetime, int]:
    """Turns a named range ('5m', '24h', 'today', ...) into (start, end, bucket_seconds)."""
    if preset not in BANDWIDTH_RANGE_PRESETS:
        raise ValueError(f"Unknown range preset '{preset}'. Expected one of: {', '.join(BANDWIDTH_RANGE_PRESETS)}")
    now = now or _utcnow()
    range_seconds, bucket_seconds = BANDWIDTH_RANGE_PRESETS[preset]
    if range_seconds is None:
        start = now.astimezone(datetime.timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    else:
        start = now - datetime.timedelta(seconds=range_seconds)
    return start, now, bucket_seconds


def bandwidth_over_time(events: List[Dict[str, Any]], start: datetime.datetime, end: datetime.datetime,
                        bucket_seconds: int) -> List[Dict[str, Any]]:
    """
    Sums bytes, cache bytes and requests per fixed-width bucket.

    One entry is emitted for every bucket from the one containing `start` to
    the one containing `end`, with zeros where no event fell.
    """
    if bucket_seconds <= 0:
        raise ValueError("bucket_seconds must be positive")

    first_bucket = _floor_to_bucket(start.timestamp(), bucket_seconds)
    last_bucket = _floor_to_bucket(end.timestamp(), bucket_seconds)

    buckets = {}
    for bucket_unix in range(first_bucket, last_bucket + 1, bucket_seconds):
        buckets[bucket_unix] = {
            'timestamp': iso_utc(datetime.datetime.fromtimestamp(bucket_unix, tz=datetime.timezone.utc)),
            'bytes_sent': 0, 'bytes_from_cache': 0, 'requests': 0, 'hits': 0,
            'bin_duration_seconds': bucket_seconds,
        }

    for event in events:
        bucket = buckets.get(_floor_to_bucket(event['ts_unix'], bucket_seconds))
        if bucket is None:
            continue
        bucket['requests'] += 1
        bucket['bytes_sent'] += event['bytes_sent']
        if event['is_hit']:
            bucket['hits'] += 1
            bucket['bytes_from_cache'] += event['bytes_sent']

    return list(buckets.values())


def aggregate_domains(events: List[Dict[str, Any]], search: Optional[str] = None,
                      limit: int = DEFAULT_QUERY_LIMIT, offset: int = 0) -> Dict[str, Any]:
    """
    Groups events by primary domain, busiest first.

    `search` keeps domains whose name, or any of whose hostnames, contains the
    text (case-insensitive).
    """
    domain_map: Dict[str, Dict[str, Any]] = {}
    for event in events:
        hostname = extract_hostname(event['url'])
        domain = extract_primary_domain(hostname)
        stats = domain_map.get(domain)
        if stats is None:
            stats = domain_map[domain] = {
                'subdomains': {}, 'requests': 0, 'bytes': 0, 'hits': 0, 'misses': 0,
                'errors': 0, 'total_response_time': 0,
            }
        # dict keeps first-seen order, unlike a set
        stats['subdomains'][hostname] = None
        stats['requests'] += 1
        stats['bytes'] += event['bytes_sent']
        stats['total_response_time'] += event['response_time_ms']
        if event['is_hit']:
            stats['hits'] += 1
        else:
            stats['misses'] += 1
        if event['http_status'] >= 400:
            stats['errors'] += 1

    needle = search.lower() if search else None
    domains = []
    for domain, stats in domain_map.items():
        if domain == UNKNOWN:
            continue
        if needle and needle not in domain and not any(needle in h.lower() for h in stats['subdomains']):
            continue
        subdomains = list(stats['subdomains'])
        domains.append({
            'domain': domain,
            'subdomain_count': len(subdomains),
            'subdomains': subdomains[:MAX_DOMAIN_SUBDOMAINS_LISTED],
            'requests': stats['requests'],
            'bytes': stats['bytes'],
            'hits': stats['hits'],
            'misses': stats['misses'],
            'hit_rate': _percent(stats['hits'], stats['requests']),
            'errors': stats['errors'],
            'avg_response_time': round(stats['total_response_time'] / stats['requests']),
        })
    domains.sort(key=lambda d: (-d['requests'], d['domain']))

    limit = max(1, min(int(limit), MAX_QUERY_LIMIT))
    offset = max(0, int(offset))
    return {
        'domains': domains[offset:offset + limit],
        'total': len(domains),
        'limit': limit,
        'offset': offset,
    }


def _hour_key(timestamp: datetime.datetime) -> str:
    return iso_utc(timestamp.replace(minute=0, second=0, microsecond=0))


def domain_detail(events: List[Dict[str, Any]], domain: str) -> Dict[str, Any]:
    """Breaks down the events of one primary domain by subdomain, content type and hour."""
    domain = domain.lower()
    totals = {'requests': 0, 'bytes': 0, 'hits': 0, 'errors': 0, 'response_time': 0}
    subdomain_map: Dict[str, Dict[str, int]] = {}
    content_type_map: Dict[str, Dict[str, int]] = {}
    hourly_map: Dict[str, Dict[str, int]] = {}

    for event in events:
        hostname = extract_hostname(event['url'])
        if extract_primary_domain(hostname) != domain:
            continue

        bytes_sent = event['bytes_sent']
        is_hit = event['is_hit']
        is_error = event['http_status'] >= 400
        totals['requests'] += 1
        totals['bytes'] += bytes_sent
        totals['response_time'] += event['response_time_ms']
        totals['hits'] += is_hit
        totals['errors'] += is_error

        sub = subdomain_map.setdefault(hostname, {'requests': 0, 'bytes': 0, 'hits': 0, 'errors': 0})
        sub['requests'] += 1
        sub['bytes'] += bytes_sent
        sub['hits'] += is_hit
        sub['errors'] += is_error

        content_type = (event.get('mime_type') or UNKNOWN).split('/')[0] or UNKNOWN
        ct = content_type_map.setdefault(content_type, {'requests': 0, 'bytes': 0, 'hits': 0})
        ct['requests'] += 1
        ct['bytes'] += bytes_sent
        ct['hits'] += is_hit

        hour = hourly_map.setdefault(_hour_key(event['timestamp']), {'requests': 0, 'bytes': 0, 'hits': 0})
        hour['requests'] += 1
        hour['bytes'] += bytes_sent
        hour['hits'] += is_hit

    subdomains = sorted(
        ({'subdomain': name, 'requests': s['requests'], 'bytes': s['bytes'],
          'hit_rate': _percent(s['hits'], s['requests']), 'errors': s['errors']}
         for name, s in subdomain_map.items()),
        key=lambda s: (-s['requests'], s['subdomain']),
    )
    content_types = sorted(
        ({'type': name, 'requests': c['requests'], 'bytes': c['bytes'],
          'hit_rate': _percent(c['hits'], c['requests'])}
         for name, c in content_type_map.items()),
        key=lambda c: (-c['bytes'], c['type']),
    )
    hourly_stats = [
        {'timestamp': key, 'requests': h['requests'], 'bytes': h['bytes'],
         'hit_rate': _percent(h['hits'], h['requests'])}
        for key, h in sorted(hourly_map.items())
    ]

    requests = totals['requests']
    return {
        'domain': domain,
        'summary': {
            'total_requests': requests,
            'total_bytes': totals['bytes'],
            'hit_rate': _percent(totals['hits'], requests),
            'errors': totals['errors'],
            'avg_response_time': round(totals['response_time'] / requests) if requests else 0,
        },
        'subdomains': subdomains,
        'content_types': content_types,
        'hourly_stats': hourly_stats,
    }


def summarize_window_stats(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Combines window rollups, re-deriving the mean response time weighted by request count."""
    total_requests = sum(r['total_requests'] for r in rows)
    cache_hits = sum(r['cache_hits'] for r in rows)
    cache_misses = sum(r['cache_misses'] for r in rows)
    bytes_sent = sum(r['bytes_sent'] for r in rows)
    bytes_from_cache = sum(r['bytes_from_cache'] for r in rows)
    weighted_response_time = sum(r['avg_response_time'] * r['total_requests'] for r in rows)

    return {
        'total_requests': total_requests,
        'cache_hits': cache_hits,
        'cache_misses': cache_misses,
        'hit_rate': round(cache_hits / total_requests * 100, 2) if total_requests else 0,
        'bytes_sent': bytes_sent,
        'bytes_from_cache': bytes_from_cache,
        'bandwidth_saved': round(bytes_from_cache / bytes_sent * 100, 2) if bytes_sent else 0,
        'avg_response_time': round(weighted_response_time / total_requests, 2) if total_requests else 0,
    }


# --- Blocking entry points (run in the DB executor) ---

def _since(hours: float, now: Optional[datetime.datetime]) -> Tuple[datetime.datetime, datetime.datetime]:
    now = now or _utcnow()
    return now - datetime.timedelta(hours=hours), now


def blocking_get_bandwidth(db_path: str = DATABASE_FILE, preset: str = '24h',
                           now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    start, end, bucket_seconds = resolve_range_preset(preset, now)
    # Widen the fetch to the first bucket boundary so that bucket is complete
    fetch_start = datetime.datetime.fromtimestamp(_floor_to_bucket(start.timestamp(), bucket_seconds),
                                                  tz=datetime.timezone.utc)
    events = blocking_get_events_in_range(db_path, fetch_start, end + datetime.timedelta(microseconds=1000))
    series = bandwidth_over_time(events, start, end, bucket_seconds)
    log.info(f"Returning {len(series)} bandwidth buckets for range '{preset}' from {len(events)} events.")
    return {'range': preset, 'bucket_seconds': bucket_seconds, 'series': series}


def blocking_get_domain_stats(db_path: str = DATABASE_FILE, hours: float = DEFAULT_QUERY_HOURS,
                              search: Optional[str] = None, limit: int = DEFAULT_QUERY_LIMIT, offset: int = 0,
                              now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    since, until = _since(hours, now)
    events = blocking_get_events_in_range(db_path, since, until)
    result = aggregate_domains(events, search=search, limit=limit, offset=offset)
    result['hours'] = hours
    if search:
        result['query'] = search
    return result


def blocking_get_domain_detail(db_path: str = DATABASE_FILE, domain: str = '', hours: float = DEFAULT_QUERY_HOURS,
                               now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    since, until = _since(hours, now)
    # The substring pre-filter narrows the scan; domain_detail applies the exact match
    events = blocking_get_events_in_range(db_path, since, until, url_contains=domain)
    result = domain_detail(events, domain)
    result['hours'] = hours
    return result


def blocking_get_summary(db_path: str = DATABASE_FILE, hours: float = DEFAULT_QUERY_HOURS,
                         now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    since, until = _since(hours, now)
    rows = blocking_get_window_stats(db_path, since, until, period='minute')
    summary = summarize_window_stats(rows)
    summary['hours'] = hours
    return summary
