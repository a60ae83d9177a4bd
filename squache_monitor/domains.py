"""
Hostname and primary-domain extraction for proxy log targets.

The primary domain is found with a small table of well-known multi-label
public suffixes rather than the full Public Suffix List, so it is an
approximation: hosts under a suffix missing from MULTI_PART_SUFFIXES are
reduced to their last two labels (e.g. "foo.example.com.ar" -> "com.ar").
"""

import re
from urllib.parse import urlsplit

UNKNOWN = 'unknown'

MULTI_PART_SUFFIXES = (
    'co.uk', 'co.jp', 'co.kr', 'co.nz', 'co.za', 'co.in',
    'com.au', 'com.br', 'com.cn', 'com.mx', 'com.sg', 'com.tw',
    'org.uk', 'org.au', 'net.au', 'gov.uk', 'ac.uk', 'edu.au',
)

CONNECT_TARGET_RE = re.compile(r'^[a-zA-Z0-9.-]+:\d+$')
LEADING_HOST_RE = re.compile(r'^([a-zA-Z0-9.-]+)(:\d+)?')
IPV4_RE = re.compile(r'^\d+\.\d+\.\d+\.\d+$')


def extract_hostname(target: str) -> str:
    """
    Extracts the hostname from a URL or a CONNECT target.

    "example.com:443" -> "example.com", "https://a.b.com/x" -> "a.b.com".
    Returns "unknown" when nothing host-like can be found.
    """
    if not target:
        return UNKNOWN

    if CONNECT_TARGET_RE.match(target):
        return target.split(':')[0].lower()

    try:
        parsed = urlsplit(target)
        if parsed.scheme and parsed.hostname:
            return parsed.hostname
    except ValueError:
        pass

    match = LEADING_HOST_RE.match(target)
    if match:
        return match.group(1).lower()
    return UNKNOWN


def extract_primary_domain(hostname: str) -> str:
    """
    Reduces a hostname to its registrable domain.

    "blog.example.co.uk" -> "example.co.uk", "a.b.example.com" -> "example.com".
    IPv4 literals and localhost are returned unchanged, ports are dropped.
    """
    if not hostname:
        return UNKNOWN

    # IPv6 literals have more than one colon and no port to strip
    if hostname.count(':') > 1:
        return hostname

    host = hostname.split(':')[0]
    if IPV4_RE.match(host) or host == 'localhost':
        return host

    parts = host.lower().split('.')
    for suffix in MULTI_PART_SUFFIXES:
        suffix_parts = suffix.split('.')
        if len(parts) >= len(suffix_parts) + 1 and parts[-len(suffix_parts):] == suffix_parts:
            return '.'.join(parts[-(len(suffix_parts) + 1):])

    if len(parts) >= 2:
        return '.'.join(parts[-2:])
    return host


def canonical_domain(target: str) -> str:
    return extract_primary_domain(extract_hostname(target))
