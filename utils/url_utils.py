"""
URL helpers shared by the crawler, link discovery and storage keys.
"""
from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Normalize URL for stable visited-set and upsert keys.

    - Lowercases scheme + hostname
    - Removes default ports (80/443)
    - Strips trailing slashes on path (root becomes "/")
    - Sorts query parameters by name
    - Strips fragments

    Returns the input unchanged when it cannot be parsed as an absolute URL.
    """
    try:
        parsed = urlsplit(url.strip())
        port = parsed.port
    except ValueError:
        return url

    if not parsed.scheme or not parsed.netloc:
        return url

    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()
    netloc = f"[{host}]" if ":" in host else host
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    if parsed.username:
        userinfo = parsed.username
        if parsed.password:
            userinfo = f"{userinfo}:{parsed.password}"
        netloc = f"{userinfo}@{netloc}"

    path = re.sub(r"/+$", "", parsed.path) or "/"

    query_pairs = parse_qsl(parsed.query, keep_blank_values=True)
    query = urlencode(sorted(query_pairs, key=lambda pair: pair[0]))

    return urlunsplit((scheme, netloc, path, query, ""))


def is_same_host(hostname: str, base_domain: str) -> bool:
    """Compare two hostnames, treating a leading ``www.`` as equivalent."""
    if not hostname or not base_domain:
        return False
    hostname = hostname.lower()
    base_domain = base_domain.lower()
    return (
        hostname == base_domain
        or hostname == f"www.{base_domain}"
        or base_domain == f"www.{hostname}"
    )


def is_same_domain(url1: str, url2: str) -> bool:
    return is_same_host(extract_domain(url1), extract_domain(url2))


def extract_domain(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def is_valid_url(url: str) -> bool:
    """True for absolute http(s) URLs with a host."""
    try:
        parsed = urlsplit(url)
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def resolve_url(base_url: str, relative_url: str) -> str:
    try:
        return urljoin(base_url, relative_url)
    except ValueError:
        return relative_url
