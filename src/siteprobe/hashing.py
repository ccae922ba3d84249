"""
URL canonicalization and fingerprinting for submission deduplication.
"""
from __future__ import annotations
import hashlib
from functools import lru_cache
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

import idna

DEFAULT_PORTS = {"http": 80, "https": 443}


@lru_cache(maxsize=10000)
def canonicalize_url(url: str) -> str:
    """
    Normalize a submitted URL so equivalent spellings share one fingerprint:
    - Surrounding whitespace trimmed
    - Scheme and host lowercased, host punycode-encoded
    - Default ports stripped
    - Empty path becomes "/"
    - Query parameters sorted
    - Fragment dropped

    Trailing slashes on non-empty paths are preserved; servers may route them
    differently.
    """
    parsed = urlsplit(url.strip())

    scheme = parsed.scheme.lower()

    host = (parsed.hostname or "").rstrip(".")
    try:
        host = idna.encode(host, uts46=True).decode("ascii") if host else ""
    except (idna.IDNAError, UnicodeError):
        host = host.lower()

    if ":" in host:
        # IPv6 literal
        host = f"[{host}]"

    netloc = host
    try:
        port = parsed.port
    except ValueError:
        port = None
    if port and port != DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{port}"

    if parsed.username:
        userinfo = parsed.username
        if parsed.password:
            userinfo = f"{userinfo}:{parsed.password}"
        netloc = f"{userinfo}@{netloc}"

    path = parsed.path or "/"

    query = parsed.query
    if query:
        params = sorted(parse_qsl(query, keep_blank_values=True))
        query = urlencode(params, doseq=True)

    return urlunsplit((scheme, netloc, path, query, ""))


def generate_url_hash(url: str) -> str:
    """SHA-256 hex digest of the canonical form of `url`."""
    return hashlib.sha256(canonicalize_url(url).encode("utf-8")).hexdigest()
