"""
URL canonicalization.

Entries are deduplicated by canonical URL when a feed offers no GUID, so
equivalent spellings of one link must map to the same string.
"""

import posixpath
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

TRACKING_PARAMS = frozenset({"fbclid", "gclid", "gclsrc", "mc_cid", "mc_eid"})
DEFAULT_PORTS = {"http": 80, "https": 443}


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_PARAMS


def _normalize_host(hostname: str) -> str:
    host = hostname.lower()
    if host.startswith("www.") and len(host) > len("www."):
        host = host[len("www."):]
    if ":" in host:
        # IPv6 literal
        host = f"[{host}]"
    return host


def _normalize_path(path: str) -> str:
    """Resolve dot segments and drop trailing slashes; the root becomes empty."""
    if not path:
        return ""
    cleaned = posixpath.normpath(path)
    # normpath keeps a leading '//' and turns a relative '' into '.'
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    if cleaned in (".", "/"):
        return ""
    return cleaned.rstrip("/")


def _normalize_query(query: str) -> str:
    if not query:
        return ""
    pairs = [
        (name, value)
        for name, value in parse_qsl(query, keep_blank_values=True)
        if not _is_tracking_param(name)
    ]
    # sorted() is stable, so repeated names keep their relative order
    pairs = sorted(pairs, key=lambda pair: pair[0])
    return urlencode(pairs)


def normalize(raw: str) -> str:
    """Return the canonical form of ``raw``.

    Inputs that are not absolute URLs with a scheme and host are returned
    trimmed but otherwise unchanged; this function never raises.
    """
    trimmed = (raw or "").strip()
    if not trimmed:
        return ""

    try:
        parts = urlsplit(trimmed)
        port = parts.port
    except ValueError:
        return trimmed

    if not parts.scheme or not parts.netloc or not parts.hostname:
        return trimmed

    scheme = parts.scheme.lower()
    netloc = _normalize_host(parts.hostname)
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    if "@" in parts.netloc:
        userinfo = parts.netloc.rsplit("@", 1)[0]
        netloc = f"{userinfo}@{netloc}"

    return urlunsplit(
        (scheme, netloc, _normalize_path(parts.path), _normalize_query(parts.query), "")
    )
