"""URL canonicalization and listing identity."""

import hashlib
import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from everybot.models import SourceKey

TRACKING_PARAMS = frozenset(
    {
        "fbclid",
        "gclid",
        "yclid",
        "gbraid",
        "wbraid",
        "msclkid",
        "ref",
        "referrer",
    }
)

_HOST_SOURCES = (
    ("otodom.", SourceKey.OTODOM),
    ("olx.", SourceKey.OLX),
    ("morizon.", SourceKey.MORIZON),
    ("gratka.", SourceKey.GRATKA),
    ("odwlasciciela.", SourceKey.ODWLASCICIELA),
    ("odwłaściciela.", SourceKey.ODWLASCICIELA),
)

_LISTING_ID_PATTERNS: dict[str, tuple[re.Pattern, ...]] = {
    SourceKey.OTODOM.value: (re.compile(r"-ID([A-Za-z0-9]+)(?:\.html)?$"),),
    SourceKey.OLX.value: (re.compile(r"-id([a-z0-9]+)\.html$", re.IGNORECASE),),
    SourceKey.GRATKA.value: (
        re.compile(r"/(?:ob|id)/(\d+)", re.IGNORECASE),
        re.compile(r"[?&]id=(\d+)", re.IGNORECASE),
    ),
    SourceKey.MORIZON.value: (re.compile(r"-mzn(\d+)$", re.IGNORECASE),),
    SourceKey.ODWLASCICIELA.value: (re.compile(r"/oferty/podglad/(\d+)", re.IGNORECASE),),
}


def _is_tracking(key: str) -> bool:
    k = key.lower()
    return k.startswith("utm_") or k in TRACKING_PARAMS


def normalize_url(url: str) -> str:
    """
    Canonical form of a listing URL.

    Lower-cases scheme and host, drops ``www.``, strips trailing slashes
    (except the root), removes tracking parameters, sorts the remaining
    query parameters and drops the fragment.
    """
    raw = (url or "").strip()
    parts = urlsplit(raw)
    if not parts.scheme or not parts.netloc:
        return raw

    host = parts.netloc.lower()
    if host.startswith("www."):
        host = host[4:]

    path = parts.path
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    if not path:
        path = "/"

    params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if not _is_tracking(k)]
    params.sort(key=lambda kv: kv[0])

    return urlunsplit((parts.scheme.lower(), host, path, urlencode(params), ""))


def url_hash(normalized_url: str) -> str:
    """SHA-256 hex digest used as the fallback identity."""
    return hashlib.sha256(normalized_url.encode("utf-8")).hexdigest()


def derive_listing_id(source: str, normalized_url: str) -> str | None:
    """Portal-specific listing id embedded in the URL, or None."""
    patterns = _LISTING_ID_PATTERNS.get(source)
    if not patterns:
        return None
    parts = urlsplit(normalized_url)
    target = parts.path + (f"?{parts.query}" if parts.query else "")
    for pattern in patterns:
        match = pattern.search(target)
        if match:
            return match.group(1).lower()
    return None


def detect_source(url: str) -> SourceKey | None:
    """Portal key for a URL based on its host."""
    host = urlsplit((url or "").strip()).netloc.lower()
    for marker, source in _HOST_SOURCES:
        if marker in host:
            return source
    return None


def strip_page_param(url: str, param: str = "page") -> str:
    """Remove the pagination parameter so paginated URLs compare equal."""
    parts = urlsplit(url)
    params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != param]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), parts.fragment))


def same_search(requested_url: str, final_url: str) -> bool:
    """True when two search URLs name the same query, ignoring page and cosmetics."""
    return normalize_url(strip_page_param(requested_url)) == normalize_url(strip_page_param(final_url))
