from __future__ import annotations

import re
import unicodedata
from urllib.parse import urlsplit, urlunsplit

from url_normalize import url_normalize

_WHITESPACE = re.compile(r"\s+")


def normalize_url(url: str) -> str:
    """Canonical form of an article link used for duplicate detection.

    Scheme and host are lowercased, the trailing slash, query string and
    fragment are dropped. Links that cannot be parsed are returned stripped.
    """
    url = url.strip()
    if not url:
        return ""
    try:
        normalized = url_normalize(url)
    except Exception:
        normalized = url

    parts = urlsplit(normalized)
    if not parts.scheme or not parts.netloc:
        return normalized
    host = parts.netloc.lower().removeprefix("www.")
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), host, path, "", ""))


def normalize_title(title: str) -> str:
    """Case and whitespace insensitive form of a title."""
    title = unicodedata.normalize("NFKC", title)
    return _WHITESPACE.sub(" ", title).strip().casefold()


def is_valid_url(url: str) -> bool:
    """True for absolute http(s) links with a host."""
    if not url:
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme in {"http", "https"} and bool(parts.netloc)
