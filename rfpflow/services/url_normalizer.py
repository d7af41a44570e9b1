from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from loguru import logger

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


def normalize_url(url: str) -> str:
    """Canonical form used as the dedupe key for queued and cached URLs."""
    raw = (url or "").strip()
    if not raw:
        return raw
    if not _SCHEME_RE.match(raw):
        raw = "https://" + raw
    try:
        parsed = urlsplit(raw)
    except ValueError as exc:
        logger.warning(f"Failed to normalize URL {raw}: {exc}")
        return raw
    if not parsed.hostname:
        return raw

    netloc = parsed.netloc.lower()
    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"
    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))
    return urlunsplit((parsed.scheme.lower(), netloc, path, query, ""))


def is_valid_url(url: str) -> bool:
    try:
        parsed = urlsplit(normalize_url(url))
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.hostname) and "." in parsed.hostname


def get_domain(url: str) -> str:
    try:
        return (urlsplit(normalize_url(url)).hostname or "").lower()
    except ValueError:
        return ""


def is_allowed_domain(url: str, allowed: list[str]) -> bool:
    """True when the host equals or is a subdomain of an allowed domain; empty allows all."""
    if not allowed:
        return True
    host = get_domain(url)
    if not host:
        return False
    for domain in allowed:
        domain = domain.lower().lstrip(".")
        if host == domain or host.endswith("." + domain):
            return True
    return False
