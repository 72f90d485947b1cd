"""Small helpers shared by the fetcher, discovery and extraction code.

These cover text sanitisation before persistence, host normalisation for
same-site checks, and masking of credentials so they never reach the
logs.
"""

from __future__ import annotations

import re
from urllib.parse import urlparse

# NUL and C0 control characters except tab, newline and carriage return,
# plus DEL. PostgreSQL rejects NUL bytes in text columns.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def sanitize_text(value: str | None) -> str:
    """Strip NUL bytes and control characters and trim whitespace.

    Returns an empty string for ``None`` so callers can treat the result as
    plain text without extra checks.
    """
    if not value:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return _CONTROL_CHARS.sub("", value).strip()


def sanitize_optional(value: str | None) -> str | None:
    """Like :func:`sanitize_text` but keep ``None`` for empty results."""
    cleaned = sanitize_text(value)
    return cleaned or None


def normalize_host(url: str) -> str:
    """Return the lower-cased host of ``url`` without a leading ``www.``."""
    try:
        netloc = urlparse(url).netloc.lower()
    except ValueError:
        netloc = ""
    if "@" in netloc:
        netloc = netloc.rsplit("@", 1)[1]
    if ":" in netloc:
        netloc = netloc.split(":", 1)[0]
    if netloc.startswith("www."):
        netloc = netloc[4:]
    return netloc


def is_same_host(url: str, other: str) -> bool:
    host = normalize_host(url)
    return bool(host) and host == normalize_host(other)


def mask_secret(secret: str | None, visible: int = 4) -> str | None:
    """Return an API key or token with everything but the tail redacted.

    Examples:
        fc-1234567890abcd -> ***abcd
        short -> ***

    Returns None if the secret is None or empty.
    """
    if not secret:
        return None
    if len(secret) <= visible * 2:
        return "***"
    return f"***{secret[-visible:]}"
