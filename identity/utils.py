"""
Shared helpers for the identity layer.

Centralizes timestamp handling and name normalization so the matcher, the
projector and the masker all see names the same way.
"""

import re
from datetime import datetime, timezone

_TAG_RE = re.compile(r"<[A-Za-z/!?][^>]*>")
_WS_RE = re.compile(r"\s+")


def utcnow():
    """Return the current UTC time as a naive datetime (no tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_timestamp(dt):
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def parse_timestamp(value):
    """Parse common timestamp formats into a naive UTC datetime.

    Supported inputs:
      - ``None`` / empty string -> ``None``
      - ``datetime`` instance (returned as-is after UTC conversion)
      - ISO-8601 strings  (``2024-01-15T12:30:00Z``, ``2024-01-15T12:30:00+05:00``)
      - ``YYYY-MM-DD HH:MM:SS``
      - ``YYYY-MM-DD``
    """
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value).strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
                try:
                    dt = datetime.strptime(raw, fmt)
                    break
                except ValueError:
                    dt = None
            if dt is None:
                return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def is_expired(expires_at, now=None):
    expiry = parse_timestamp(expires_at)
    if expiry is None:
        return False
    return expiry < (now or utcnow())


def normalize_name(value):
    """Trim, collapse inner whitespace and lowercase."""
    if not value:
        return ""
    return _WS_RE.sub(" ", str(value)).strip().lower()


def name_tokens(value):
    normalized = normalize_name(value)
    return normalized.split(" ") if normalized else []


def strip_html(html):
    if not html:
        return ""
    text = _TAG_RE.sub(" ", html)
    return _WS_RE.sub(" ", text).strip()
