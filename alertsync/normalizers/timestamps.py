"""
Timestamp normalization for CSV cells.

Export tools write the same instant as epoch seconds, ISO 8601, or one of a
handful of locale-ish formats. normalize_timestamp() is the epoch-aware
entry point used for window bounds and alert times; parse_datetime() is the
generic parser used for the windows list, which never treats digits as
epoch seconds.

Every datetime leaving this module is timezone-aware UTC. Naive input is
taken to be UTC.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

_EPOCH_SECONDS = re.compile(r"^\d+$")

# Tried in order after datetime.fromisoformat() has given up.
_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%d %b %Y %H:%M:%S",
    "%d %b %Y",
    "%b %d %Y %H:%M:%S",
    "%b %d, %Y %H:%M:%S",
    "%b %d, %Y",
    "%Y-%m",
    "%Y",
)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso_millis(value: datetime) -> str:
    """Render *value* as ``YYYY-MM-DDTHH:MM:SS.mmmZ``.

    This is the form identity hashes are computed over, so it must stay
    stable across releases.
    """
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_datetime(text: str) -> datetime:
    """Generic date-string parsing. Not epoch-aware.

    Raises:
        ValueError: If *text* is empty or matches none of the known shapes.
    """
    cleaned = text.strip()
    if not cleaned:
        raise ValueError("empty date string")

    try:
        return ensure_utc(datetime.fromisoformat(_zulu_to_offset(cleaned)))
    except ValueError:
        pass

    for fmt in _FORMATS:
        try:
            return ensure_utc(datetime.strptime(cleaned, fmt))
        except ValueError:
            continue

    try:
        parsed = parsedate_to_datetime(cleaned)
    except (TypeError, ValueError, IndexError):
        parsed = None
    if parsed is None:
        raise ValueError(f"Unrecognised date string: '{text}'")
    return ensure_utc(parsed)


def normalize_timestamp(value: Any) -> datetime:
    """Convert one timestamp cell to a UTC datetime.

    A digit-only value is always Unix epoch seconds, never a bare year.
    Anything else goes through parse_datetime().

    Raises:
        ValueError: If the value is empty, unparseable, or out of range.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if value is None:
        raise ValueError("missing timestamp")

    text = str(value).strip()
    if _EPOCH_SECONDS.match(text):
        try:
            return datetime.fromtimestamp(int(text), tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"Epoch seconds out of range: '{text}'") from e
    return parse_datetime(text)


def _zulu_to_offset(text: str) -> str:
    if text.endswith(("Z", "z")):
        return text[:-1] + "+00:00"
    return text
