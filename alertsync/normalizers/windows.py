"""
Parser for the incident "windows" cell: the discrete timestamps composing an
incident.

The cell arrives as a bracketed list literal (Python- or JSON-quoted), a bare
comma-separated list, a single value, or an already-materialized list. The
result is always a list of ISO instants; entries that do not parse are
dropped with a warning and never fail the row.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from alertsync.normalizers.timestamps import parse_datetime, to_iso_millis

logger = logging.getLogger(__name__)

_QUOTED_TOKEN = re.compile(r"""(["'])(.*?)\1""")


def _split_bracketed(text: str) -> list[str]:
    inner = text[1:-1]
    quoted = [token for _, token in _QUOTED_TOKEN.findall(inner)]
    if quoted:
        return quoted
    return [token.strip().strip("\"'") for token in inner.split(",")]


def _tokens(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)

    text = str(value).strip()
    if text.startswith("[") and text.endswith("]"):
        return _split_bracketed(text)
    if "," in text:
        return [token.strip() for token in text.split(",")]
    return [text]


def parse_windows(value: Any) -> list[str]:
    """Normalize a windows cell into ordered, de-duplicated ISO instants."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return []

    parsed: list[str] = []
    for token in _tokens(value):
        if token is None:
            continue
        text = str(token).strip()
        if not text:
            continue
        try:
            iso = to_iso_millis(parse_datetime(text))
        except ValueError:
            logger.warning("windows_parser.invalid_entry", extra={"entry": text})
            continue
        if iso not in parsed:
            parsed.append(iso)

    return parsed
