"""
Parser for evidence.list_raw_events when it is not already a list.

Strategies run in order and the first one that produces a list wins. The
last strategy cannot fail, so the parser is total: an unrecoverable string
survives as a one-element list instead of being dropped.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

logger = logging.getLogger(__name__)

_LEADING_WRAP = re.compile(r"^[\"'\[]+")
_TRAILING_WRAP = re.compile(r"[\"'\]]+$")
_OBJECT_BOUNDARY = re.compile(r",\s*(?=\{)")
_BARE_KEY = re.compile(r"(?<![\"\w])(\w+)\s*:")


def _loads_list(text: str) -> list[Any]:
    parsed = json.loads(text)
    if isinstance(parsed, dict):
        return [parsed]
    if not isinstance(parsed, list):
        raise ValueError(f"expected a JSON array, got {type(parsed).__name__}")
    return parsed


def _strip_wrapping(text: str) -> str:
    return _TRAILING_WRAP.sub("", _LEADING_WRAP.sub("", text)).strip()


# ---------------------------------------------------------------------------
# Strategies: str -> list, raising ValueError on failure
# ---------------------------------------------------------------------------

def _parse_bracketed(text: str) -> list[Any]:
    if not (text.startswith("[") and text.endswith("]")):
        raise ValueError("not a bracketed list")
    return _loads_list(text)


def _parse_bracketed_doubled_quotes(text: str) -> list[Any]:
    collapsed = text.replace('""', '"')
    if not (collapsed.startswith("[") and collapsed.endswith("]")):
        raise ValueError("not a bracketed list")
    return _loads_list(collapsed)


def _parse_joined_objects(text: str) -> list[Any]:
    cleaned = _strip_wrapping(text).replace('\\""', '"').replace('""', '"').strip()
    if not cleaned:
        return []
    if "}{" in cleaned:
        cleaned = "[" + cleaned.replace("}{", "},{") + "]"
    elif cleaned.startswith("{"):
        cleaned = f"[{cleaned}]"
    return _loads_list(cleaned)


def _parse_split_objects(text: str) -> list[Any]:
    cleaned = _strip_wrapping(text)
    if not cleaned:
        return []

    events: list[Any] = []
    for piece in _OBJECT_BOUNDARY.split(cleaned):
        piece = piece.strip()
        if not piece:
            continue
        try:
            if piece.startswith("{") and piece.endswith("}"):
                events.append(json.loads(piece))
            else:
                events.append(json.loads("{" + _BARE_KEY.sub(r'"\1":', piece) + "}"))
        except ValueError:
            logger.debug("raw_events_parser.piece_kept_as_string", extra={"piece": piece[:100]})
            events.append(piece)

    if not events:
        raise ValueError("no events recovered")
    return events


_STRATEGIES: tuple[tuple[str, Callable[[str], list[Any]]], ...] = (
    ("bracketed", _parse_bracketed),
    ("bracketed_doubled_quotes", _parse_bracketed_doubled_quotes),
    ("joined_objects", _parse_joined_objects),
    ("split_objects", _parse_split_objects),
)


def parse_list_raw_events(value: Any) -> list[Any]:
    """Materialize list_raw_events as a list. Never raises."""
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, dict):
        return [value]
    if not isinstance(value, str):
        return []

    text = value.strip()
    if not text:
        return []

    for name, strategy in _STRATEGIES:
        try:
            events = strategy(text)
        except ValueError as e:
            logger.debug("raw_events_parser.strategy_failed", extra={"strategy": name, "error": str(e)})
            continue
        return [event for event in events if event is not None and event != ""]

    return [value]
