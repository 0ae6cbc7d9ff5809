"""
Evidence normalization: raw "evidence" cell → canonical Evidence.

The evidence column is JSON written by several export tools and then
re-quoted by whatever produced the CSV, so the same payload shows up with
doubled quotes, backslash-escaped quotes, an extra layer of JSON string
encoding, or all of the above. normalize_evidence() tries an ordered chain
of parsing strategies and stops at the first that yields a JSON object or
array. When all of them fail it pulls recognisable fields out with regular
expressions, and as a last resort keeps a truncated copy of the raw string.

normalize_evidence() never raises. The worst outcome is the default shape
annotated with the original text.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from alertsync.models.alert import Evidence
from alertsync.normalizers.raw_events import parse_list_raw_events

logger = logging.getLogger(__name__)

_ORIGINAL_PREVIEW_CHARS = 500
_PARSING_ERROR = "Could not parse evidence field"

_LEADING_INT = re.compile(r"^\s*[+-]?\d+")

# ---------------------------------------------------------------------------
# Pattern extraction for payloads no strategy could parse.
# Field patterns tolerate doubled quotes around keys and values.
# ---------------------------------------------------------------------------
_EMAIL = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")


def _field_pattern(key: str) -> re.Pattern[str]:
    return re.compile(rf'{key}"*\s*:\s*"+([^"]+)"')


_FIELD_PATTERNS: dict[str, re.Pattern[str]] = {
    "userPrincipalNames": _field_pattern("userPrincipalName"),
    "displayNames": _field_pattern("displayName"),
    "fileNames": _field_pattern("fileName"),
    "timestamps": _field_pattern("createdDateTime"),
    "subjects": _field_pattern("subject"),
}
_FLAT_OBJECT = re.compile(r"\{[^}]*\}")


def _default_evidence() -> dict[str, Any]:
    return {"site": "", "count": 0, "list_raw_events": []}


def _loads_container(text: str, *, strict: bool = True) -> dict[str, Any] | list[Any]:
    parsed = json.loads(text, strict=strict)
    if not isinstance(parsed, (dict, list)):
        raise ValueError(f"expected a JSON object or array, got {type(parsed).__name__}")
    return parsed


def _strip_outer_quotes(text: str, quotes: str = '"') -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in quotes:
        return text[1:-1]
    return text


# ---------------------------------------------------------------------------
# Parsing strategies: str -> dict | list, raising ValueError on failure
# ---------------------------------------------------------------------------

def _parse_direct(text: str) -> dict[str, Any] | list[Any]:
    return _loads_container(text)


def _parse_doubled_quotes(text: str) -> dict[str, Any] | list[Any]:
    return _loads_container(text.replace('""', '"'))


def _parse_escaped_quotes(text: str) -> dict[str, Any] | list[Any]:
    cleaned = _strip_outer_quotes(text.strip(), quotes="\"'")
    cleaned = cleaned.replace('\\"', '"').replace("\\\\", "\\").replace('""', '"')
    return _loads_container(cleaned)


def _parse_export_artifacts(text: str) -> dict[str, Any] | list[Any]:
    cleaned = (
        text.replace('\\""', '"')
        .replace('""@', '"@')
        .replace('""#', '"#')
        .replace('"":', '":')
    )
    cleaned = re.sub(r':""([^"]*)""', r':"\1"', cleaned)
    cleaned = _strip_outer_quotes(cleaned.replace('""', '"').strip())
    return _loads_container(cleaned)


def _parse_nested_encoding(text: str) -> dict[str, Any] | list[Any]:
    value: Any = text
    for _ in range(3):
        if not (isinstance(value, str) and len(value) >= 2 and value.startswith('"') and value.endswith('"')):
            break
        try:
            value = json.loads(value)
        except ValueError:
            break
    if isinstance(value, str):
        return _loads_container(value)
    if not isinstance(value, (dict, list)):
        raise ValueError(f"expected a JSON object or array, got {type(value).__name__}")
    return value


def _parse_aggressive(text: str) -> dict[str, Any] | list[Any]:
    cleaned = re.sub(r'^""|""$', "", text)
    cleaned = (
        cleaned.replace('""', '"')
        .replace('\\"', '"')
        .replace("\\\\", "\\")
        .replace("\\n", "\n")
        .replace("\\r", "\r")
        .replace("\\t", "\t")
        .strip()
    )
    return _loads_container(cleaned, strict=False)


STRATEGIES: tuple[tuple[str, Callable[[str], dict[str, Any] | list[Any]]], ...] = (
    ("direct", _parse_direct),
    ("doubled_quotes", _parse_doubled_quotes),
    ("escaped_quotes", _parse_escaped_quotes),
    ("export_artifacts", _parse_export_artifacts),
    ("nested_encoding", _parse_nested_encoding),
    ("aggressive", _parse_aggressive),
)


def parse_with_strategies(text: str) -> tuple[str, dict[str, Any] | list[Any]] | None:
    """Run the strategy chain; return (strategy name, parsed value) or None."""
    for name, strategy in STRATEGIES:
        try:
            parsed = strategy(text)
        except ValueError as e:
            logger.debug("evidence_normalizer.strategy_failed", extra={"strategy": name, "error": str(e)})
            continue
        logger.debug("evidence_normalizer.strategy_succeeded", extra={"strategy": name})
        return name, parsed
    return None


def extract_fields(text: str) -> dict[str, Any]:
    """Pull recognisable values out of an unparseable payload."""
    extracted: dict[str, Any] = {}

    emails = _EMAIL.findall(text)
    if emails:
        extracted["extractedEmails"] = emails

    for key, pattern in _FIELD_PATTERNS.items():
        matches = pattern.findall(text)
        if matches:
            extracted[key] = matches

    object_count = len(_FLAT_OBJECT.findall(text))
    if object_count:
        extracted["approximateObjectCount"] = object_count

    return extracted


def _from_string(text: str) -> dict[str, Any]:
    result = parse_with_strategies(text)
    if result is not None:
        _, parsed = result
        if isinstance(parsed, list):
            return {**_default_evidence(), "list_raw_events": parsed, "count": len(parsed)}
        return {**_default_evidence(), **parsed}

    extracted = extract_fields(text)
    if extracted:
        logger.info("evidence_normalizer.extracted_fields", extra={"fields": sorted(extracted)})
        return {**_default_evidence(), **extracted}

    logger.warning("evidence_normalizer.unparseable", extra={"length": len(text)})
    preview = text[:_ORIGINAL_PREVIEW_CHARS]
    if len(text) > _ORIGINAL_PREVIEW_CHARS:
        preview += "..."
    return {
        **_default_evidence(),
        "originalEvidenceString": preview,
        "parsingError": _PARSING_ERROR,
    }


def _coerce_count(raw: Any) -> int:
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return max(raw, 0)
    if isinstance(raw, float):
        return max(int(raw), 0) if raw == raw and abs(raw) != float("inf") else 0
    match = _LEADING_INT.match(str(raw)) if raw is not None else None
    return max(int(match.group()), 0) if match else 0


def normalize_evidence(raw: Any) -> Evidence:
    """Canonicalize an evidence cell. Never raises.

    Args:
        raw: The cell value. A mapping, list, Evidence, string, or any scalar.

    Returns:
        Evidence with site, count and list_raw_events always present, plus
        any provider-specific keys that could be recovered.
    """
    if isinstance(raw, Evidence):
        merged = {**_default_evidence(), **raw.model_dump()}
    elif isinstance(raw, dict):
        merged = {**_default_evidence(), **{str(k): v for k, v in raw.items()}}
    elif isinstance(raw, (list, tuple)):
        merged = {**_default_evidence(), "list_raw_events": list(raw), "count": len(raw)}
    elif raw is None:
        merged = _default_evidence()
    else:
        text = raw if isinstance(raw, str) else str(raw)
        merged = _from_string(text) if text.strip() else _default_evidence()

    if not isinstance(merged.get("list_raw_events"), list):
        merged["list_raw_events"] = parse_list_raw_events(merged.get("list_raw_events"))

    merged["count"] = _coerce_count(merged.get("count"))
    merged["site"] = str(merged["site"]) if merged.get("site") else ""

    return Evidence.model_validate(merged)
