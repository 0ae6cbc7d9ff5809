"""
Record ingestion pipeline: CSV file → validated AlertRecord / IncidentRecord list.

Handles the two fixed export schemas:
  - incidents  (user, windows_start, windows_end, windows, score)
  - alerts     (user, datestr, evidence, score, alert_name, MITRE_tactic,
                MITRE_technique, Logs, Detection_model, Description,
                isUnderIncident)

Failure semantics:
  - file-level: a missing, unreadable or undecodable file raises
    IngestFileError and nothing is returned;
  - row-level: a row missing required fields, with a bad timestamp, or that
    fails validation is logged and skipped; the rest of the file continues;
  - field-level: evidence and windows never fail a row, they degrade.

Entry point: async def run(input: IngestInput) -> IngestOutput

Nothing is persisted here. The drop-folder monitor hands the records to the
record service.
"""

from __future__ import annotations

import asyncio
import csv
import logging
import os
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Iterator, Union

from alertsync.errors import IngestFileError
from alertsync.models.alert import AlertRecord
from alertsync.models.incident import IncidentRecord
from alertsync.models.ingest_io import IngestInput, IngestOutput, RowIssue, RowKind
from alertsync.normalizers.evidence import normalize_evidence
from alertsync.normalizers.timestamps import normalize_timestamp, to_iso_millis
from alertsync.normalizers.windows import parse_windows

logger = logging.getLogger(__name__)

_INCIDENT_REQUIRED = ("user", "windows_start", "windows_end")
_ALERT_REQUIRED = ("user",)

_LEADING_NUMBER = re.compile(r"^\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_TRUTHY = {"true", "1", "yes", "y"}

# Evidence cells from API exports routinely exceed the csv module default.
_MAX_FIELD_BYTES = 16 * 1024 * 1024
csv.field_size_limit(max(csv.field_size_limit(), _MAX_FIELD_BYTES))

Record = Union[AlertRecord, IncidentRecord]


class _SkipRow(ValueError):
    """A row-level problem: the row is dropped, the file carries on."""


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def coerce_score(raw: Any) -> Decimal:
    """Leading-number parse of a score cell; anything unparseable is 0."""
    if raw is None:
        return Decimal("0")
    match = _LEADING_NUMBER.match(str(raw))
    if not match:
        return Decimal("0")
    try:
        return Decimal(match.group().strip()).quantize(Decimal("0.01"))
    except InvalidOperation:
        return Decimal("0")


def _truthy(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in _TRUTHY


def _require(row: dict[str, str], fields: tuple[str, ...]) -> None:
    missing = [field for field in fields if not row.get(field)]
    if missing:
        raise _SkipRow(f"missing required fields: {', '.join(missing)}")


def _read_rows(path: Path) -> Iterator[tuple[int, dict[str, str]]]:
    """Yield (row_number, trimmed row) pairs; skip rows that are entirely blank."""
    if not path.exists():
        raise IngestFileError(str(path), "file does not exist")
    if not path.is_file():
        raise IngestFileError(str(path), "not a regular file")
    if not os.access(path, os.R_OK):
        raise IngestFileError(str(path), "file is not readable")

    try:
        handle = open(path, newline="", encoding="utf-8-sig")
    except OSError as e:
        raise IngestFileError(str(path), str(e)) from e

    with handle:
        try:
            reader = csv.DictReader(handle)
            for row_number, raw_row in enumerate(reader, start=1):
                row = {
                    key.strip(): (value or "").strip()
                    for key, value in raw_row.items()
                    if key is not None
                }
                if not any(row.values()):
                    continue
                yield row_number, row
        except (UnicodeDecodeError, csv.Error) as e:
            raise IngestFileError(str(path), f"malformed CSV: {e}") from e


# ---------------------------------------------------------------------------
# Incident rows
# ---------------------------------------------------------------------------

def _parse_incident_row(row: dict[str, str], warnings: list[str]) -> IncidentRecord:
    _require(row, _INCIDENT_REQUIRED)

    try:
        window_start = normalize_timestamp(row["windows_start"])
        window_end = normalize_timestamp(row["windows_end"])
    except ValueError as e:
        raise _SkipRow(
            f"invalid timestamp values: start={row['windows_start']}, "
            f"end={row['windows_end']} ({e})"
        ) from e

    windows = parse_windows(row.get("windows"))
    if row.get("windows") and not windows:
        warnings.append(f"no parseable entries in windows '{row['windows'][:80]}'")

    return IncidentRecord(
        user=row["user"],
        window_start=window_start,
        window_end=window_end,
        windows=windows,
        score=coerce_score(row.get("score")),
    )


# ---------------------------------------------------------------------------
# Alert rows
# ---------------------------------------------------------------------------

def _parse_alert_row(row: dict[str, str], warnings: list[str]) -> AlertRecord:
    _require(row, _ALERT_REQUIRED)

    if row.get("datestr"):
        try:
            occurred_at = normalize_timestamp(row["datestr"])
        except ValueError as e:
            raise _SkipRow(f"invalid timestamp: {row['datestr']} ({e})") from e
    else:
        occurred_at = datetime.now(timezone.utc)
        warnings.append(f"missing datestr, using current time {to_iso_millis(occurred_at)}")

    evidence = normalize_evidence(row.get("evidence"))
    if evidence.model_extra and "parsingError" in evidence.model_extra:
        warnings.append("evidence could not be parsed; original text kept")

    return AlertRecord(
        user=row["user"],
        occurred_at=occurred_at,
        evidence=evidence,
        score=coerce_score(row.get("score")),
        alert_name=row.get("alert_name", ""),
        mitre_tactic=row.get("MITRE_tactic", ""),
        mitre_technique=row.get("MITRE_technique", ""),
        logs=row.get("Logs", ""),
        detection_model=row.get("Detection_model", ""),
        description=row.get("Description", ""),
        # Export hint only; the reconciler recomputes it when the record is stored.
        is_under_incident=_truthy(row.get("isUnderIncident")),
    )


_ROW_PARSERS: dict[RowKind, Callable[[dict[str, str], list[str]], Record]] = {
    RowKind.INCIDENT: _parse_incident_row,
    RowKind.ALERT: _parse_alert_row,
}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def iter_records(
    path: Path,
    kind: RowKind,
    warnings: list[str],
    skipped: list[RowIssue],
) -> Iterator[Record]:
    """Stream validated records from *path*, one row at a time.

    Skipped rows are appended to *skipped*; non-fatal notes to *warnings*.

    Raises:
        IngestFileError: If the file is missing, unreadable or not valid CSV.
    """
    parse_row = _ROW_PARSERS[kind]

    for row_number, row in _read_rows(path):
        row_warnings: list[str] = []
        try:
            record = parse_row(row, row_warnings)
        except _SkipRow as e:
            logger.warning(
                "ingest_pipeline.row_skipped",
                extra={"file": path.name, "row": row_number, "reason": str(e)},
            )
            skipped.append(RowIssue(row_number=row_number, reason=str(e)))
            continue
        except Exception as e:
            logger.error(
                "ingest_pipeline.row_failed",
                extra={"file": path.name, "row": row_number, "error": str(e)},
            )
            skipped.append(RowIssue(row_number=row_number, reason=f"invalid {kind.value} row: {e}"))
            continue

        warnings.extend(f"row {row_number}: {w}" for w in row_warnings)
        yield record


def ingest_file(path: Path, kind: RowKind) -> IngestOutput:
    """Synchronous form of run(); reads the whole file before returning."""
    path = Path(path)
    warnings: list[str] = []
    skipped: list[RowIssue] = []

    try:
        records = list(iter_records(path, kind, warnings, skipped))
    except IngestFileError as e:
        logger.error("ingest_pipeline.file_failed", extra={"file": str(path), "error": e.reason})
        raise

    if warnings:
        logger.warning("ingest_pipeline.warnings", extra={"file": path.name, "count": len(warnings)})
    if not records:
        logger.warning(
            "ingest_pipeline.no_valid_records",
            extra={"file": path.name, "kind": kind.value, "skipped": len(skipped)},
        )

    return IngestOutput(
        file_path=path,
        kind=kind,
        records=records,
        skipped=skipped,
        parse_warnings=warnings,
    )


async def run(input: IngestInput) -> IngestOutput:
    """Parse one CSV file into validated records.

    Args:
        input: IngestInput with the file path and row kind.

    Returns:
        IngestOutput with the records of every row that survived, plus the
        skipped rows and parse warnings. An empty result is a valid outcome.

    Raises:
        IngestFileError: If the file cannot be read at all.
    """
    logger.info("ingest_pipeline.start", extra={"file": str(input.file_path), "kind": input.kind.value})

    output = await asyncio.to_thread(ingest_file, input.file_path, input.kind)

    logger.info(
        "ingest_pipeline.complete",
        extra={
            "file": str(input.file_path),
            "kind": input.kind.value,
            "records": len(output.records),
            "skipped": len(output.skipped),
        },
    )
    return output
