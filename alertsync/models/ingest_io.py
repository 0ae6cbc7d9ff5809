"""
Ingestion and reconciliation I/O contracts.

The pipeline, the reconciler and the drop-folder monitor exchange these
types; nothing crosses those boundaries as a raw dict.

Import hierarchy (no circular dependencies):
  alert.py       <- normalizers/timestamps.py
  incident.py    <- normalizers/timestamps.py
  ingest_io.py   <- alert.py, incident.py
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field

from alertsync.models.alert import AlertRecord
from alertsync.models.incident import IncidentRecord


class RowKind(str, Enum):
    INCIDENT = "incident"
    ALERT = "alert"


# ---------------------------------------------------------------------------
# Ingest pipeline: CSV file -> validated records
# ---------------------------------------------------------------------------

class IngestInput(BaseModel):
    file_path: Path
    kind: RowKind


class RowIssue(BaseModel):
    row_number: int      # 1-based data row, header excluded
    reason: str


class IngestOutput(BaseModel):
    file_path: Path
    kind: RowKind
    records: list[Union[AlertRecord, IncidentRecord]] = Field(default_factory=list)
    skipped: list[RowIssue] = Field(default_factory=list)
    parse_warnings: list[str] = Field(default_factory=list)   # non-fatal; the row was kept

    @property
    def rows_read(self) -> int:
        return len(self.records) + len(self.skipped)

    @property
    def empty(self) -> bool:
        return not self.records


# ---------------------------------------------------------------------------
# Reconciler: incident mutation -> association changes
# ---------------------------------------------------------------------------

class ReconcileSummary(BaseModel):
    """Association changes made for one user. Best-effort: failures land in errors."""

    user: str
    incident_id: Optional[str] = None
    associated: list[str] = Field(default_factory=list)   # alert ids now linked
    cleared: list[str] = Field(default_factory=list)      # alert ids now under no incident
    unchanged: int = 0
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Drop-folder monitor: one processed file
# ---------------------------------------------------------------------------

class FileReport(BaseModel):
    file_name: str
    kind: RowKind
    parsed: int = 0
    processed: int = 0
    updated: int = 0
    duplicates: int = 0
    errors: int = 0
    destination: Optional[Path] = None   # None when the file stayed in the drop folder
    moved_to_error: bool = False
    failure: Optional[str] = None
