"""
Error kinds shared across the pipeline, the store and the record service.

Row-level and field-level problems never raise; they are logged and
recorded on the ingest result. Only the kinds below cross module
boundaries.
"""

from __future__ import annotations


class IngestFileError(Exception):
    """The source file is missing or unreadable. Aborts the whole ingestion call."""

    def __init__(self, file_path: str, reason: str):
        self.file_path = file_path
        self.reason = reason
        super().__init__(f"Cannot ingest file {file_path}: {reason}")


class ConflictError(Exception):
    """A record with the same identity hash already exists in the store."""

    def __init__(self, entity: str, record_id: str, message: str | None = None):
        self.entity = entity
        self.record_id = record_id
        super().__init__(
            message or f"Duplicate {entity}: a record with identity {record_id} already exists"
        )


class RecordNotFoundError(LookupError):
    def __init__(self, entity: str, record_id: str):
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity.capitalize()} with ID {record_id} not found")
