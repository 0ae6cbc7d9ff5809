"""
Drop-folder monitor: picks up exported CSV files and stores their records.

One cycle processes incidents before alerts, so alerts created in the same
cycle find their incidents already in the store:

  drop/incidents/*.csv                        -> create_incident
  drop/alerts/alert_<x>.csv, alerts_<x>.csv   -> create_alert
  drop/alerts/incidents_detections_output.csv -> record_detection (last)

Per file, a duplicate identity counts as a duplicate and any other storage
error as an error. A file whose records all failed goes to the error
directory; anything else goes to processed/<kind>. A file that cannot be
read at all stays in the drop folder and is reported with its failure.
Records already stored are never rolled back when the move fails.

Entry point: await DropFolderMonitor.process_all_files()
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from alertsync.config import Settings
from alertsync.errors import ConflictError, IngestFileError
from alertsync.models.alert import AlertRecord
from alertsync.models.incident import IncidentRecord
from alertsync.models.ingest_io import FileReport, IngestInput, RowKind
from alertsync.pipeline import ingest
from alertsync.pipeline.files import FileLifecycleManager
from alertsync.services.records import RecordService

logger = logging.getLogger(__name__)

DETECTIONS_FILE = "incidents_detections_output.csv"
ALERT_FILE_PATTERN = re.compile(r"^alerts?_([^.]+)\.csv$")

# Returns True when the record was created, False when an existing one was updated
StoreRecord = Callable[[Union[AlertRecord, IncidentRecord]], Awaitable[bool]]


class DropFolderMonitor:
    def __init__(
        self,
        settings: Settings,
        records: RecordService,
        files: Optional[FileLifecycleManager] = None,
    ):
        self._settings = settings
        self._records = records
        self._files = files or FileLifecycleManager(settings)
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def process_all_files(self) -> list[FileReport]:
        reports = await self.process_incident_files()
        reports.extend(await self.process_alert_files())
        logger.info(
            "drop_monitor.cycle_complete",
            extra={
                "files": len(reports),
                "moved_to_error": sum(r.moved_to_error for r in reports),
                "failed": sum(r.failure is not None for r in reports),
            },
        )
        return reports

    def _list_drop_dir(self, kind: RowKind) -> list[Path]:
        directory = self._settings.drop_dir(kind.value)
        if not directory.is_dir():
            logger.warning("drop_monitor.directory_missing", extra={"directory": str(directory)})
            return []
        return sorted(p for p in directory.iterdir() if p.is_file())

    async def process_incident_files(self) -> list[FileReport]:
        reports = []
        for path in self._list_drop_dir(RowKind.INCIDENT):
            if path.suffix.lower() != ".csv":
                logger.debug("drop_monitor.file_ignored", extra={"file": path.name})
                continue
            reports.append(await self._process_file(path, RowKind.INCIDENT, self._create_incident))
        return reports

    async def process_alert_files(self) -> list[FileReport]:
        reports = []
        detections: Optional[Path] = None
        for path in self._list_drop_dir(RowKind.ALERT):
            if path.name == DETECTIONS_FILE:
                detections = path
                continue
            if not ALERT_FILE_PATTERN.match(path.name):
                logger.debug("drop_monitor.file_ignored", extra={"file": path.name})
                continue
            reports.append(await self._process_file(path, RowKind.ALERT, self._create_alert))

        if detections is not None:
            reports.append(await self._process_file(detections, RowKind.ALERT, self._record_detection))
        return reports

    # ------------------------------------------------------------------
    # Per record
    # ------------------------------------------------------------------

    async def _create_incident(self, record: IncidentRecord) -> bool:
        await self._records.create_incident(record)
        return True

    async def _create_alert(self, record: AlertRecord) -> bool:
        await self._records.create_alert(record)
        return True

    async def _record_detection(self, record: AlertRecord) -> bool:
        _, created = await self._records.record_detection(record)
        return created

    # ------------------------------------------------------------------
    # Per file
    # ------------------------------------------------------------------

    async def _process_file(self, path: Path, kind: RowKind, store_record: StoreRecord) -> FileReport:
        report = FileReport(file_name=path.name, kind=kind)
        logger.info("drop_monitor.file_start", extra={"file": path.name, "kind": kind.value})

        try:
            output = await ingest.run(IngestInput(file_path=path, kind=kind))
        except IngestFileError as e:
            report.failure = e.reason
            logger.error("drop_monitor.file_unreadable", extra={"file": path.name, "error": e.reason})
            return report

        report.parsed = len(output.records)
        for record in output.records:
            try:
                created = await store_record(record)
            except ConflictError as e:
                report.duplicates += 1
                logger.debug("drop_monitor.duplicate", extra={"file": path.name, "record_id": e.record_id})
                continue
            except Exception as e:
                report.errors += 1
                logger.error(
                    "drop_monitor.record_failed",
                    extra={"file": path.name, "user": record.user, "error": str(e)},
                )
                continue
            if created:
                report.processed += 1
            else:
                report.updated += 1

        all_failed = report.errors > 0 and report.processed == 0 and report.updated == 0
        try:
            if all_failed:
                report.destination = self._files.mark_failed(path)
                report.moved_to_error = True
            else:
                report.destination = self._files.mark_processed(path, kind.value)
        except OSError as e:
            report.failure = f"move failed: {e}"

        log = logger.warning if all_failed else logger.info
        log(
            "drop_monitor.file_complete",
            extra={
                "file": path.name,
                "kind": kind.value,
                "parsed": report.parsed,
                "processed": report.processed,
                "updated": report.updated,
                "duplicates": report.duplicates,
                "errors": report.errors,
                "destination": str(report.destination) if report.destination else None,
            },
        )
        return report

    # ------------------------------------------------------------------
    # Periodic monitoring
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval: Optional[float] = None) -> asyncio.Task:
        """Run process_all_files every *interval* seconds until stop() is called."""
        if self.running:
            return self._task
        interval = interval if interval is not None else self._settings.monitoring_interval_seconds
        self._files.ensure_directories()
        self._task = asyncio.create_task(self._loop(interval))
        logger.info("drop_monitor.started", extra={"interval_seconds": interval})
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("drop_monitor.stopped")

    async def _loop(self, interval: float) -> None:
        while True:
            try:
                await self.process_all_files()
            except Exception as e:
                logger.error("drop_monitor.cycle_failed", extra={"error": str(e)})
            await asyncio.sleep(interval)
