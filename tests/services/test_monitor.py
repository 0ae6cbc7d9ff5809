"""Tests for alertsync/services/monitor.py: DropFolderMonitor."""

from __future__ import annotations

import asyncio
import csv
from pathlib import Path

import pytest

from alertsync.config import Settings
from alertsync.models.ingest_io import RowKind
from alertsync.services.monitor import DropFolderMonitor
from alertsync.services.records import RecordService
from alertsync.storage.memory import InMemoryStore

INCIDENT_HEADER = ["user", "windows_start", "windows_end", "windows", "score"]
ALERT_HEADER = ["user", "datestr", "evidence", "score", "alert_name", "isUnderIncident"]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def write_csv(path: Path, header: list[str], rows: list[list[str]]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(header)
        writer.writerows(rows)
    return path


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        csv_drop_path=tmp_path / "drop",
        csv_processed_path=tmp_path / "processed",
        csv_error_path=tmp_path / "error",
        _env_file=None,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def records(store) -> RecordService:
    return RecordService(store)


@pytest.fixture
def monitor(settings, records) -> DropFolderMonitor:
    return DropFolderMonitor(settings, records)


def drop_incidents(settings: Settings, name: str = "incidents_2024.csv") -> Path:
    return write_csv(
        settings.drop_dir("incident") / name,
        INCIDENT_HEADER,
        [["alice", "1704067200", "1704074400", "", "7"]],   # 00:00 - 02:00
    )


def drop_alerts(settings: Settings, name: str = "alert_2024.csv", when: str = "1704070800") -> Path:
    return write_csv(
        settings.drop_dir("alert") / name,
        ALERT_HEADER,
        [["alice", when, '{"site": "hq"}', "5", "Impossible travel", "false"]],
    )


# ---------------------------------------------------------------------------
# One cycle
# ---------------------------------------------------------------------------

class TestProcessAllFiles:
    @pytest.mark.asyncio
    async def test_incidents_before_alerts(self, monitor, settings, store):
        drop_alerts(settings)
        drop_incidents(settings)

        reports = await monitor.process_all_files()

        assert [r.kind for r in reports] == [RowKind.INCIDENT, RowKind.ALERT]
        [alert] = await store.find_alerts_by_user("alice")
        [incident] = await store.find_incidents_by_user("alice")
        assert alert.incident_id == incident.id

    @pytest.mark.asyncio
    async def test_files_moved_to_processed(self, monitor, settings, tmp_path):
        drop_incidents(settings)
        drop_alerts(settings)

        reports = await monitor.process_all_files()

        assert reports[0].destination == tmp_path / "processed" / "incidents" / "incidents_2024.csv"
        assert reports[1].destination == tmp_path / "processed" / "alerts" / "alert_2024.csv"
        assert list(settings.drop_dir("alert").iterdir()) == []

    @pytest.mark.asyncio
    async def test_counts(self, monitor, settings):
        drop_incidents(settings)
        report = (await monitor.process_all_files())[0]
        assert (report.parsed, report.processed, report.duplicates, report.errors) == (1, 1, 0, 0)

    @pytest.mark.asyncio
    async def test_duplicates_counted_and_file_still_processed(self, monitor, settings):
        drop_alerts(settings, "alert_a.csv")
        drop_alerts(settings, "alerts_b.csv")

        first, second = await monitor.process_all_files()

        assert first.processed == 1
        assert second.duplicates == 1
        assert second.processed == 0
        assert second.moved_to_error is False

    @pytest.mark.asyncio
    async def test_unrecognised_alert_files_left_alone(self, monitor, settings):
        stray = drop_alerts(settings, "export.csv")
        notes = settings.drop_dir("alert") / "alert_notes.txt"
        notes.write_text("not csv")

        reports = await monitor.process_all_files()

        assert reports == []
        assert stray.exists()
        assert notes.exists()

    @pytest.mark.asyncio
    async def test_missing_drop_directories_are_not_an_error(self, monitor):
        assert await monitor.process_all_files() == []

    @pytest.mark.asyncio
    async def test_empty_file_goes_to_processed(self, monitor, settings):
        write_csv(settings.drop_dir("incident") / "empty.csv", INCIDENT_HEADER, [])
        [report] = await monitor.process_all_files()
        assert report.parsed == 0
        assert report.moved_to_error is False
        assert report.destination is not None


class TestFailures:
    @pytest.mark.asyncio
    async def test_all_records_failing_moves_to_error(self, monitor, settings, records, monkeypatch, tmp_path):
        drop_alerts(settings)

        async def broken(record):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(records, "create_alert", broken)

        [report] = await monitor.process_all_files()

        assert report.errors == 1
        assert report.moved_to_error is True
        assert report.destination == tmp_path / "error" / "alert_2024.csv"

    @pytest.mark.asyncio
    async def test_unreadable_file_stays_in_drop_folder(self, monitor, settings):
        path = settings.drop_dir("incident") / "broken.csv"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"user,windows_start,windows_end\n\xff\xfe,1,2\n")

        [report] = await monitor.process_all_files()

        assert report.failure is not None
        assert report.destination is None
        assert path.exists()

    @pytest.mark.asyncio
    async def test_move_failure_keeps_records(self, monitor, settings, store, monkeypatch):
        drop_incidents(settings)

        def cannot_move(source, kind):
            raise PermissionError("read-only volume")

        monkeypatch.setattr(monitor._files, "mark_processed", cannot_move)

        [report] = await monitor.process_all_files()

        assert report.failure == "move failed: read-only volume"
        assert len(await store.find_incidents_by_user("alice")) == 1


class TestDetections:
    @pytest.mark.asyncio
    async def test_detections_file_processed_last(self, monitor, settings):
        drop_incidents(settings)
        drop_alerts(settings, "incidents_detections_output.csv")
        drop_alerts(settings, "alert_z.csv", when="1704072600")

        reports = await monitor.process_all_files()

        assert [r.file_name for r in reports] == [
            "incidents_2024.csv",
            "alert_z.csv",
            "incidents_detections_output.csv",
        ]

    @pytest.mark.asyncio
    async def test_existing_alerts_counted_as_updated(self, monitor, settings, store):
        drop_incidents(settings)
        drop_alerts(settings, "alert_1.csv")
        drop_alerts(settings, "incidents_detections_output.csv")

        reports = await monitor.process_all_files()

        detections = reports[-1]
        assert detections.updated == 1
        assert detections.processed == 0
        assert detections.duplicates == 0
        assert len(await store.find_alerts_by_user("alice")) == 1

    @pytest.mark.asyncio
    async def test_new_detections_created(self, monitor, settings, store):
        drop_incidents(settings)
        drop_alerts(settings, "incidents_detections_output.csv")

        detections = (await monitor.process_all_files())[-1]

        assert detections.processed == 1
        [alert] = await store.find_alerts_by_user("alice")
        assert alert.is_under_incident is True


# ---------------------------------------------------------------------------
# Periodic monitoring
# ---------------------------------------------------------------------------

class TestMonitoringLoop:
    @pytest.mark.asyncio
    async def test_start_processes_and_stop_cancels(self, monitor, settings, store):
        drop_incidents(settings)

        monitor.start(interval=0.01)
        assert monitor.running is True
        for _ in range(100):
            if await store.find_incidents_by_user("alice"):
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        assert monitor.running is False
        assert len(await store.find_incidents_by_user("alice")) == 1

    @pytest.mark.asyncio
    async def test_start_creates_storage_directories(self, monitor, settings):
        monitor.start(interval=60)
        await monitor.stop()
        assert all(d.is_dir() for d in settings.storage_directories())

    @pytest.mark.asyncio
    async def test_failing_cycle_does_not_stop_the_loop(self, monitor, monkeypatch):
        calls = []

        async def flaky():
            calls.append(1)
            raise RuntimeError("boom")

        monkeypatch.setattr(monitor, "process_all_files", flaky)

        monitor.start(interval=0.01)
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start_is_a_no_op(self, monitor):
        await monitor.stop()
        assert monitor.running is False
