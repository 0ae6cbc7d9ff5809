"""Tests for alertsync/services/records.py: RecordService."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from alertsync.errors import ConflictError, RecordNotFoundError
from alertsync.models.alert import AlertRecord
from alertsync.models.incident import IncidentRecord
from alertsync.services.records import RecordService
from alertsync.storage.memory import InMemoryStore


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 1, 1, hour, minute, tzinfo=timezone.utc)


def make_alert(when: datetime | None = None, name: str = "Impossible travel", user: str = "alice") -> AlertRecord:
    return AlertRecord(user=user, occurred_at=when or at(1), alert_name=name)


def make_incident(start: datetime | None = None, end: datetime | None = None, user: str = "alice") -> IncidentRecord:
    return IncidentRecord(user=user, window_start=start or at(0), window_end=end or at(2))


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def service(store) -> RecordService:
    return RecordService(store)


class YieldingStore(InMemoryStore):
    """Hands control back to the event loop on every alert read."""

    async def get_alert(self, alert_id):
        await asyncio.sleep(0)
        return await super().get_alert(alert_id)


class TestCreate:
    @pytest.mark.asyncio
    async def test_alert_after_incident_associates(self, service):
        incident = await service.create_incident(make_incident())
        alert = await service.create_alert(make_alert())
        assert alert.incident_id == incident.id

    @pytest.mark.asyncio
    async def test_incident_after_alert_pulls_it_in(self, service, store):
        alert = await service.create_alert(make_alert())
        assert alert.is_under_incident is False

        incident = await service.create_incident(make_incident())

        assert (await store.get_alert(alert.id)).incident_id == incident.id

    @pytest.mark.asyncio
    async def test_duplicate_alert_is_a_conflict(self, service):
        await service.create_alert(make_alert())
        with pytest.raises(ConflictError):
            await service.create_alert(make_alert())

    @pytest.mark.asyncio
    async def test_duplicate_incident_is_a_conflict(self, service):
        await service.create_incident(make_incident())
        with pytest.raises(ConflictError):
            await service.create_incident(make_incident())


class TestUpdateAlert:
    @pytest.mark.asyncio
    async def test_in_place_update_keeps_identity(self, service):
        alert = await service.create_alert(make_alert())
        updated = await service.update_alert(alert.id, {"description": "triaged", "score": "4.2"})
        assert updated.id == alert.id
        assert updated.description == "triaged"
        assert str(updated.score) == "4.20"
        assert updated.updated_at >= alert.updated_at
        assert updated.created_at == alert.created_at

    @pytest.mark.asyncio
    async def test_association_fields_ignored(self, service):
        alert = await service.create_alert(make_alert())
        updated = await service.update_alert(alert.id, {"is_under_incident": True, "incident_id": "forged"})
        assert updated.is_under_incident is False
        assert updated.incident_id is None

    @pytest.mark.asyncio
    async def test_evidence_normalized(self, service):
        alert = await service.create_alert(make_alert())
        updated = await service.update_alert(alert.id, {"evidence": '{""site"":""hq""}'})
        assert updated.evidence.site == "hq"

    @pytest.mark.asyncio
    async def test_moving_in_time_recreates_and_reconciles(self, service, store):
        incident = await service.create_incident(make_incident(start=at(4), end=at(6)))
        alert = await service.create_alert(make_alert(when=at(1)))

        moved = await service.update_alert(alert.id, {"occurred_at": at(5)})

        assert moved.id != alert.id
        assert await store.get_alert(alert.id) is None
        assert moved.incident_id == incident.id

    @pytest.mark.asyncio
    async def test_moving_out_of_window_clears(self, service):
        await service.create_incident(make_incident())
        alert = await service.create_alert(make_alert(when=at(1)))
        moved = await service.update_alert(alert.id, {"occurred_at": at(9)})
        assert moved.is_under_incident is False

    @pytest.mark.asyncio
    async def test_rekey_onto_existing_identity_conflicts(self, service, store):
        first = await service.create_alert(make_alert(name="a"))
        await service.create_alert(make_alert(name="b"))

        with pytest.raises(ConflictError):
            await service.update_alert(first.id, {"alert_name": "b"})
        assert await store.get_alert(first.id) is not None

    @pytest.mark.asyncio
    async def test_missing_alert_raises(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.update_alert("missing", {"description": "x"})


class TestUpdateIncident:
    @pytest.mark.asyncio
    async def test_score_change_is_in_place(self, service):
        incident = await service.create_incident(make_incident())
        updated = await service.update_incident(incident.id, {"score": 9})
        assert updated.id == incident.id
        assert str(updated.score) == "9.00"

    @pytest.mark.asyncio
    async def test_shrinking_window_releases_alerts(self, service, store):
        incident = await service.create_incident(make_incident(start=at(0), end=at(4)))
        inside = await service.create_alert(make_alert(when=at(1), name="inside"))
        dropped = await service.create_alert(make_alert(when=at(3), name="dropped"))

        moved = await service.update_incident(incident.id, {"window_end": at(2)})

        assert moved.id != incident.id
        assert await store.get_incident(incident.id) is None
        assert (await store.get_alert(inside.id)).incident_id == moved.id
        assert (await store.get_alert(dropped.id)).is_under_incident is False

    @pytest.mark.asyncio
    async def test_growing_window_pulls_alerts_in(self, service, store):
        incident = await service.create_incident(make_incident(start=at(0), end=at(1)))
        alert = await service.create_alert(make_alert(when=at(3)))

        moved = await service.update_incident(incident.id, {"window_end": at(4)})

        assert (await store.get_alert(alert.id)).incident_id == moved.id

    @pytest.mark.asyncio
    async def test_invalid_window_rejected(self, service):
        incident = await service.create_incident(make_incident())
        with pytest.raises(ValueError):
            await service.update_incident(incident.id, {"window_start": at(5)})

    @pytest.mark.asyncio
    async def test_rekey_onto_existing_identity_conflicts(self, service):
        incident = await service.create_incident(make_incident(start=at(0), end=at(2)))
        await service.create_incident(make_incident(start=at(0), end=at(3)))
        with pytest.raises(ConflictError):
            await service.update_incident(incident.id, {"window_end": at(3)})

    @pytest.mark.asyncio
    async def test_missing_incident_raises(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.update_incident("missing", {"score": 1})


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_incident_clears_alerts(self, service, store):
        incident = await service.create_incident(make_incident())
        alert = await service.create_alert(make_alert())

        await service.delete_incident(incident.id)

        assert (await store.get_alert(alert.id)).is_under_incident is False

    @pytest.mark.asyncio
    async def test_delete_alert(self, service, store):
        alert = await service.create_alert(make_alert())
        await service.delete_alert(alert.id)
        assert await store.get_alert(alert.id) is None

    @pytest.mark.asyncio
    async def test_delete_missing_raises(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.delete_alert("missing")
        with pytest.raises(RecordNotFoundError):
            await service.delete_incident("missing")


class TestRecordDetection:
    @pytest.mark.asyncio
    async def test_new_detection_created(self, service):
        incident = await service.create_incident(make_incident())
        stored, created = await service.record_detection(make_alert())
        assert created is True
        assert stored.incident_id == incident.id

    @pytest.mark.asyncio
    async def test_existing_detection_only_reconciled(self, service, store):
        alert = await service.create_alert(make_alert())
        incident = await store.insert_incident(make_incident())

        stored, created = await service.record_detection(make_alert())

        assert created is False
        assert stored.id == alert.id
        assert stored.incident_id == incident.id

    @pytest.mark.asyncio
    async def test_detection_without_incident_logged(self, service, caplog):
        stored, _ = await service.record_detection(make_alert())
        assert stored.is_under_incident is False
        assert any(r.getMessage() == "records.detection_without_incident" for r in caplog.records)


class TestConcurrentWrites:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("changes", [{"description": "edited"}, {"alert_name": "renamed"}])
    async def test_edit_racing_incident_creation_keeps_association(self, changes):
        store = YieldingStore()
        service = RecordService(store)
        alert = await service.create_alert(make_alert(when=at(1)))

        updated, incident = await asyncio.gather(
            service.update_alert(alert.id, changes),
            service.create_incident(make_incident()),
        )

        final = await store.get_alert(updated.id)
        assert final.is_under_incident is True
        assert final.incident_id == incident.id

    @pytest.mark.asyncio
    async def test_incident_created_while_edit_holds_lock(self):
        store = YieldingStore()
        service = RecordService(store)
        alert = await service.create_alert(make_alert(when=at(1)))

        async def create_incident_later():
            await asyncio.sleep(0)
            return await service.create_incident(make_incident())

        _, incident = await asyncio.gather(
            service.update_alert(alert.id, {"description": "edited"}),
            create_incident_later(),
        )

        final = await store.get_alert(alert.id)
        assert final.incident_id == incident.id
        assert final.description == "edited"
