"""
Record service: the one place that writes alerts and incidents.

Owns the store and the reconciler so that neither entity needs to know about
the other. Every mutation that touches a time-relevant field is followed by
the matching reconciliation pass.

Identity is derived from the record's key fields. A change to any of them is
treated as a new record: the new identity is checked for conflicts, the old
record is deleted and the new one inserted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from alertsync.errors import ConflictError, RecordNotFoundError
from alertsync.models.alert import AlertRecord
from alertsync.models.incident import IncidentRecord
from alertsync.normalizers.evidence import normalize_evidence
from alertsync.services.reconcile import IncidentAlertReconciler
from alertsync.storage.memory import RecordStore

logger = logging.getLogger(__name__)

# Written by the store or the reconciler, never by callers
_PROTECTED_FIELDS = {"id", "is_under_incident", "incident_id", "created_at", "updated_at"}


def _clean_changes(changes: dict[str, Any]) -> dict[str, Any]:
    ignored = sorted(set(changes) & _PROTECTED_FIELDS)
    if ignored:
        logger.debug("records.protected_fields_ignored", extra={"fields": ignored})
    return {k: v for k, v in changes.items() if k not in _PROTECTED_FIELDS}


class RecordService:
    def __init__(self, store: RecordStore, reconciler: IncidentAlertReconciler | None = None):
        self.store = store
        self.reconciler = reconciler or IncidentAlertReconciler(store)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def create_alert(self, record: AlertRecord) -> AlertRecord:
        """Insert an alert and attach it to its incident.

        Raises:
            ConflictError: If an alert with the same (user, occurred_at, alert_name) exists.
        """
        stored = await self.store.insert_alert(record)
        logger.info("records.alert_created", extra={"alert_id": stored.id, "user": stored.user})
        return await self.reconciler.reconcile_alert(stored.id)

    async def update_alert(self, alert_id: str, changes: dict[str, Any]) -> AlertRecord:
        """Apply *changes* to an alert. Association fields in *changes* are ignored.

        Raises:
            RecordNotFoundError: If the alert does not exist.
            ConflictError: If the change moves the alert onto an existing identity.
        """
        current = await self.store.get_alert(alert_id)
        if current is None:
            raise RecordNotFoundError("alert", alert_id)

        changes = _clean_changes(changes)
        if "evidence" in changes:
            changes["evidence"] = normalize_evidence(changes["evidence"])

        async with self.reconciler.locked(current.user):
            # Re-read under the lock; the association fields are copied into the replacement
            current = await self.store.get_alert(alert_id)
            if current is None:
                raise RecordNotFoundError("alert", alert_id)

            data = current.model_dump()
            data.update(changes)
            data["updated_at"] = datetime.now(timezone.utc)
            candidate = AlertRecord.model_validate(data)

            if candidate.id == current.id:
                # user and occurred_at are identity fields, so an in-place change never moves the alert
                return await self.store.replace_alert(candidate)

            if await self.store.get_alert(candidate.id) is not None:
                raise ConflictError("alert", candidate.id)
            await self.store.delete_alert(current.id)
            await self.store.insert_alert(candidate)

        logger.info(
            "records.alert_rekeyed",
            extra={"old_alert_id": current.id, "alert_id": candidate.id},
        )
        # Outside the lock: the new identity may belong to another user
        return await self.reconciler.reconcile_alert(candidate.id)

    async def delete_alert(self, alert_id: str) -> None:
        if not await self.store.delete_alert(alert_id):
            raise RecordNotFoundError("alert", alert_id)
        logger.info("records.alert_deleted", extra={"alert_id": alert_id})

    async def record_detection(self, record: AlertRecord) -> tuple[AlertRecord, bool]:
        """Register an alert from the incident detections export.

        An alert that already exists is only re-reconciled. Returns the stored
        alert and whether it was created.
        """
        existing = await self.store.get_alert(record.id)
        if existing is not None:
            stored = await self.reconciler.reconcile_alert(existing.id)
            created = False
        else:
            stored = await self.create_alert(record)
            created = True

        if not stored.is_under_incident:
            logger.warning(
                "records.detection_without_incident",
                extra={"alert_id": stored.id, "user": stored.user},
            )
        return stored, created

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    async def create_incident(self, record: IncidentRecord) -> IncidentRecord:
        """Insert an incident and pull in the alerts its window contains.

        Raises:
            ConflictError: If an incident with the same (user, window_start, window_end) exists.
        """
        stored = await self.store.insert_incident(record)
        logger.info("records.incident_created", extra={"incident_id": stored.id, "user": stored.user})
        await self.reconciler.reconcile_incident(stored)
        return stored

    async def update_incident(self, incident_id: str, changes: dict[str, Any]) -> IncidentRecord:
        """Apply *changes* to an incident and reconcile when its window moved.

        Raises:
            RecordNotFoundError: If the incident does not exist.
            ConflictError: If the change moves the incident onto an existing identity.
        """
        current = await self.store.get_incident(incident_id)
        if current is None:
            raise RecordNotFoundError("incident", incident_id)

        data = current.model_dump()
        data.update(_clean_changes(changes))
        data["updated_at"] = datetime.now(timezone.utc)
        candidate = IncidentRecord.model_validate(data)

        if candidate.id != current.id:
            if await self.store.get_incident(candidate.id) is not None:
                raise ConflictError("incident", candidate.id)
            await self.store.delete_incident(current.id)
            stored = await self.store.insert_incident(candidate)
            logger.info(
                "records.incident_rekeyed",
                extra={"old_incident_id": current.id, "incident_id": stored.id},
            )
            await self.reconciler.reconcile_incident(stored)
            await self.reconciler.release_incident(current.user, current.id)
            return stored

        # Score or sampled windows only; the window bounds are identity fields
        return await self.store.replace_incident(candidate)

    async def delete_incident(self, incident_id: str) -> None:
        current = await self.store.get_incident(incident_id)
        if current is None or not await self.store.delete_incident(incident_id):
            raise RecordNotFoundError("incident", incident_id)
        logger.info("records.incident_deleted", extra={"incident_id": incident_id})
        await self.reconciler.release_incident(current.user, incident_id)
