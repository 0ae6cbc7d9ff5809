"""
Record store: the persistence primitives the core depends on.

RecordStore is the seam to a real database. InMemoryStore is the reference
implementation used by the drop-folder monitor, the operations API and the
tests. It enforces the same guarantees a database would: identity
uniqueness (ConflictError) and the canonical evidence shape. Records are
copied on the way in and out, so callers never share state with the store.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional, Protocol

from alertsync.errors import ConflictError, RecordNotFoundError
from alertsync.models.alert import AlertRecord
from alertsync.models.incident import IncidentRecord

_EVIDENCE_KEYS = ("site", "count", "list_raw_events")


class RecordStore(Protocol):
    async def find_incidents_by_user(self, user: str) -> list[IncidentRecord]: ...

    async def find_alerts_by_user(self, user: str) -> list[AlertRecord]: ...

    async def get_alert(self, alert_id: str) -> Optional[AlertRecord]: ...

    async def get_incident(self, incident_id: str) -> Optional[IncidentRecord]: ...

    async def update_alert_association(
        self, alert_id: str, *, is_under_incident: bool, incident_id: Optional[str]
    ) -> AlertRecord: ...

    async def insert_alert(self, alert: AlertRecord) -> AlertRecord: ...

    async def insert_incident(self, incident: IncidentRecord) -> IncidentRecord: ...

    async def replace_alert(self, alert: AlertRecord) -> AlertRecord: ...

    async def replace_incident(self, incident: IncidentRecord) -> IncidentRecord: ...

    async def delete_alert(self, alert_id: str) -> bool: ...

    async def delete_incident(self, incident_id: str) -> bool: ...


def _check_evidence(alert: AlertRecord) -> None:
    evidence = alert.evidence.model_dump()
    missing = [key for key in _EVIDENCE_KEYS if key not in evidence]
    if missing:
        raise ValueError(f"Alert {alert.id}: evidence is missing required keys: {', '.join(missing)}")
    if not isinstance(evidence["list_raw_events"], list):
        raise ValueError(f"Alert {alert.id}: evidence.list_raw_events must be an array")


class InMemoryStore:
    def __init__(self) -> None:
        self._alerts: dict[str, AlertRecord] = {}
        self._incidents: dict[str, IncidentRecord] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Reconciler primitives
    # ------------------------------------------------------------------

    async def find_incidents_by_user(self, user: str) -> list[IncidentRecord]:
        with self._lock:
            return [i.model_copy(deep=True) for i in self._incidents.values() if i.user == user]

    async def find_alerts_by_user(self, user: str) -> list[AlertRecord]:
        with self._lock:
            return [a.model_copy(deep=True) for a in self._alerts.values() if a.user == user]

    async def get_alert(self, alert_id: str) -> Optional[AlertRecord]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return alert.model_copy(deep=True) if alert else None

    async def get_incident(self, incident_id: str) -> Optional[IncidentRecord]:
        with self._lock:
            incident = self._incidents.get(incident_id)
            return incident.model_copy(deep=True) if incident else None

    async def update_alert_association(
        self, alert_id: str, *, is_under_incident: bool, incident_id: Optional[str]
    ) -> AlertRecord:
        with self._lock:
            current = self._alerts.get(alert_id)
            if current is None:
                raise RecordNotFoundError("alert", alert_id)
            updated = current.model_copy(
                update={
                    "is_under_incident": is_under_incident,
                    "incident_id": incident_id,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._alerts[alert_id] = updated
            return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Record service primitives
    # ------------------------------------------------------------------

    async def insert_alert(self, alert: AlertRecord) -> AlertRecord:
        _check_evidence(alert)
        with self._lock:
            if alert.id in self._alerts:
                raise ConflictError("alert", alert.id)
            self._alerts[alert.id] = alert.model_copy(deep=True)
        return alert.model_copy(deep=True)

    async def insert_incident(self, incident: IncidentRecord) -> IncidentRecord:
        with self._lock:
            if incident.id in self._incidents:
                raise ConflictError("incident", incident.id)
            self._incidents[incident.id] = incident.model_copy(deep=True)
        return incident.model_copy(deep=True)

    async def replace_alert(self, alert: AlertRecord) -> AlertRecord:
        _check_evidence(alert)
        with self._lock:
            if alert.id not in self._alerts:
                raise RecordNotFoundError("alert", alert.id)
            self._alerts[alert.id] = alert.model_copy(deep=True)
        return alert.model_copy(deep=True)

    async def replace_incident(self, incident: IncidentRecord) -> IncidentRecord:
        with self._lock:
            if incident.id not in self._incidents:
                raise RecordNotFoundError("incident", incident.id)
            self._incidents[incident.id] = incident.model_copy(deep=True)
        return incident.model_copy(deep=True)

    async def delete_alert(self, alert_id: str) -> bool:
        with self._lock:
            return self._alerts.pop(alert_id, None) is not None

    async def delete_incident(self, incident_id: str) -> bool:
        with self._lock:
            return self._incidents.pop(incident_id, None) is not None

    # Convenience for tests and the API; not part of RecordStore
    def counts(self) -> dict[str, int]:
        with self._lock:
            return {"alerts": len(self._alerts), "incidents": len(self._incidents)}
