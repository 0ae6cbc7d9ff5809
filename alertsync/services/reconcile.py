"""
Incident/alert reconciliation.

Keeps the association fields of every alert (is_under_incident, incident_id)
in line with the incidents of the same user: an alert belongs to the incident
whose inclusive [window_start, window_end] contains its occurred_at.

When several incidents of one user overlap an alert, the winner is the one
with the earliest window_start, then the earliest window_end, then the
smallest id. Every pass re-matches an alert against all of the user's
incidents, so the outcome does not depend on store iteration order or on
which mutation triggered the pass.

Reconciliation for one user runs under a per-user asyncio.Lock. Alerts are
still written one at a time; a failure on one alert is logged and recorded
in the summary and the remaining alerts are reconciled.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Iterable, Optional

from alertsync.errors import RecordNotFoundError
from alertsync.models.alert import AlertRecord
from alertsync.models.incident import IncidentRecord
from alertsync.models.ingest_io import ReconcileSummary
from alertsync.normalizers.timestamps import ensure_utc
from alertsync.storage.memory import RecordStore

logger = logging.getLogger(__name__)


def window_contains(incident: IncidentRecord, instant: datetime) -> bool:
    """True when *instant* lies in the incident window, both bounds included."""
    return incident.window_start <= ensure_utc(instant) <= incident.window_end


def select_incident(
    incidents: Iterable[IncidentRecord], instant: datetime
) -> Optional[IncidentRecord]:
    """Pick the incident an alert at *instant* belongs to, or None."""
    candidates = [i for i in incidents if window_contains(i, instant)]
    if not candidates:
        return None
    return min(candidates, key=lambda i: (i.window_start, i.window_end, i.id))


class _UserLock:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.refs = 0


class IncidentAlertReconciler:
    def __init__(self, store: RecordStore):
        self._store = store
        self._locks: dict[str, _UserLock] = {}

    @asynccontextmanager
    async def locked(self, user: str) -> AsyncIterator[None]:
        """Hold the reconciliation lock of *user*.

        Whole-record alert writes must hold it. The entry is dropped once
        nobody holds or waits for it.
        """
        entry = self._locks.get(user)
        if entry is None:
            entry = self._locks[user] = _UserLock()
        entry.refs += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.refs -= 1
            if entry.refs == 0:
                del self._locks[user]

    # ------------------------------------------------------------------
    # Single alert
    # ------------------------------------------------------------------

    async def _rematch(
        self, alert: AlertRecord, incidents: list[IncidentRecord]
    ) -> tuple[AlertRecord, bool]:
        """Write the association the alert should have. Returns (alert, changed)."""
        match = select_incident(incidents, alert.occurred_at)
        target_id = match.id if match else None
        target_flag = match is not None

        if alert.is_under_incident == target_flag and alert.incident_id == target_id:
            return alert, False

        updated = await self._store.update_alert_association(
            alert.id, is_under_incident=target_flag, incident_id=target_id
        )
        if match:
            logger.info(
                "reconciler.alert_associated",
                extra={"alert_id": alert.id, "user": alert.user, "incident_id": target_id},
            )
        else:
            logger.info(
                "reconciler.alert_cleared",
                extra={"alert_id": alert.id, "user": alert.user, "previous_incident_id": alert.incident_id},
            )
        return updated, True

    async def reconcile_alert(self, alert_id: str) -> AlertRecord:
        """Recompute the association of one alert after it was created or moved in time.

        Raises:
            RecordNotFoundError: If no alert with *alert_id* exists.
        """
        alert = await self._store.get_alert(alert_id)
        if alert is None:
            raise RecordNotFoundError("alert", alert_id)

        async with self.locked(alert.user):
            # Re-read under the lock; another pass may have written it meanwhile.
            alert = await self._store.get_alert(alert_id)
            if alert is None:
                raise RecordNotFoundError("alert", alert_id)
            incidents = await self._store.find_incidents_by_user(alert.user)
            updated, _ = await self._rematch(alert, incidents)
        return updated

    # ------------------------------------------------------------------
    # Incident side
    # ------------------------------------------------------------------

    async def _reconcile_user(
        self,
        user: str,
        incident_id: str,
        affected: Callable[[AlertRecord], bool],
    ) -> ReconcileSummary:
        summary = ReconcileSummary(user=user, incident_id=incident_id)

        async with self.locked(user):
            alerts = await self._store.find_alerts_by_user(user)
            incidents = await self._store.find_incidents_by_user(user)

            for alert in alerts:
                if not affected(alert):
                    continue
                try:
                    updated, changed = await self._rematch(alert, incidents)
                except Exception as e:
                    logger.error(
                        "reconciler.alert_failed",
                        extra={"alert_id": alert.id, "user": user, "error": str(e)},
                    )
                    summary.errors.append(f"{alert.id}: {e}")
                    continue

                if not changed:
                    summary.unchanged += 1
                elif updated.is_under_incident:
                    summary.associated.append(updated.id)
                else:
                    summary.cleared.append(updated.id)

        logger.info(
            "reconciler.user_reconciled",
            extra={
                "user": user,
                "incident_id": incident_id,
                "associated": len(summary.associated),
                "cleared": len(summary.cleared),
                "unchanged": summary.unchanged,
                "errors": len(summary.errors),
            },
        )
        return summary

    async def reconcile_incident(self, incident: IncidentRecord) -> ReconcileSummary:
        """Re-match every alert inside *incident*'s window or currently linked to it."""
        return await self._reconcile_user(
            incident.user,
            incident.id,
            lambda alert: incident.contains(alert.occurred_at) or alert.incident_id == incident.id,
        )

    async def release_incident(self, user: str, incident_id: str) -> ReconcileSummary:
        """Re-match alerts still linked to an incident id that no longer exists."""
        return await self._reconcile_user(
            user,
            incident_id,
            lambda alert: alert.incident_id == incident_id,
        )
