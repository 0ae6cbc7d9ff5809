"""
Alert models: the normalized representation of one alert row.

AlertRecord is the canonical internal format. The ingest pipeline builds it
from CSV rows; the record service stores it and the reconciler owns its two
association fields (is_under_incident, incident_id).
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from alertsync.normalizers.timestamps import ensure_utc, to_iso_millis


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def alert_identity(user: str, occurred_at: datetime, alert_name: str) -> str:
    """Deterministic identity hash over the alert's unique key."""
    key = f"{user}|{to_iso_millis(occurred_at)}|{alert_name}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class Evidence(BaseModel):
    """Supporting raw data for an alert. Provider-specific keys are kept verbatim."""

    model_config = ConfigDict(extra="allow")

    site: str = ""
    count: int = Field(default=0, ge=0)
    list_raw_events: list[Any] = Field(default_factory=list)


class AlertRecord(BaseModel):
    user: str = Field(min_length=1)
    occurred_at: datetime
    evidence: Evidence = Field(default_factory=Evidence)
    score: Decimal = Decimal("0")
    alert_name: str = ""
    mitre_tactic: str = ""
    mitre_technique: str = ""
    logs: str = ""
    detection_model: str = ""
    description: str = ""

    # Association fields, written by the reconciler only
    is_under_incident: bool = False
    incident_id: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    # Derived from (user, occurred_at, alert_name) when the record is built
    id: str = ""

    @field_validator("occurred_at", "created_at", "updated_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("score")
    @classmethod
    def _two_places(cls, value: Decimal) -> Decimal:
        return value.quantize(Decimal("0.01"))

    @model_validator(mode="after")
    def _derive_identity(self) -> AlertRecord:
        self.id = alert_identity(self.user, self.occurred_at, self.alert_name)
        return self

    @property
    def identity_key(self) -> tuple[str, datetime, str]:
        return (self.user, self.occurred_at, self.alert_name)
