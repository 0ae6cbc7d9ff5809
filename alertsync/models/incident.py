"""
Incident models: one user's suspicious activity over a time window.

An incident's identity is derived from (user, window_start, window_end), so
moving the window creates a new incident rather than editing the old one.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, model_validator

from alertsync.normalizers.timestamps import ensure_utc, to_iso_millis


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def incident_identity(user: str, window_start: datetime, window_end: datetime) -> str:
    """Deterministic identity hash over the incident's unique key."""
    key = f"{user}|{to_iso_millis(window_start)}|{to_iso_millis(window_end)}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class IncidentRecord(BaseModel):
    user: str = Field(min_length=1)
    window_start: datetime
    window_end: datetime
    score: Decimal = Decimal("0")
    windows: list[datetime] = Field(default_factory=list)  # sampled instants, in source order
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    id: str = ""

    @field_validator("window_start", "window_end", "created_at", "updated_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("windows")
    @classmethod
    def _windows_to_utc(cls, value: list[datetime]) -> list[datetime]:
        return [ensure_utc(v) for v in value]

    @field_validator("score")
    @classmethod
    def _two_places(cls, value: Decimal) -> Decimal:
        return value.quantize(Decimal("0.01"))

    @model_validator(mode="after")
    def _check_window_and_derive_identity(self) -> IncidentRecord:
        if self.window_start > self.window_end:
            raise ValueError(
                f"window_start ({self.window_start.isoformat()}) is after "
                f"window_end ({self.window_end.isoformat()})"
            )
        self.id = incident_identity(self.user, self.window_start, self.window_end)
        return self

    def contains(self, instant: datetime) -> bool:
        """Inclusive containment: both window bounds belong to the incident."""
        return self.window_start <= ensure_utc(instant) <= self.window_end

    @property
    def identity_key(self) -> tuple[str, datetime, datetime]:
        return (self.user, self.window_start, self.window_end)
