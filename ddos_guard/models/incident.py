"""
Incident models — operator-managed incidents with an append-only timeline.

Incidents are independent of alerts: they are opened explicitly and carry
their own open → investigating → resolved lifecycle. Timeline entries are
immutable once appended and ordered by non-decreasing timestamp.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ddos_guard.models.traffic import Severity


class IncidentStatus(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"


class TimelineEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    action: str
    actor: str


class Incident(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str
    severity: Severity
    status: IncidentStatus = IncidentStatus.OPEN
    affected_systems: frozenset[str] = frozenset()
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    resolved_at: Optional[datetime] = None
    timeline: tuple[TimelineEntry, ...] = ()
    source_alert_id: Optional[str] = None    # set when opened from an alert

    @field_validator("timeline")
    @classmethod
    def _ordered_timeline(cls, value: tuple[TimelineEntry, ...]) -> tuple[TimelineEntry, ...]:
        for earlier, later in zip(value, value[1:]):
            if later.timestamp < earlier.timestamp:
                raise ValueError("timeline entries must be in non-decreasing timestamp order")
        return value

    @property
    def last_entry(self) -> Optional[TimelineEntry]:
        return self.timeline[-1] if self.timeline else None


class IncidentStats(BaseModel):
    total: int = 0
    open: int = 0
    investigating: int = 0
    resolved: int = 0
