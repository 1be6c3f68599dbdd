"""
Alert models — detection-driven alert records and their lifecycle states.

Alerts are frozen. Every state change goes through the transition
functions in ddos_guard.lifecycle.alerts, which return a new Alert instead of
mutating the old one. Alerts are never deleted, only resolved.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ddos_guard.models.traffic import Severity


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class Alert(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str
    severity: Severity
    status: AlertStatus = AlertStatus.ACTIVE
    source: str
    affected_systems: frozenset[str]
    response_actions: tuple[str, ...] = ()
    assigned_to: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)   # attack type, source IPs, scores

    @field_validator("affected_systems")
    @classmethod
    def _non_empty_systems(cls, value: frozenset[str]) -> frozenset[str]:
        if not value:
            raise ValueError("an alert must name at least one affected system")
        return value

    @property
    def dedup_key(self) -> tuple[str, frozenset[str]]:
        return (self.source, self.affected_systems)


class AlertStats(BaseModel):
    total: int = 0
    active: int = 0
    acknowledged: int = 0
    resolved: int = 0
    by_severity: dict[Severity, int] = Field(default_factory=dict)
