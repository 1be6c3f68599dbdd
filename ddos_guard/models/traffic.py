"""
Traffic models — per-sample feature vectors and detector predictions.

TrafficFeatures is the canonical detector input. PredictionResult is what
every detector variant returns and what the ensemble selects between; it
lives only for the duration of one evaluation and is never persisted.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def escalate(self) -> Severity:
        """Return the next severity up, capped at CRITICAL."""
        return _SEVERITY_ORDER[min(self.rank + 1, len(_SEVERITY_ORDER) - 1)]


_SEVERITY_ORDER = (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)
_SEVERITY_RANK = {severity: i for i, severity in enumerate(_SEVERITY_ORDER)}


class TrafficFeatures(BaseModel):
    packet_rate: float = Field(ge=0.0)                 # events/sec
    packet_size: float = Field(gt=0.0)                 # bytes
    protocol: str                                      # upper-cased token, e.g. "UDP"
    source_diversity: float = Field(ge=0.0, le=1.0)
    request_pattern: Optional[list[Literal[0, 1]]] = None
    timing_intervals: Optional[list[float]] = None

    @field_validator("protocol")
    @classmethod
    def _normalize_protocol(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("protocol must be a non-empty token")
        return value

    @field_validator("timing_intervals")
    @classmethod
    def _non_negative_intervals(cls, value: Optional[list[float]]) -> Optional[list[float]]:
        if value is not None and any(interval < 0 for interval in value):
            raise ValueError("timing intervals must be non-negative")
        return value


class PredictionResult(BaseModel):
    """Output of a single detector variant (or the ensemble's selection)."""

    anomaly_score: float = Field(ge=0.0, le=1.0)
    attack_type: Optional[str] = None
    severity: Severity
    confidence: float = Field(ge=0.0, le=1.0)   # by convention equal to anomaly_score
    is_anomaly: bool
    processing_time_ms: float = 0.0
    detector: Optional[str] = None              # name of the variant that produced this


class TrafficSample(BaseModel):
    """A feature vector plus the observation context needed for alerting."""

    features: TrafficFeatures
    source_ips: list[str] = Field(default_factory=list)
    target_systems: list[str] = Field(default_factory=lambda: ["network-edge"], min_length=1)
    source: str = "network-monitor"
