"""
Threat intelligence models — IP reputation records served by the cache.

ThreatRecord instances are frozen: the cache replaces its whole snapshot on
every successful refresh and lookups hand out references to these records,
so nothing downstream may mutate them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

AUTO_BLOCK_THRESHOLD = 80
HIGH_RISK_THRESHOLD = 90


class ReputationBand(str, Enum):
    MINIMAL = "minimal"     # 0–59
    LOW = "low"             # 60–69
    MEDIUM = "medium"       # 70–79
    HIGH = "high"           # 80–89, auto-block eligible
    CRITICAL = "critical"   # 90–100, high-risk


# (lower bound inclusive, band), checked top-down
_BAND_FLOORS: tuple[tuple[int, ReputationBand], ...] = (
    (HIGH_RISK_THRESHOLD, ReputationBand.CRITICAL),
    (AUTO_BLOCK_THRESHOLD, ReputationBand.HIGH),
    (70, ReputationBand.MEDIUM),
    (60, ReputationBand.LOW),
    (0, ReputationBand.MINIMAL),
)


def reputation_band(score: int) -> ReputationBand:
    """Map a 0–100 reputation score to its band."""
    if not 0 <= score <= 100:
        raise ValueError(f"reputation score must be within [0, 100], got {score}")
    for floor, band in _BAND_FLOORS:
        if score >= floor:
            return band
    return ReputationBand.MINIMAL


class ThreatRecord(BaseModel):
    """A single IP reputation entry from a threat intelligence feed."""

    model_config = ConfigDict(frozen=True)

    ip: str                                             # primary key
    threat_type: str                                    # e.g. "Botnet C&C", "DDoS Source"
    reputation_score: int = Field(ge=0, le=100)
    country_code: str = "XX"
    organization: str = "Unknown"
    first_seen: Optional[datetime] = None
    last_seen: datetime
    source: str                                         # feed name
    confidence_level: float = Field(ge=0.0, le=1.0)
    active: bool = True

    @field_validator("first_seen", "last_seen", mode="after")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # feeds sometimes omit the offset; timestamps without one are UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def band(self) -> ReputationBand:
        return reputation_band(self.reputation_score)

    @property
    def auto_block_eligible(self) -> bool:
        return self.reputation_score >= AUTO_BLOCK_THRESHOLD

    @property
    def high_risk(self) -> bool:
        return self.reputation_score >= HIGH_RISK_THRESHOLD


class ThreatFeedResponse(BaseModel):
    """One batch retrieved from a feed provider."""

    threats: list[ThreatRecord] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    total_count: int = 0

    @field_validator("last_updated", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class FeedAnalysis(BaseModel):
    """Aggregate view over the current snapshot."""

    total_threats: int = 0
    active_threats: int = 0
    high_risk: int = 0
    auto_block_eligible: int = 0
    band_distribution: dict[ReputationBand, int] = Field(default_factory=dict)
    threat_types: dict[str, int] = Field(default_factory=dict)
    countries: dict[str, int] = Field(default_factory=dict)
    snapshot_taken_at: Optional[datetime] = None
    stale: bool = False
