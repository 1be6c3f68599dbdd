"""Tests for ddos_guard/pipeline.py — prediction + threat intel → alert decision."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from ddos_guard.detection.ensemble import DetectorEnsemble
from ddos_guard.errors import NoDetectorAvailableError
from ddos_guard.lifecycle.alerts import AlertEngine
from ddos_guard.models.alert import AlertStatus
from ddos_guard.models.threat import ThreatFeedResponse, ThreatRecord
from ddos_guard.models.traffic import PredictionResult, Severity, TrafficFeatures, TrafficSample
from ddos_guard.pipeline import DetectionPipeline, alert_severity, response_actions
from ddos_guard.threat_intel.cache import ThreatIntelCache

NOW = datetime(2025, 1, 30, 14, 0, tzinfo=timezone.utc)

FLOOD = TrafficFeatures(packet_rate=6000.0, packet_size=80.0, protocol="UDP", source_diversity=0.95)
NORMAL = TrafficFeatures(packet_rate=50.0, packet_size=800.0, protocol="TCP", source_diversity=0.2)


def make_record(ip: str, score: int, active: bool = True) -> ThreatRecord:
    return ThreatRecord(
        ip=ip,
        threat_type="DDoS Source",
        reputation_score=score,
        last_seen=NOW - timedelta(minutes=10),
        source="ThreatFeed-Premium",
        confidence_level=0.9,
        active=active,
    )


def make_prediction(
    is_anomaly: bool, severity: Severity = Severity.LOW, attack_type: Optional[str] = None
) -> PredictionResult:
    score = 0.9 if is_anomaly else 0.1
    return PredictionResult(
        anomaly_score=score,
        attack_type=attack_type,
        severity=severity,
        confidence=score,
        is_anomaly=is_anomaly,
        detector="rate_based",
    )


async def make_cache(*records: ThreatRecord) -> ThreatIntelCache:
    provider = MagicMock()
    provider.fetch_latest = AsyncMock(
        return_value=ThreatFeedResponse(threats=list(records), last_updated=NOW, total_count=len(records))
    )
    cache = ThreatIntelCache(provider, clock=lambda: NOW)
    await cache.refresh()
    return cache


def stub_ensemble(prediction: PredictionResult) -> MagicMock:
    ensemble = MagicMock()
    ensemble.evaluate = AsyncMock(return_value=prediction)
    return ensemble


# ---------------------------------------------------------------------------
# Alert decision
# ---------------------------------------------------------------------------

class TestAlertSeverity:
    def test_anomaly_keeps_prediction_severity(self):
        assert alert_severity(make_prediction(True, Severity.MEDIUM), []) is Severity.MEDIUM

    def test_normal_without_matches_raises_nothing(self):
        assert alert_severity(make_prediction(False), [make_record("10.0.0.1", 70)]) is None

    def test_auto_block_match_on_normal_traffic_is_high(self):
        assert alert_severity(make_prediction(False), [make_record("10.0.0.1", 85)]) is Severity.HIGH

    def test_high_risk_match_escalates(self):
        assert alert_severity(make_prediction(False), [make_record("10.0.0.1", 95)]) is Severity.CRITICAL
        assert alert_severity(make_prediction(True, Severity.MEDIUM), [make_record("10.0.0.1", 92)]) is Severity.HIGH

    def test_critical_stays_critical(self):
        assert alert_severity(make_prediction(True, Severity.CRITICAL), [make_record("10.0.0.1", 99)]) is Severity.CRITICAL

    def test_inactive_records_ignored(self):
        assert alert_severity(make_prediction(False), [make_record("10.0.0.1", 99, active=False)]) is None


class TestResponseActions:
    def test_playbook_plus_block_list(self):
        actions = response_actions(
            make_prediction(True, Severity.HIGH, "syn_flood"),
            [make_record("10.0.0.1", 85), make_record("10.0.0.2", 60)],
        )
        assert actions == ["Enable SYN cookies", "Block source IPs: 10.0.0.1"]

    def test_unknown_attack_type_falls_back(self):
        assert response_actions(make_prediction(False), []) == ["Investigate traffic source"]


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

class TestDetectionPipeline:
    @pytest.mark.asyncio
    async def test_flood_raises_critical_alert(self):
        cache = await make_cache(make_record("203.0.113.7", 85))
        alerts = AlertEngine()
        pipeline = DetectionPipeline(DetectorEnsemble(), cache, alerts)

        outcome = await pipeline.process(
            TrafficSample(
                features=FLOOD,
                source_ips=["203.0.113.7", "198.51.100.2"],
                target_systems=["edge-lb-01"],
            )
        )

        assert outcome.prediction.is_anomaly is True
        assert outcome.prediction.attack_type == "volumetric"
        assert [r.ip for r in outcome.threat_matches] == ["203.0.113.7"]
        assert outcome.alert is not None
        assert outcome.alert.severity is Severity.CRITICAL
        assert outcome.alert.title == "DDoS Attack Detected: volumetric"
        assert outcome.alert.status is AlertStatus.ACTIVE
        assert "Block source IPs: 203.0.113.7" in outcome.alert.response_actions
        assert outcome.alert.metadata["source_ips"] == ["203.0.113.7", "198.51.100.2"]

    @pytest.mark.asyncio
    async def test_normal_traffic_no_alert(self):
        cache = await make_cache()
        alerts = AlertEngine()
        outcome = await DetectionPipeline(DetectorEnsemble(), cache, alerts).process(
            TrafficSample(features=NORMAL, source_ips=["192.0.2.10"])
        )
        assert outcome.prediction.is_anomaly is False
        assert outcome.alert is None
        assert alerts.stats().total == 0

    @pytest.mark.asyncio
    async def test_known_bad_source_on_normal_traffic(self):
        cache = await make_cache(make_record("203.0.113.7", 88))
        alerts = AlertEngine()
        pipeline = DetectionPipeline(stub_ensemble(make_prediction(False)), cache, alerts)

        outcome = await pipeline.process(TrafficSample(features=NORMAL, source_ips=["203.0.113.7"]))

        assert outcome.alert.severity is Severity.HIGH
        assert outcome.alert.title == "DDoS Attack Detected: known_threat_source"
        assert outcome.alert.affected_systems == frozenset({"network-edge"})

    @pytest.mark.asyncio
    async def test_repeat_detection_deduplicated(self):
        cache = await make_cache()
        alerts = AlertEngine()
        pipeline = DetectionPipeline(
            stub_ensemble(make_prediction(True, Severity.HIGH, "distributed")), cache, alerts
        )
        sample = TrafficSample(features=FLOOD, source_ips=["198.51.100.2"])

        first = await pipeline.process(sample)
        second = await pipeline.process(sample)
        assert first.alert.id == second.alert.id
        assert alerts.stats().total == 1

    @pytest.mark.asyncio
    async def test_no_detector_propagates(self):
        ensemble = MagicMock()
        ensemble.evaluate = AsyncMock(side_effect=NoDetectorAvailableError("no detector"))
        pipeline = DetectionPipeline(ensemble, await make_cache(), AlertEngine())

        with pytest.raises(NoDetectorAvailableError):
            await pipeline.process(TrafficSample(features=NORMAL))
