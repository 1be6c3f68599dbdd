"""
DetectionPipeline — TrafficSample → DetectionOutcome.

  sample → DetectorEnsemble → ThreatIntelCache.bulk_lookup(source IPs)
         → alert decision → AlertEngine.raise_alert (→ NotificationRouter)

Alert decision:
  - anomalous prediction                         → alert at the prediction's severity
  - normal prediction, but a source IP in the
    high or critical reputation band             → alert at HIGH
  - any matched IP in the critical band          → severity raised one step

At most max_concurrent samples are evaluated at once; extra callers wait.
NoDetectorAvailableError propagates to the caller untouched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, Field

from ddos_guard.detection.ensemble import DetectorEnsemble
from ddos_guard.lifecycle.alerts import AlertEngine
from ddos_guard.models.alert import Alert
from ddos_guard.models.threat import ThreatRecord
from ddos_guard.models.traffic import PredictionResult, Severity, TrafficSample
from ddos_guard.threat_intel.cache import ThreatIntelCache

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 8

# Response playbook per attack type; unknown types fall back to the generic entry.
_RESPONSE_ACTIONS: dict[str, list[str]] = {
    "volumetric": ["Enable upstream rate limiting", "Divert traffic to scrubbing center"],
    "distributed": ["Enable geo-based filtering", "Scale edge capacity"],
    "application_layer": ["Enable WAF challenge mode", "Tighten per-client request limits"],
    "bot_traffic": ["Enable bot challenge", "Tighten per-client request limits"],
    "dns_amplification": ["Block inbound UDP/53 responses from unsolicited resolvers"],
    "syn_flood": ["Enable SYN cookies"],
    "generic_flood": ["Enable upstream rate limiting"],
    "mixed": ["Enable upstream rate limiting"],
}
_GENERIC_ACTIONS = ["Investigate traffic source"]


class DetectionOutcome(BaseModel):
    prediction: PredictionResult
    threat_matches: list[ThreatRecord] = Field(default_factory=list)
    alert: Optional[Alert] = None


def response_actions(prediction: PredictionResult, matches: list[ThreatRecord]) -> list[str]:
    actions = list(_RESPONSE_ACTIONS.get(prediction.attack_type or "", _GENERIC_ACTIONS))
    blockable = [r.ip for r in matches if r.auto_block_eligible and r.active]
    if blockable:
        actions.append(f"Block source IPs: {', '.join(blockable)}")
    return actions


def alert_severity(prediction: PredictionResult, matches: list[ThreatRecord]) -> Optional[Severity]:
    """Severity for the alert this evaluation should raise, or None for no alert."""
    active = [r for r in matches if r.active]
    if prediction.is_anomaly:
        severity = prediction.severity
    elif any(r.auto_block_eligible for r in active):
        severity = Severity.HIGH
    else:
        return None

    if any(r.high_risk for r in active):
        severity = severity.escalate()
    return severity


class DetectionPipeline:
    def __init__(
        self,
        ensemble: DetectorEnsemble,
        cache: ThreatIntelCache,
        alerts: AlertEngine,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ) -> None:
        self.ensemble = ensemble
        self.cache = cache
        self.alerts = alerts
        self._slots = asyncio.Semaphore(max_concurrent)

    async def process(self, sample: TrafficSample) -> DetectionOutcome:
        """Evaluate one sample and raise or refresh an alert when warranted.

        Raises:
            NoDetectorAvailableError: If no detector produced a timely result.
        """
        async with self._slots:
            prediction = await self.ensemble.evaluate(sample.features)

        matches = self.cache.bulk_lookup(sample.source_ips)
        severity = alert_severity(prediction, matches)

        if severity is None:
            logger.debug(
                "pipeline.no_alert",
                extra={"detector": prediction.detector, "score": prediction.anomaly_score},
            )
            return DetectionOutcome(prediction=prediction, threat_matches=matches)

        attack_type = prediction.attack_type or "known_threat_source"
        alert = await self.alerts.raise_alert(
            title=f"DDoS Attack Detected: {attack_type}",
            description=(
                f"{prediction.detector} scored {prediction.anomaly_score:.2f} at "
                f"{sample.features.packet_rate:.0f} pkt/s ({sample.features.protocol}); "
                f"{len(matches)} of {len(sample.source_ips)} source IPs matched threat intelligence."
            ),
            severity=severity,
            source=sample.source,
            affected_systems=sample.target_systems,
            response_actions=response_actions(prediction, matches),
            metadata={
                "attack_type": attack_type,
                "source_ips": list(sample.source_ips),
                "anomaly_score": prediction.anomaly_score,
                "detector": prediction.detector,
                "threat_matches": [r.ip for r in matches],
            },
        )

        logger.info(
            "pipeline.alert_raised",
            extra={"alert_id": alert.id, "severity": severity.value, "threat_matches": len(matches)},
        )
        return DetectionOutcome(prediction=prediction, threat_matches=matches, alert=alert)
