"""
Detector variants — TrafficFeatures → PredictionResult.

Four deterministic scoring functions stand in for trained classifiers:

  rate_based  — additive thresholds on rate, size, protocol and diversity
  pattern     — run-length and regularity over the request pattern
  rule_vote   — mean of five independent rules
  kernel      — similarity over normalized rate, inverse size and protocol

Each variant is a Detector subclass. A trained model can be dropped in by
implementing the same interface and registering it with the ensemble.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Optional

from ddos_guard.errors import FeatureMissingError
from ddos_guard.models.traffic import PredictionResult, Severity, TrafficFeatures

_UDP = "UDP"


def _clamp(score: float) -> float:
    return max(0.0, min(score, 1.0))


class Detector(ABC):
    """Base class for every detector variant."""

    name: str = "detector"
    version: str = "0.0.0"
    anomaly_threshold: float = 0.5
    # Optional TrafficFeatures fields this variant cannot run without.
    required_features: tuple[str, ...] = ()

    def is_applicable(self, features: TrafficFeatures) -> bool:
        return all(getattr(features, field) is not None for field in self.required_features)

    async def predict(self, features: TrafficFeatures) -> PredictionResult:
        """Score a sample.

        score() runs in a worker thread, so the ensemble timeout bounds a
        blocking scorer as well as an async one.

        Raises:
            FeatureMissingError: If a required feature is absent or empty.
        """
        for field in self.required_features:
            if not getattr(features, field):
                raise FeatureMissingError(self.name, field)

        return await asyncio.to_thread(self._predict_sync, features)

    def _predict_sync(self, features: TrafficFeatures) -> PredictionResult:
        started = time.perf_counter()
        score = _clamp(self.score(features))
        is_anomaly = score > self.anomaly_threshold
        attack_type = self.classify(features, score) if is_anomaly else None

        return PredictionResult(
            anomaly_score=score,
            attack_type=attack_type,
            severity=self.severity(features, score, attack_type),
            confidence=score,
            is_anomaly=is_anomaly,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            detector=self.name,
        )

    @abstractmethod
    def score(self, features: TrafficFeatures) -> float:
        ...

    @abstractmethod
    def classify(self, features: TrafficFeatures, score: float) -> str:
        """Attack type for an anomalous sample."""

    @abstractmethod
    def severity(
        self, features: TrafficFeatures, score: float, attack_type: Optional[str]
    ) -> Severity:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, version={self.version!r})"


class RateBasedDetector(Detector):
    """Volume-oriented scoring of packet rate, size, protocol and source spread."""

    name = "rate_based"
    version = "2.1.0"
    anomaly_threshold = 0.7

    def score(self, features: TrafficFeatures) -> float:
        score = 0.0

        if features.packet_rate > 100:
            score += 0.3
        if features.packet_rate > 1000:
            score += 0.4
        if features.packet_rate > 5000:
            score += 0.3

        if features.packet_size < 100:
            score += 0.2

        if features.protocol == _UDP:
            score += 0.1

        if features.source_diversity > 0.7:
            score += 0.2
        if features.source_diversity > 0.9:
            score += 0.3

        return score

    def classify(self, features: TrafficFeatures, score: float) -> str:
        if features.packet_rate > 1000:
            return "volumetric"
        if features.source_diversity > 0.8:
            return "distributed"
        return "application_layer"

    def severity(
        self, features: TrafficFeatures, score: float, attack_type: Optional[str]
    ) -> Severity:
        if attack_type is None:
            return Severity.LOW
        if attack_type == "volumetric":
            return Severity.CRITICAL if features.packet_rate > 5000 else Severity.HIGH
        if attack_type == "distributed":
            return Severity.HIGH
        return Severity.MEDIUM


class PatternDetector(Detector):
    """Bot detection over the 0/1 request pattern sequence."""

    name = "pattern"
    version = "1.8.2"
    anomaly_threshold = 0.6
    required_features = ("request_pattern",)

    def score(self, features: TrafficFeatures) -> float:
        pattern = features.request_pattern or []
        return 0.4 * self._longest_run(pattern) + 0.6 * self._regularity(pattern)

    @staticmethod
    def _longest_run(pattern: list[int]) -> float:
        """Longest run of bot-like (1) tokens, normalized by sequence length."""
        longest = current = 0
        for token in pattern:
            if token == 1:
                current += 1
                longest = max(longest, current)
            else:
                current = 0
        return min(longest / len(pattern), 1.0)

    @staticmethod
    def _regularity(pattern: list[int]) -> float:
        mean = sum(pattern) / len(pattern)
        return 0.8 if mean > 0.7 else 0.3

    def classify(self, features: TrafficFeatures, score: float) -> str:
        return "bot_traffic"

    def severity(
        self, features: TrafficFeatures, score: float, attack_type: Optional[str]
    ) -> Severity:
        return Severity.HIGH if score > 0.8 else Severity.MEDIUM


class RuleVoteDetector(Detector):
    """Five independent rules, averaged."""

    name = "rule_vote"
    version = "3.0.1"
    anomaly_threshold = 0.5

    def score(self, features: TrafficFeatures) -> float:
        votes = [
            0.8 if features.packet_rate > 500 else 0.2,
            0.7 if features.packet_size < 200 else 0.3,
            0.6 if features.protocol == _UDP else 0.4,
            0.9 if features.source_diversity > 0.8 else 0.1,
            0.95 if features.packet_rate > 1000 and features.packet_size < 100 else 0.05,
        ]
        return sum(votes) / len(votes)

    def classify(self, features: TrafficFeatures, score: float) -> str:
        return "mixed"

    def severity(
        self, features: TrafficFeatures, score: float, attack_type: Optional[str]
    ) -> Severity:
        if score > 0.8:
            return Severity.HIGH
        if score > 0.6:
            return Severity.MEDIUM
        return Severity.LOW


class KernelDetector(Detector):
    """Similarity score over normalized rate, inverse size and protocol weight."""

    name = "kernel"
    version = "2.5.0"
    anomaly_threshold = 0.6

    _RATE_CEILING = 10_000.0
    _SIZE_CEILING = 1_500.0   # Ethernet MTU

    def score(self, features: TrafficFeatures) -> float:
        normalized_rate = min(features.packet_rate / self._RATE_CEILING, 1.0)
        normalized_size = min(features.packet_size / self._SIZE_CEILING, 1.0)
        protocol_weight = 0.8 if features.protocol == _UDP else 0.5
        return normalized_rate * 0.4 + (1 - normalized_size) * 0.3 + protocol_weight * 0.3

    def classify(self, features: TrafficFeatures, score: float) -> str:
        if features.protocol == _UDP and features.packet_rate > 2000:
            return "dns_amplification"
        if features.packet_size < 100:
            return "syn_flood"
        return "generic_flood"

    def severity(
        self, features: TrafficFeatures, score: float, attack_type: Optional[str]
    ) -> Severity:
        if score > 0.9:
            return Severity.CRITICAL
        if score > 0.7:
            return Severity.HIGH
        return Severity.MEDIUM


def default_detectors() -> list[Detector]:
    """The standard registry, one instance per variant."""
    return [RateBasedDetector(), RuleVoteDetector(), KernelDetector(), PatternDetector()]
