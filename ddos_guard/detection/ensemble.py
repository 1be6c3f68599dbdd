"""
DetectorEnsemble — TrafficFeatures → one PredictionResult.

Runs every applicable detector concurrently, each under its own timeout, and
selects the result with the highest confidence. Variants that are not
applicable, time out, or fail are excluded and logged; the evaluation only
fails when nothing is left to select from.

Tie-break: when two results report exactly equal confidence, the winner is
the variant listed first in SELECTION_PRIORITY. Detectors not in that list
rank after all listed ones, in registry order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from ddos_guard.detection.detectors import Detector, default_detectors
from ddos_guard.errors import FeatureMissingError, NoDetectorAvailableError
from ddos_guard.models.traffic import PredictionResult, TrafficFeatures

logger = logging.getLogger(__name__)

SELECTION_PRIORITY: tuple[str, ...] = ("rate_based", "rule_vote", "kernel", "pattern")

DEFAULT_TIMEOUT_SECONDS = 2.0


def _priority(detector_name: Optional[str]) -> int:
    try:
        return SELECTION_PRIORITY.index(detector_name)
    except ValueError:
        return len(SELECTION_PRIORITY)


def select_best(results: Iterable[PredictionResult]) -> PredictionResult:
    """Pick the highest-confidence result, breaking ties by SELECTION_PRIORITY.

    Raises:
        NoDetectorAvailableError: If *results* is empty.
    """
    ranked = sorted(
        enumerate(results),
        key=lambda item: (-item[1].confidence, _priority(item[1].detector), item[0]),
    )
    if not ranked:
        raise NoDetectorAvailableError("No detector produced a result for this sample")
    return ranked[0][1]


class DetectorEnsemble:
    """Concurrent fan-out over a registry of detector variants.

    Example:
        >>> ensemble = DetectorEnsemble()
        >>> best = await ensemble.evaluate(features)
        >>> best.detector, best.confidence
    """

    def __init__(
        self,
        detectors: Optional[list[Detector]] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.detectors = detectors if detectors is not None else default_detectors()
        self.timeout_seconds = timeout_seconds

    async def _run_one(self, detector: Detector, features: TrafficFeatures) -> PredictionResult:
        return await asyncio.wait_for(detector.predict(features), timeout=self.timeout_seconds)

    async def run_all(self, features: TrafficFeatures) -> list[PredictionResult]:
        """Run all applicable detectors; return the results that arrived in time."""
        applicable = [d for d in self.detectors if d.is_applicable(features)]
        skipped = [d.name for d in self.detectors if d not in applicable]
        if skipped:
            logger.debug("ensemble.detectors_skipped", extra={"detectors": skipped})

        if not applicable:
            return []

        outcomes = await asyncio.gather(
            *[self._run_one(detector, features) for detector in applicable],
            return_exceptions=True,
        )

        results: list[PredictionResult] = []
        for detector, outcome in zip(applicable, outcomes):
            if isinstance(outcome, asyncio.TimeoutError):
                logger.warning(
                    "ensemble.detector_timeout",
                    extra={"detector": detector.name, "timeout_seconds": self.timeout_seconds},
                )
            elif isinstance(outcome, FeatureMissingError):
                logger.debug(
                    "ensemble.detector_feature_missing",
                    extra={"detector": detector.name, "feature": outcome.feature},
                )
            elif isinstance(outcome, Exception):
                logger.warning(
                    "ensemble.detector_error",
                    extra={"detector": detector.name, "error": str(outcome)},
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)

        return results

    async def evaluate(self, features: TrafficFeatures) -> PredictionResult:
        """Evaluate one sample and return the selected prediction.

        Raises:
            NoDetectorAvailableError: If every detector was skipped, timed out
                or failed.
        """
        results = await self.run_all(features)
        if not results:
            logger.warning("ensemble.no_detector_available")
            raise NoDetectorAvailableError(
                f"None of {len(self.detectors)} detectors produced a timely result"
            )

        best = select_best(results)
        logger.info(
            "ensemble.complete",
            extra={
                "detector": best.detector,
                "confidence": best.confidence,
                "is_anomaly": best.is_anomaly,
                "candidates": len(results),
            },
        )
        return best
