"""
ThreatDetectionService — wires every component together from Settings.

The API builds one service at startup and calls start()/stop() from its
lifespan. Tests build the same object from explicit components.

When the threat feed starts failing, the service sends one system
notification through the router; it does not repeat while the feed stays
down.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from ddos_guard.config import Settings, get_settings
from ddos_guard.detection.ensemble import DetectorEnsemble
from ddos_guard.errors import FeedUnavailableError
from ddos_guard.lifecycle.alerts import AlertEngine
from ddos_guard.lifecycle.incidents import IncidentEngine
from ddos_guard.models.threat import ThreatFeedResponse
from ddos_guard.models.traffic import Severity
from ddos_guard.notifications.notifiers import build_notifiers
from ddos_guard.notifications.router import NotificationConfig, NotificationRouter, system_payload
from ddos_guard.pipeline import DetectionPipeline
from ddos_guard.threat_intel.cache import ThreatIntelCache
from ddos_guard.threat_intel.feed import HttpThreatFeed, ThreatFeedProvider

logger = logging.getLogger(__name__)

THREAT_FEED_SYSTEM = "threat-feed"


class EmptyThreatFeed:
    """Provider used when no feed is configured: every refresh yields no threats."""

    async def fetch_latest(self) -> ThreatFeedResponse:
        return ThreatFeedResponse()


@dataclass
class ThreatDetectionService:
    ensemble: DetectorEnsemble
    cache: ThreatIntelCache
    router: NotificationRouter
    alerts: AlertEngine
    incidents: IncidentEngine
    pipeline: DetectionPipeline
    _pending: set[asyncio.Task] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.cache.on_failure is None:
            self.cache.on_failure = self._feed_failed

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        provider: Optional[ThreatFeedProvider] = None,
    ) -> ThreatDetectionService:
        settings = settings or get_settings()

        if provider is None:
            if settings.is_configured("threat_feed"):
                provider = HttpThreatFeed(
                    settings.threat_feed_url,
                    settings.threat_feed_api_key,
                    timeout_seconds=settings.threat_feed_timeout_seconds,
                )
            else:
                logger.warning(
                    "service.threat_feed_not_configured",
                    extra={"missing": "THREAT_FEED_URL, THREAT_FEED_API_KEY"},
                )
                provider = EmptyThreatFeed()

        ensemble = DetectorEnsemble(timeout_seconds=settings.detector_timeout_seconds)
        cache = ThreatIntelCache(
            provider,
            refresh_interval=timedelta(minutes=settings.threat_feed_refresh_minutes),
            fetch_timeout_seconds=settings.threat_feed_timeout_seconds,
        )
        router = NotificationRouter(NotificationConfig.from_settings(settings), build_notifiers(settings))
        alerts = AlertEngine(
            router=router, dedup_window=timedelta(seconds=settings.alert_dedup_window_seconds)
        )
        incidents = IncidentEngine(router=router)
        pipeline = DetectionPipeline(
            ensemble, cache, alerts, max_concurrent=settings.max_concurrent_evaluations
        )
        return cls(
            ensemble=ensemble,
            cache=cache,
            router=router,
            alerts=alerts,
            incidents=incidents,
            pipeline=pipeline,
        )

    def report_system_issue(self, system: str, issue: str, severity: Severity = Severity.MEDIUM) -> None:
        """Send a system notification without waiting for delivery."""
        task = asyncio.create_task(self.router.dispatch(system_payload(system, issue, severity)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _feed_failed(self, error: FeedUnavailableError) -> None:
        self.report_system_issue(
            THREAT_FEED_SYSTEM,
            f"Threat intelligence refresh failed, serving the last snapshot: {error}",
        )

    async def start(self) -> None:
        await self.cache.start()
        logger.info("service.started", extra={"detectors": [d.name for d in self.ensemble.detectors]})

    async def stop(self) -> None:
        await self.cache.stop()
        await self.alerts.drain()
        await self.incidents.drain()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        logger.info("service.stopped")
