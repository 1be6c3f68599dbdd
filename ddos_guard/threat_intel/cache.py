"""
ThreatIntelCache — the freshest known IP reputation snapshot.

Lookups never touch the network: they read the current ThreatSnapshot, an
immutable mapping that a refresh builds completely off to the side and then
installs with a single reference assignment. Readers therefore see either
the previous snapshot or the new one, never a mix.

Refreshes are single-flight: a refresh requested while another is running
returns immediately without fetching. A failed refresh keeps the previous
snapshot in place (serve-stale) and is logged, never raised. The optional
on_failure callback hears about the first failure after a healthy refresh.

Background loop: start() refreshes once eagerly, then every
refresh_interval until stop(). stop() prevents further refreshes but lets
one already in flight complete.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional

from ddos_guard.errors import FeedUnavailableError
from ddos_guard.models.threat import FeedAnalysis, ReputationBand, ThreatRecord
from ddos_guard.threat_intel.feed import ThreatFeedProvider

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = timedelta(minutes=15)
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ThreatSnapshot:
    records: Mapping[str, ThreatRecord] = field(default_factory=lambda: MappingProxyType({}))
    taken_at: Optional[datetime] = None       # None until the first successful refresh
    feed_updated_at: Optional[datetime] = None

    @classmethod
    def build(
        cls,
        threats: Iterable[ThreatRecord],
        taken_at: datetime,
        feed_updated_at: Optional[datetime] = None,
    ) -> ThreatSnapshot:
        records: dict[str, ThreatRecord] = {}
        for record in threats:
            # duplicate IPs within one batch: most recently seen wins
            existing = records.get(record.ip)
            if existing is None or record.last_seen >= existing.last_seen:
                records[record.ip] = record
        return cls(
            records=MappingProxyType(records),
            taken_at=taken_at,
            feed_updated_at=feed_updated_at,
        )

    def __len__(self) -> int:
        return len(self.records)


class ThreatIntelCache:
    def __init__(
        self,
        provider: ThreatFeedProvider,
        refresh_interval: timedelta = DEFAULT_REFRESH_INTERVAL,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        on_failure: Optional[Callable[[FeedUnavailableError], None]] = None,
    ) -> None:
        self.provider = provider
        self.on_failure = on_failure
        self.refresh_interval = refresh_interval
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self._clock = clock

        self._snapshot = ThreatSnapshot()
        self._refresh_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

        self.last_error: Optional[str] = None
        self.last_attempt_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> ThreatSnapshot:
        return self._snapshot

    @property
    def refreshing(self) -> bool:
        return self._refresh_lock.locked()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_stale(self) -> bool:
        """True when the last refresh failed or the snapshot outlived two intervals."""
        taken_at = self._snapshot.taken_at
        if taken_at is None or self.last_error is not None:
            return True
        return self._clock() - taken_at > 2 * self.refresh_interval

    def lookup(self, ip: str) -> Optional[ThreatRecord]:
        return self._snapshot.records.get(ip)

    def bulk_lookup(self, ips: Iterable[str]) -> list[ThreatRecord]:
        """Return the records matching *ips*, in input order, skipping misses."""
        records = self._snapshot.records   # one snapshot for the whole batch
        return [records[ip] for ip in ips if ip in records]

    def analyze(self) -> FeedAnalysis:
        snapshot = self._snapshot
        records = list(snapshot.records.values())
        bands = Counter(record.band for record in records)

        return FeedAnalysis(
            total_threats=len(records),
            active_threats=sum(1 for r in records if r.active),
            high_risk=sum(1 for r in records if r.high_risk),
            auto_block_eligible=sum(1 for r in records if r.auto_block_eligible),
            band_distribution={band: bands.get(band, 0) for band in ReputationBand},
            threat_types=dict(Counter(r.threat_type for r in records).most_common()),
            countries=dict(Counter(r.country_code for r in records).most_common()),
            snapshot_taken_at=snapshot.taken_at,
            stale=self.is_stale,
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        """Fetch the feed and install a new snapshot.

        Returns:
            True if a new snapshot was installed. False if another refresh
            was already in flight or this one failed (the previous snapshot
            stays in place either way).
        """
        if self._refresh_lock.locked():
            logger.debug("threat_intel.refresh_coalesced")
            return False

        async with self._refresh_lock:
            self.last_attempt_at = self._clock()
            try:
                feed = await asyncio.wait_for(
                    self.provider.fetch_latest(), timeout=self.fetch_timeout_seconds
                )
                snapshot = ThreatSnapshot.build(
                    feed.threats, taken_at=self._clock(), feed_updated_at=feed.last_updated
                )
            except asyncio.TimeoutError:
                self._record_failure(
                    FeedUnavailableError(
                        f"Threat feed fetch timed out after {self.fetch_timeout_seconds}s"
                    )
                )
                return False
            except FeedUnavailableError as e:
                self._record_failure(e)
                return False
            except Exception as e:
                self._record_failure(
                    FeedUnavailableError(f"Threat feed refresh failed: {type(e).__name__}: {e}")
                )
                return False

            self._snapshot = snapshot
            self.last_error = None

        logger.info(
            "threat_intel.refreshed",
            extra={"threats": len(snapshot), "feed_updated_at": str(snapshot.feed_updated_at)},
        )
        return True

    def _record_failure(self, error: FeedUnavailableError) -> None:
        """Record a failed refresh. on_failure fires only when a healthy feed starts failing."""
        newly_failing = self.last_error is None
        self.last_error = str(error)
        logger.warning(
            "threat_intel.refresh_failed",
            extra={
                "error": str(error),
                "serving_stale": self._snapshot.taken_at is not None,
                "threats": len(self._snapshot),
            },
        )
        if newly_failing and self.on_failure is not None:
            self.on_failure(error)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Refresh once now, then keep refreshing every refresh_interval."""
        if self.running:
            return
        self._stop_event.clear()
        await self.refresh()
        self._task = asyncio.create_task(self._run(), name="threat-intel-refresh")
        logger.info(
            "threat_intel.started",
            extra={"interval_seconds": self.refresh_interval.total_seconds()},
        )

    async def _run(self) -> None:
        interval = self.refresh_interval.total_seconds()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.refresh()

    async def stop(self) -> None:
        """Stop the loop. A refresh already in flight is allowed to finish."""
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            await task
        logger.info("threat_intel.stopped")
