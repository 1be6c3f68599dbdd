"""Tests for ddos_guard/threat_intel/cache.py — snapshots, single-flight, serve-stale."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from ddos_guard.errors import FeedUnavailableError
from ddos_guard.models.threat import ReputationBand, ThreatFeedResponse, ThreatRecord
from ddos_guard.threat_intel.cache import ThreatIntelCache, ThreatSnapshot

NOW = datetime(2025, 1, 30, 14, 0, tzinfo=timezone.utc)


def make_record(ip: str, score: int = 85, **overrides) -> ThreatRecord:
    defaults = dict(
        ip=ip,
        threat_type="DDoS Source",
        reputation_score=score,
        country_code="CN",
        organization="Compromised ISP",
        last_seen=NOW - timedelta(minutes=30),
        source="ThreatFeed-Premium",
        confidence_level=0.95,
    )
    defaults.update(overrides)
    return ThreatRecord(**defaults)


def make_feed(*records: ThreatRecord) -> ThreatFeedResponse:
    return ThreatFeedResponse(threats=list(records), last_updated=NOW, total_count=len(records))


def make_cache(provider, **kwargs) -> ThreatIntelCache:
    kwargs.setdefault("clock", lambda: NOW)
    return ThreatIntelCache(provider, **kwargs)


class TestLookups:
    @pytest.mark.asyncio
    async def test_lookup_after_refresh(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(make_record("45.142.214.123", 98))
        cache = make_cache(provider)

        assert await cache.refresh() is True
        record = cache.lookup("45.142.214.123")
        assert record is not None
        assert record.reputation_score == 98

    @pytest.mark.asyncio
    async def test_lookup_miss_returns_none(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(make_record("1.1.1.1"))
        cache = make_cache(provider)
        await cache.refresh()
        assert cache.lookup("8.8.8.8") is None

    def test_lookup_before_any_refresh(self):
        cache = make_cache(AsyncMock())
        assert cache.lookup("1.1.1.1") is None
        assert cache.is_stale is True

    @pytest.mark.asyncio
    async def test_bulk_lookup_preserves_input_order(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(
            make_record("1.1.1.1"), make_record("2.2.2.2"), make_record("3.3.3.3")
        )
        cache = make_cache(provider)
        await cache.refresh()

        results = cache.bulk_lookup(["3.3.3.3", "9.9.9.9", "1.1.1.1"])
        assert [r.ip for r in results] == ["3.3.3.3", "1.1.1.1"]

    @pytest.mark.asyncio
    async def test_duplicate_ips_keep_most_recent(self):
        older = make_record("1.1.1.1", 70, last_seen=NOW - timedelta(hours=2))
        newer = make_record("1.1.1.1", 95, last_seen=NOW - timedelta(minutes=1))
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(newer, older)
        cache = make_cache(provider)
        await cache.refresh()
        assert cache.lookup("1.1.1.1").reputation_score == 95

    def test_snapshot_records_are_read_only(self):
        snapshot = ThreatSnapshot.build([make_record("1.1.1.1")], taken_at=NOW)
        with pytest.raises(TypeError):
            snapshot.records["2.2.2.2"] = make_record("2.2.2.2")


class TestServeStale:
    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_snapshot(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(make_record("1.1.1.1", 91))
        cache = make_cache(provider)
        await cache.refresh()
        before = cache.snapshot

        provider.fetch_latest.side_effect = FeedUnavailableError("feed down")
        assert await cache.refresh() is False

        assert cache.snapshot is before
        assert cache.lookup("1.1.1.1").reputation_score == 91
        assert cache.last_error == "feed down"
        assert cache.is_stale is True

    @pytest.mark.asyncio
    async def test_timeout_keeps_previous_snapshot(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(make_record("1.1.1.1"))
        cache = make_cache(provider, fetch_timeout_seconds=0.05)
        await cache.refresh()

        async def slow_fetch():
            await asyncio.sleep(1)
            return make_feed(make_record("2.2.2.2"))

        provider.fetch_latest.side_effect = slow_fetch
        assert await cache.refresh() is False
        assert cache.lookup("1.1.1.1") is not None
        assert cache.lookup("2.2.2.2") is None
        assert "timed out" in cache.last_error

    @pytest.mark.asyncio
    async def test_refresh_failure_never_raises(self):
        provider = AsyncMock()
        provider.fetch_latest.side_effect = FeedUnavailableError("DNS failure")
        cache = make_cache(provider)
        assert await cache.refresh() is False
        assert cache.lookup("1.1.1.1") is None

    @pytest.mark.asyncio
    async def test_success_clears_last_error(self):
        provider = AsyncMock()
        provider.fetch_latest.side_effect = [FeedUnavailableError("down"), make_feed(make_record("1.1.1.1"))]
        cache = make_cache(provider)
        await cache.refresh()
        await cache.refresh()
        assert cache.last_error is None
        assert cache.is_stale is False

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_serves_stale(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(make_record("1.1.1.1"))
        cache = make_cache(provider)
        await cache.refresh()

        provider.fetch_latest.side_effect = ConnectionError("reset by peer")
        assert await cache.refresh() is False
        assert cache.lookup("1.1.1.1") is not None
        assert "ConnectionError" in cache.last_error
        assert "reset by peer" in cache.last_error

    @pytest.mark.asyncio
    async def test_snapshot_build_error_serves_stale(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(make_record("1.1.1.1"))
        cache = make_cache(provider)
        await cache.refresh()

        aware = make_record("2.2.2.2")
        # bypasses validation, so last_seen keeps no offset
        naive = ThreatRecord.model_construct(**{**aware.model_dump(), "last_seen": datetime(2025, 1, 30, 13, 0)})
        provider.fetch_latest.return_value = ThreatFeedResponse.model_construct(
            threats=[aware, naive], last_updated=NOW, total_count=2
        )
        assert await cache.refresh() is False
        assert cache.lookup("1.1.1.1") is not None
        assert cache.lookup("2.2.2.2") is None

    @pytest.mark.asyncio
    async def test_mixed_offsets_in_one_batch(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = ThreatFeedResponse.model_validate(
            {
                "threats": [
                    {**self._raw("1.2.3.4", 70), "last_seen": "2025-01-30T00:00:00Z"},
                    {**self._raw("1.2.3.4", 95), "last_seen": "2025-01-30T01:00:00"},
                ],
                "last_updated": "2025-01-30T02:00:00",
            }
        )
        cache = make_cache(provider)
        assert await cache.refresh() is True
        assert cache.lookup("1.2.3.4").reputation_score == 95

    @staticmethod
    def _raw(ip: str, score: int) -> dict:
        return {
            "ip": ip,
            "threat_type": "DDoS Source",
            "reputation_score": score,
            "source": "ThreatFeed-Premium",
            "confidence_level": 0.9,
        }

    @pytest.mark.asyncio
    async def test_on_failure_fires_once_per_outage(self):
        failures = []
        provider = AsyncMock()
        provider.fetch_latest.side_effect = [
            FeedUnavailableError("down"),
            FeedUnavailableError("still down"),
            make_feed(make_record("1.1.1.1")),
            FeedUnavailableError("down again"),
        ]
        cache = make_cache(provider, on_failure=failures.append)
        for _ in range(4):
            await cache.refresh()
        assert [str(e) for e in failures] == ["down", "down again"]

    @pytest.mark.asyncio
    async def test_old_snapshot_is_stale(self):
        clock = {"now": NOW}
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(make_record("1.1.1.1"))
        cache = ThreatIntelCache(provider, refresh_interval=timedelta(minutes=15), clock=lambda: clock["now"])
        await cache.refresh()
        assert cache.is_stale is False

        clock["now"] = NOW + timedelta(minutes=31)
        assert cache.is_stale is True


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_refresh_is_coalesced(self):
        release = asyncio.Event()
        calls = 0

        async def gated_fetch():
            nonlocal calls
            calls += 1
            await release.wait()
            return make_feed(make_record("1.1.1.1"))

        provider = AsyncMock()
        provider.fetch_latest.side_effect = gated_fetch
        cache = make_cache(provider)

        first = asyncio.create_task(cache.refresh())
        await asyncio.sleep(0)
        assert cache.refreshing is True

        assert await cache.refresh() is False   # no-op while one is in flight
        release.set()
        assert await first is True
        assert calls == 1

    @pytest.mark.asyncio
    async def test_readers_see_old_snapshot_until_swap(self):
        release = asyncio.Event()

        async def gated_fetch():
            await release.wait()
            return make_feed(make_record("2.2.2.2"))

        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(make_record("1.1.1.1"))
        cache = make_cache(provider)
        await cache.refresh()

        provider.fetch_latest.side_effect = gated_fetch
        task = asyncio.create_task(cache.refresh())
        await asyncio.sleep(0)

        assert cache.lookup("1.1.1.1") is not None
        assert cache.lookup("2.2.2.2") is None

        release.set()
        await task
        assert cache.lookup("1.1.1.1") is None
        assert cache.lookup("2.2.2.2") is not None


class TestBackgroundLoop:
    @pytest.mark.asyncio
    async def test_start_refreshes_eagerly(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(make_record("1.1.1.1"))
        cache = make_cache(provider, refresh_interval=timedelta(hours=1))

        await cache.start()
        try:
            assert cache.running is True
            assert cache.lookup("1.1.1.1") is not None
            assert provider.fetch_latest.await_count == 1
        finally:
            await cache.stop()
        assert cache.running is False

    @pytest.mark.asyncio
    async def test_loop_refreshes_on_interval(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(make_record("1.1.1.1"))
        cache = make_cache(provider, refresh_interval=timedelta(milliseconds=20))

        await cache.start()
        await asyncio.sleep(0.15)
        await cache.stop()

        assert provider.fetch_latest.await_count >= 3

    @pytest.mark.asyncio
    async def test_stop_prevents_new_refreshes(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed()
        cache = make_cache(provider, refresh_interval=timedelta(milliseconds=20))

        await cache.start()
        await cache.stop()
        count = provider.fetch_latest.await_count
        await asyncio.sleep(0.1)
        assert provider.fetch_latest.await_count == count

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_refresh_finish(self):
        release = asyncio.Event()
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(make_record("1.1.1.1"))
        cache = make_cache(provider, refresh_interval=timedelta(milliseconds=10))
        await cache.start()

        async def gated_fetch():
            await release.wait()
            return make_feed(make_record("2.2.2.2"))

        provider.fetch_latest.side_effect = gated_fetch
        while not cache.refreshing:
            await asyncio.sleep(0.005)

        stopping = asyncio.create_task(cache.stop())
        await asyncio.sleep(0.02)
        assert not stopping.done()

        release.set()
        await stopping
        assert cache.lookup("2.2.2.2") is not None

    @pytest.mark.asyncio
    async def test_start_survives_failing_feed(self):
        provider = AsyncMock()
        provider.fetch_latest.side_effect = FeedUnavailableError("down")
        cache = make_cache(provider, refresh_interval=timedelta(hours=1))
        await cache.start()
        try:
            assert cache.running is True
            assert cache.snapshot.taken_at is None
        finally:
            await cache.stop()

    @pytest.mark.asyncio
    async def test_loop_keeps_running_after_unexpected_error(self):
        provider = AsyncMock()
        provider.fetch_latest.side_effect = RuntimeError("provider bug")
        cache = make_cache(provider, refresh_interval=timedelta(milliseconds=20))

        await cache.start()
        await asyncio.sleep(0.1)
        assert cache.running is True

        provider.fetch_latest.side_effect = None
        provider.fetch_latest.return_value = make_feed(make_record("1.1.1.1"))
        await asyncio.sleep(0.1)
        await cache.stop()

        assert provider.fetch_latest.await_count >= 3
        assert cache.lookup("1.1.1.1") is not None
        assert cache.last_error is None


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_feed_analysis(self):
        provider = AsyncMock()
        provider.fetch_latest.return_value = make_feed(
            make_record("45.142.214.123", 98, threat_type="Botnet C&C", country_code="RU"),
            make_record("103.224.182.245", 95, country_code="CN"),
            make_record("185.220.101.42", 75, threat_type="Tor Exit Node", country_code="NL"),
            make_record("194.147.85.16", 82, threat_type="Scanning", country_code="DE", active=False),
        )
        cache = make_cache(provider)
        await cache.refresh()

        analysis = cache.analyze()
        assert analysis.total_threats == 4
        assert analysis.active_threats == 3
        assert analysis.high_risk == 2
        assert analysis.auto_block_eligible == 3
        assert analysis.band_distribution[ReputationBand.CRITICAL] == 2
        assert analysis.band_distribution[ReputationBand.HIGH] == 1
        assert analysis.band_distribution[ReputationBand.MEDIUM] == 1
        assert analysis.band_distribution[ReputationBand.MINIMAL] == 0
        assert analysis.threat_types["DDoS Source"] == 1
        assert analysis.countries["RU"] == 1
        assert analysis.stale is False

    def test_empty_analysis(self):
        analysis = make_cache(AsyncMock()).analyze()
        assert analysis.total_threats == 0
        assert analysis.stale is True
