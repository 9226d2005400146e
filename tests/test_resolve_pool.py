"""
Unit tests for social.graze.gatekeeper.resolve.pool
"""

import asyncio
import logging

from social.graze.gatekeeper.resolve.pool import (
    RESOLVER_SERVICE,
    ResolverPool,
    normalize_result,
)
from social.graze.gatekeeper.resolve.result import ResolutionResult, ResolutionStatus
from tests.test_helpers import STEVE_PREMIUM_ID, StubProvider


def premium(source: str, name: str = "Notch") -> ResolutionResult:
    return ResolutionResult.premium(STEVE_PREMIUM_ID, name, source)


class TestNormalizeResult:
    """Test suite for the per-answer sanity rules."""

    def test_premium_with_matching_name_is_kept(self):
        """Canonical names are compared case-insensitively."""
        result = premium("mojang", "NOTCH")
        assert normalize_result(result, "notch") == result

    def test_canonical_mismatch_downgrades_to_offline(self):
        """A premium answer for a different name is downgraded to OFFLINE."""
        result = normalize_result(premium("mojang", "Jeb_"), "Notch")
        assert result.status == ResolutionStatus.OFFLINE
        assert result.message == "username mismatch with canonical name"
        assert result.source == "mojang"

    def test_non_premium_passes_through(self):
        """Offline and unknown answers are not touched."""
        offline = ResolutionResult.offline("mojang", "not found")
        unknown = ResolutionResult.unknown("mojang", "io error")
        assert normalize_result(offline, "Notch") is offline
        assert normalize_result(unknown, "Notch") is unknown


class TestResolverPool:
    """Test suite for the provider race."""

    async def test_invalid_name_makes_no_calls(self):
        """Invalid names resolve OFFLINE without querying any provider."""
        provider = StubProvider("mojang", premium("mojang"))
        pool = ResolverPool([provider])

        result = await pool.resolve("bad name!")

        assert result.status == ResolutionStatus.OFFLINE
        assert result.message == "invalid characters"
        assert provider.calls == []

    async def test_no_enabled_providers(self):
        """A pool with every provider disabled answers without network calls."""
        provider = StubProvider("mojang", premium("mojang"), enabled=False)
        result = await ResolverPool([provider]).resolve("Notch")
        assert result.source == RESOLVER_SERVICE
        assert result.message == "no resolvers enabled"
        assert provider.calls == []

    async def test_first_premium_wins_without_waiting(self):
        """A fast PREMIUM answer returns before a slow provider finishes."""
        fast = StubProvider("ashcon", premium("ashcon"))
        slow = StubProvider("mojang", ResolutionResult.offline("mojang", "not found"), delay=5)
        pool = ResolverPool([slow, fast], aggregate_timeout_ms=10000)

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await pool.resolve("Notch")

        assert result.status == ResolutionStatus.PREMIUM
        assert result.source == "ashcon"
        assert loop.time() - started < 1
        assert pool.abandoned == 1
        await pool.close()
        assert pool.abandoned == 0

    async def test_premium_beats_earlier_offline(self):
        """An OFFLINE answer does not end the race while PREMIUM may still arrive."""
        offline = StubProvider("mojang", ResolutionResult.offline("mojang", "not found"))
        late_premium = StubProvider("ashcon", premium("ashcon"), delay=0.05)
        result = await ResolverPool([offline, late_premium]).resolve("Notch")
        assert result.status == ResolutionStatus.PREMIUM

    async def test_offline_beats_unknown(self):
        """Without PREMIUM, the first OFFLINE answer is returned."""
        unknown = StubProvider("mojang", ResolutionResult.unknown("mojang", "io error"))
        offline = StubProvider("ashcon", ResolutionResult.offline("ashcon", "not found"))
        result = await ResolverPool([unknown, offline]).resolve("Nobody")
        assert result.status == ResolutionStatus.OFFLINE
        assert result.source == "ashcon"

    async def test_all_unknown_is_unknown(self):
        """When nobody can decide the aggregate result is UNKNOWN."""
        pool = ResolverPool(
            [
                StubProvider("mojang", ResolutionResult.unknown("mojang", "rate limited")),
                StubProvider("ashcon", ResolutionResult.unknown("ashcon", "io error")),
            ]
        )
        result = await pool.resolve("Notch")
        assert result.status == ResolutionStatus.UNKNOWN
        assert result.source == RESOLVER_SERVICE
        assert result.message.startswith("no definitive answer")

    async def test_aggregate_timeout(self):
        """Providers slower than the aggregate timeout yield UNKNOWN timeout."""
        slow = StubProvider("mojang", premium("mojang"), delay=5)
        pool = ResolverPool([slow], aggregate_timeout_ms=50)

        result = await pool.resolve("Notch")

        assert result.status == ResolutionStatus.UNKNOWN
        assert result.message == "timeout"
        await pool.close()

    async def test_offline_survives_timeout_of_others(self):
        """An OFFLINE answer is still used when another provider times out."""
        offline = StubProvider("ashcon", ResolutionResult.offline("ashcon", "not found"))
        slow = StubProvider("mojang", premium("mojang"), delay=5)
        pool = ResolverPool([offline, slow], aggregate_timeout_ms=50)
        result = await pool.resolve("Nobody")
        assert result.status == ResolutionStatus.OFFLINE
        await pool.close()

    async def test_abandoned_provider_runs_to_completion(self):
        """A provider past the deadline keeps running and its answer is discarded."""
        slow = StubProvider("mojang", premium("mojang"), delay=0.1)
        pool = ResolverPool([slow], aggregate_timeout_ms=20)

        result = await pool.resolve("Notch")

        assert result.message == "timeout"
        assert pool.abandoned == 1
        await asyncio.sleep(0.2)
        assert pool.abandoned == 0
        assert slow.completed == 1

    async def test_abandoned_failure_is_retrieved(self, caplog):
        """Errors from abandoned providers are logged at debug and never escape."""
        slow = StubProvider("mojang", delay=0.05, error=RuntimeError("late boom"))
        pool = ResolverPool([slow], aggregate_timeout_ms=10)

        with caplog.at_level(logging.DEBUG, logger="social.graze.gatekeeper.resolve.pool"):
            await pool.resolve("Notch")
            await asyncio.sleep(0.1)

        assert pool.abandoned == 0
        assert "late boom" in caplog.text

    async def test_provider_exception_is_contained(self):
        """A provider raising does not propagate out of the pool."""
        broken = StubProvider("mojang", error=RuntimeError("boom"))
        working = StubProvider("ashcon", premium("ashcon"), delay=0.01)
        result = await ResolverPool([broken, working]).resolve("Notch")
        assert result.status == ResolutionStatus.PREMIUM

    async def test_mismatch_is_normalized_in_race(self):
        """A mismatched canonical name cannot confirm a premium identity."""
        wrong = StubProvider("mojang", premium("mojang", "Jeb_"))
        result = await ResolverPool([wrong]).resolve("Notch")
        assert result.status == ResolutionStatus.OFFLINE

    async def test_stats(self):
        """Stats expose per-provider counters."""
        provider = StubProvider("mojang")
        pool = ResolverPool([provider])
        await pool.resolve("Notch")
        assert pool.stats() == {"mojang": {"requests": 1}}
