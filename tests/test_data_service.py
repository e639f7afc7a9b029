# tests/test_data_service.py
"""
Unit tests for the resilient exploit data service.
"""
import asyncio
import time

import pytest

from security_oracle.services.cache import TTLCache
from security_oracle.services.circuit import CircuitStatus
from security_oracle.services.data_service import ResilientDataService, merge_records
from security_oracle.services.records import ExploitRecord


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSource:
    """Source stub with a call counter."""

    def __init__(self, source_id, records=None, error=None, delay=0.0):
        self.source_id = source_id
        self.records = records or []
        self.error = error
        self.delay = delay
        self.calls = 0

    def fetch(self, protocol=None, chain=None):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.records


def exploit(protocol="Aave", chain="Ethereum", timestamp="2024-03-01T00:00:00Z", description="Oracle manipulation"):
    return ExploitRecord(
        protocol=protocol,
        chain=chain,
        severity="high",
        loss_usd=1_000_000,
        timestamp=timestamp,
        description=description,
    )


def make_service(sources, clock=None, **kwargs):
    options = {"failure_threshold": 3, "cooldown_seconds": 60, "source_timeout": 1.0, "deadline_seconds": 2.0}
    options.update(kwargs)
    return ResilientDataService(sources, clock=clock or FakeClock(), **options)


class TestMergeRecords:
    """Test deduplication and ordering."""

    def test_deduplicates_across_sources(self):
        """The same incident reported twice appears once."""
        a = exploit()
        b = exploit(protocol="AAVE", chain="ethereum")
        merged = merge_records([[a], [b]])
        assert len(merged) == 1

    def test_sorted_newest_first(self):
        """Records are ordered by timestamp descending."""
        old = exploit(timestamp="2023-01-01T00:00:00Z")
        new = exploit(timestamp="2024-06-01T00:00:00Z", description="Reentrancy")
        mid = exploit(timestamp="2023-09-01T00:00:00Z", description="Flash loan")
        merged = merge_records([[old, new], [mid]])
        assert [r.timestamp for r in merged] == [
            "2024-06-01T00:00:00.000Z",
            "2023-09-01T00:00:00.000Z",
            "2023-01-01T00:00:00.000Z",
        ]


class TestResilientDataService:
    """Test fan-out, fallback and circuit integration."""

    def test_merges_all_sources(self):
        """Records from every healthy source are combined."""
        first = FakeSource("a", [exploit(description="one")])
        second = FakeSource("b", [exploit(description="two", timestamp="2024-05-01T00:00:00Z")])
        service = make_service([first, second])

        records = asyncio.run(service.fetch_exploits())

        assert [r.description for r in records] == ["two", "one"]

    def test_all_sources_failing_returns_empty(self):
        """Total upstream failure yields [] instead of an exception."""
        service = make_service([
            FakeSource("a", error=ConnectionError("down")),
            FakeSource("b", error=ValueError("bad json")),
        ])

        assert asyncio.run(service.fetch_exploits()) == []

    def test_one_failing_source_does_not_block_others(self):
        """A failing source contributes nothing; the rest still answer."""
        healthy = FakeSource("a", [exploit()])
        service = make_service([FakeSource("b", error=RuntimeError("boom")), healthy])

        records = asyncio.run(service.fetch_exploits())

        assert len(records) == 1
        assert service.breakers["b"].state.consecutive_failures == 1
        assert service.breakers["a"].state.consecutive_failures == 0

    def test_slow_source_times_out(self):
        """A source slower than its timeout counts as a failure."""
        slow = FakeSource("slow", [exploit()], delay=0.3)
        fast = FakeSource("fast", [exploit(description="fast")])
        service = make_service([slow, fast], source_timeout=0.05)

        records = asyncio.run(service.fetch_exploits())

        assert [r.description for r in records] == ["fast"]
        assert service.breakers["slow"].state.consecutive_failures == 1

    def test_source_past_deadline_counts_as_failure(self):
        """A source cut off by the overall deadline is recorded as failed."""
        slow = FakeSource("slow", [exploit()], delay=0.3)
        service = make_service([slow], source_timeout=0.1, deadline_seconds=0.1)

        assert asyncio.run(service.fetch_exploits()) == []
        assert service.breakers["slow"].state.consecutive_failures == 1

    def test_deadline_failures_open_circuit(self):
        """Repeated deadline overruns trip the circuit like any other failure."""
        slow = FakeSource("slow", [exploit()], delay=0.2)
        service = make_service([slow], source_timeout=0.05, deadline_seconds=0.05)

        for protocol in ("p1", "p2", "p3"):
            asyncio.run(service.fetch_exploits(protocol=protocol))

        assert service.breakers["slow"].status == CircuitStatus.OPEN

    def test_open_circuit_skips_source(self):
        """After three failures the source is not called during cooldown."""
        clock = FakeClock()
        failing = FakeSource("a", error=ConnectionError("down"))
        service = make_service([failing], clock=clock)

        for protocol in ("p1", "p2", "p3"):
            asyncio.run(service.fetch_exploits(protocol=protocol))
        assert failing.calls == 3
        assert service.breakers["a"].status == CircuitStatus.OPEN

        assert asyncio.run(service.fetch_exploits(protocol="p4")) == []
        assert failing.calls == 3

    def test_half_open_allows_single_trial(self):
        """Concurrent requests after cooldown produce exactly one trial call."""
        clock = FakeClock()
        source = FakeSource("a", error=ConnectionError("down"))
        service = make_service([source], clock=clock)
        for protocol in ("p1", "p2", "p3"):
            asyncio.run(service.fetch_exploits(protocol=protocol))

        clock.advance(60)
        source.error = None
        source.records = [exploit()]
        source.delay = 0.05

        async def concurrent():
            return await asyncio.gather(
                service.fetch_exploits(protocol="x"),
                service.fetch_exploits(protocol="y"),
            )

        results = asyncio.run(concurrent())

        assert source.calls == 4
        assert sorted(len(r) for r in results) == [0, 1]
        assert service.breakers["a"].status == CircuitStatus.CLOSED

    def test_failed_trial_reopens(self):
        """A failed trial reopens the circuit."""
        clock = FakeClock()
        source = FakeSource("a", error=ConnectionError("down"))
        service = make_service([source], clock=clock)
        for protocol in ("p1", "p2", "p3"):
            asyncio.run(service.fetch_exploits(protocol=protocol))

        clock.advance(60)
        asyncio.run(service.fetch_exploits(protocol="trial"))

        assert source.calls == 4
        assert service.breakers["a"].status == CircuitStatus.OPEN

    def test_results_cached_per_filter(self):
        """Repeat queries within the TTL do not hit the sources."""
        clock = FakeClock()
        source = FakeSource("a", [exploit()])
        service = make_service([source], clock=clock, cache_ttl_seconds=300)

        asyncio.run(service.fetch_exploits(protocol="Aave"))
        asyncio.run(service.fetch_exploits(protocol="aave "))
        assert source.calls == 1

        asyncio.run(service.fetch_exploits(protocol="aave", chain="ethereum"))
        assert source.calls == 2

        clock.advance(301)
        asyncio.run(service.fetch_exploits(protocol="aave"))
        assert source.calls == 3

    def test_total_failure_not_cached(self):
        """An empty result caused by outages is not cached."""
        source = FakeSource("a", error=ConnectionError("down"))
        service = make_service([source])

        asyncio.run(service.fetch_exploits())
        source.error = None
        source.records = [exploit()]

        assert len(asyncio.run(service.fetch_exploits())) == 1

    def test_health_reports_each_source(self):
        """health exposes one circuit summary per source."""
        service = make_service([FakeSource("a"), FakeSource("b")])
        health = service.health()
        assert set(health) == {"a", "b"}
        assert health["a"]["status"] == "CLOSED"


class TestTTLCache:
    """Test the generic TTL cache."""

    def test_expiry_and_stats(self):
        """Entries expire and hits/misses are counted."""
        clock = FakeClock()
        cache = TTLCache(10, clock=clock)
        cache.set("k", 1)

        assert cache.get("k") == 1
        clock.advance(10)
        assert cache.get("k") is None

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == pytest.approx(0.5)
        assert stats["size"] == 0

    def test_expired_entries_swept_on_set(self):
        """Keys that are never read again do not accumulate."""
        clock = FakeClock()
        cache = TTLCache(300, clock=clock)
        for i in range(200):
            cache.set(f"key{i}", i)

        clock.advance(10_000)
        cache.set("fresh", 1)

        assert cache.stored() == 1
        assert len(cache) == 1

    def test_size_capped(self):
        """The entry closest to expiry is dropped past max_entries."""
        clock = FakeClock()
        cache = TTLCache(300, clock=clock, max_entries=3)
        for i in range(5):
            cache.set(f"key{i}", i)
            clock.advance(1)

        assert cache.stored() == 3
        assert cache.get("key0") is None
        assert cache.get("key1") is None
        assert cache.get("key4") == 4

    def test_reset_key_moves_to_back(self):
        """Refreshing a key protects it from the size cap."""
        cache = TTLCache(300, clock=FakeClock(), max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 3)
        cache.set("c", 4)

        assert cache.get("a") == 3
        assert cache.get("b") is None


class TestExploitCacheGrowth:
    """Test that caller-chosen filters cannot grow the exploit cache forever."""

    def test_distinct_filters_expire(self):
        """Entries for one-off protocol filters are swept after the TTL."""
        clock = FakeClock()
        service = make_service([FakeSource("a", [exploit()])], clock=clock, cache_ttl_seconds=300)
        for i in range(200):
            asyncio.run(service.fetch_exploits(f"proto{i}"))
        assert service.cache.stored() == 200

        clock.advance(10_000)
        asyncio.run(service.fetch_exploits("aave"))

        assert service.cache.stored() == 1
