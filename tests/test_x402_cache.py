# tests/test_x402_cache.py
"""
Unit tests for the payment verification cache.
"""
import threading

from security_oracle.x402.cache import VerificationCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestVerificationCache:
    """Test signature caching and expiry."""

    def test_miss_on_empty_cache(self):
        """Unknown signatures are misses."""
        cache = VerificationCache()
        assert cache.get("sig", "/exploits") is None
        assert cache.misses == 1

    def test_hit_after_put(self):
        """A stored signature is returned for its resource."""
        clock = FakeClock()
        cache = VerificationCache(ttl_seconds=3600, clock=clock)
        cache.put("sig", "/exploits")

        record = cache.get("sig", "/exploits")

        assert record is not None
        assert record.signature == "sig"
        assert record.resource == "/exploits"
        assert record.expires_at == 1000.0 + 3600
        assert cache.hits == 1

    def test_other_resource_not_honored(self):
        """A signature only authorizes the resource it was verified for."""
        cache = VerificationCache()
        cache.put("sig", "/exploits")

        assert cache.get("sig", "/approval-audit") is None
        # The original record survives
        assert cache.get("sig", "/exploits") is not None

    def test_expired_record_evicted(self):
        """After the TTL the record is gone."""
        clock = FakeClock()
        cache = VerificationCache(ttl_seconds=3600, clock=clock)
        cache.put("sig", "/exploits")

        clock.advance(3599)
        assert cache.get("sig", "/exploits") is not None

        clock.advance(1)
        assert cache.get("sig", "/exploits") is None
        assert cache.stats()["verified_signatures"] == 0

    def test_put_refreshes_expiry(self):
        """Re-verifying a signature is a last-write-wins upsert."""
        clock = FakeClock()
        cache = VerificationCache(ttl_seconds=100, clock=clock)
        cache.put("sig", "/exploits")
        clock.advance(90)
        cache.put("sig", "/approval-audit")
        clock.advance(50)

        assert cache.get("sig", "/exploits") is None
        assert cache.get("sig", "/approval-audit") is not None
        assert cache.stats()["verified_signatures"] == 1

    def test_purge_expired(self):
        """purge_expired drops only expired records."""
        clock = FakeClock()
        cache = VerificationCache(ttl_seconds=10, clock=clock)
        cache.put("old", "/exploits")
        clock.advance(5)
        cache.put("new", "/exploits")
        clock.advance(6)

        assert cache.purge_expired() == 1
        assert cache.get("new", "/exploits") is not None

    def test_expired_records_swept_on_put(self):
        """Signatures never presented again do not accumulate."""
        clock = FakeClock()
        cache = VerificationCache(ttl_seconds=3600, clock=clock)
        for i in range(1000):
            cache.put(f"sig-{i}", "/exploits")

        clock.advance(7200)
        assert cache.stats()["verified_signatures"] == 0

        cache.put("fresh", "/exploits")
        assert len(cache) == 1
        assert cache.get("fresh", "/exploits") is not None

    def test_sweep_runs_at_most_once_per_interval(self):
        """Writes inside the sweep interval leave expired records for later."""
        clock = FakeClock()
        cache = VerificationCache(ttl_seconds=10, clock=clock, sweep_interval_seconds=60)
        cache.put("old", "/exploits")
        clock.advance(30)
        cache.put("new", "/exploits")
        assert len(cache) == 2

        clock.advance(30)
        cache.put("newer", "/exploits")
        assert len(cache) == 1

    def test_concurrent_puts(self):
        """Concurrent writers leave one record per signature."""
        cache = VerificationCache()

        def writer(i):
            for _ in range(200):
                cache.put(f"sig-{i % 5}", "/exploits")

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert cache.stats()["verified_signatures"] == 5

    def test_clear(self):
        """clear empties the cache and counters."""
        cache = VerificationCache()
        cache.put("sig", "/exploits")
        cache.get("sig", "/exploits")
        cache.clear()

        assert cache.stats() == {"verified_signatures": 0, "verification_hits": 0, "verification_misses": 0}
