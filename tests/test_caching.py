"""
Tests for the in-process caching layer.

Test Coverage:
- CacheStore round-trip, copy isolation, TTL expiry (injected clock)
- LRU eviction and access bookkeeping
- Owner invalidation and metrics
- ResponseCache keys (normalization, context bucketing, first-token collision)
- Complexity-scaled TTL monotonicity and cap
- Thread safety for concurrent access
"""

import threading
import unittest

import pytest

from fakes import FakeClock


@pytest.mark.unit
class TestCacheStore(unittest.TestCase):
    """CacheStore: TTL + LRU key/value store."""

    def test_round_trip(self):
        """A stored payload is returned on lookup before expiry."""
        from journal_rag.caching import CacheStore

        store = CacheStore(max_size=10)
        store.set("k", {"text": "answer", "refs": [1, 2]}, ttl_seconds=60)

        self.assertEqual(store.get("k"), {"text": "answer", "refs": [1, 2]})
        self.assertTrue(store.has("k"))

    def test_payload_is_copied(self):
        """Mutating the caller's object or a returned copy leaves the entry intact."""
        from journal_rag.caching import CacheStore

        store = CacheStore()
        payload = {"refs": [1]}
        store.set("k", payload)
        payload["refs"].append(2)

        first = store.get("k")
        first["refs"].append(3)
        self.assertEqual(store.get("k"), {"refs": [1]})

    def test_ttl_expiry_with_fake_clock(self):
        """Entries expire once the TTL has elapsed."""
        from journal_rag.caching import CacheStore

        clock = FakeClock()
        store = CacheStore(clock=clock)
        store.set("k", "v", ttl_seconds=30)

        clock.advance(30)
        self.assertEqual(store.get("k"), "v")

        clock.advance(1)
        self.assertIsNone(store.get("k"))
        self.assertFalse(store.has("k"))
        self.assertEqual(store.get_metrics()["expirations"], 1)

    def test_default_ttl_applies(self):
        from journal_rag.caching import CacheStore

        clock = FakeClock()
        store = CacheStore(default_ttl_seconds=10, clock=clock)
        store.set("k", "v")
        clock.advance(11)
        self.assertIsNone(store.get("k"))

    def test_lru_eviction(self):
        """The least recently accessed entry goes first."""
        from journal_rag.caching import CacheStore

        store = CacheStore(max_size=2)
        store.set("a", 1)
        store.set("b", 2)
        store.get("a")  # "b" is now least recently used
        store.set("c", 3)

        self.assertEqual(sorted(store.keys()), ["a", "c"])
        self.assertEqual(store.get_metrics()["evictions"], 1)

    def test_access_bookkeeping(self):
        from journal_rag.caching import CacheStore

        clock = FakeClock()
        store = CacheStore(clock=clock)
        store.set("k", "v", complexity_tag="simple", owner_id="u1")
        clock.advance(5)
        store.get("k")
        store.get("k")

        info = store.entry_info("k")
        self.assertEqual(info["access_count"], 2)
        self.assertEqual(info["last_accessed_at"], clock.now)
        self.assertEqual(info["complexity_tag"], "simple")

    def test_none_payload_rejected(self):
        from journal_rag.caching import CacheStore

        with self.assertRaises(ValueError):
            CacheStore().set("k", None)

    def test_invalidate_owner(self):
        from journal_rag.caching import CacheStore

        store = CacheStore()
        store.set("a", 1, owner_id="u1")
        store.set("b", 2, owner_id="u1")
        store.set("c", 3, owner_id="u2")

        self.assertEqual(store.invalidate_owner("u1"), 2)
        self.assertEqual(store.keys(), ["c"])

    def test_metrics(self):
        from journal_rag.caching import CacheStore

        store = CacheStore(max_size=5)
        store.set("k", "v")
        store.get("k")
        store.get("missing")

        metrics = store.get_metrics()
        self.assertEqual(metrics["hits"], 1)
        self.assertEqual(metrics["misses"], 1)
        self.assertAlmostEqual(metrics["hit_rate"], 0.5)
        self.assertEqual(metrics["size"], 1)
        self.assertEqual(metrics["max_size"], 5)

    def test_purge_expired(self):
        from journal_rag.caching import CacheStore

        clock = FakeClock()
        store = CacheStore(clock=clock)
        store.set("short", 1, ttl_seconds=1)
        store.set("long", 2, ttl_seconds=100)
        clock.advance(2)

        self.assertEqual(store.purge_expired(), 1)
        self.assertEqual(store.keys(), ["long"])

    def test_concurrent_access(self):
        """Concurrent writers and readers never corrupt the store."""
        from journal_rag.caching import CacheStore

        store = CacheStore(max_size=50)
        errors = []

        def worker(n):
            try:
                for i in range(200):
                    store.set(f"k{n}-{i % 20}", {"n": n, "i": i})
                    store.get(f"k{n}-{(i + 1) % 20}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertLessEqual(len(store), 50)


@pytest.mark.unit
class TestResponseCache(unittest.TestCase):
    """ResponseCache: query-aware keys and complexity-scaled TTL."""

    def _cache(self, clock=None, **kwargs):
        from journal_rag.caching import CacheStore, ResponseCache

        return ResponseCache(CacheStore(clock=clock), **kwargs)

    def test_round_trip(self):
        from journal_rag.models import ComplexityTier

        cache = self._cache()
        cache.set("How was my week?", "user-1", 3, ComplexityTier.SIMPLE, {"text": "fine"})

        self.assertEqual(cache.get("how was my week", "user-1", 3, ComplexityTier.SIMPLE), {"text": "fine"})

    def test_key_varies_by_owner_bucket_and_tier(self):
        from journal_rag.models import ComplexityTier

        cache = self._cache()
        cache.set("How was my week?", "user-1", 3, ComplexityTier.SIMPLE, {"text": "fine"})

        self.assertIsNone(cache.get("How was my week?", "user-2", 3, ComplexityTier.SIMPLE))
        self.assertIsNone(cache.get("How was my week?", "user-1", 7, ComplexityTier.SIMPLE))
        self.assertIsNone(cache.get("How was my week?", "user-1", 3, ComplexityTier.COMPLEX))
        # 3 and 4 turns share the 0-4 bucket
        self.assertIsNotNone(cache.get("How was my week?", "user-1", 4, ComplexityTier.SIMPLE))

    def test_first_tokens_collision(self):
        """Queries sharing their first ten tokens share a key."""
        cache = self._cache()
        first = "one two three four five six seven eight nine ten eleven"
        second = "one two three four five six seven eight nine ten twelve"

        self.assertEqual(
            cache.make_key(first, "u", 0, "simple"),
            cache.make_key(second, "u", 0, "simple"),
        )

    def test_ttl_monotonic_in_complexity(self):
        """very_complex keeps entries longer than simple, within the cap."""
        from journal_rag.models import ComplexityTier

        cache = self._cache(base_ttl_seconds=300, max_ttl_seconds=1800)
        ttls = [cache.compute_ttl(tier) for tier in ComplexityTier]

        self.assertEqual(ttls, sorted(ttls))
        self.assertGreater(cache.compute_ttl(ComplexityTier.VERY_COMPLEX), cache.compute_ttl(ComplexityTier.SIMPLE))
        self.assertEqual(cache.compute_ttl(ComplexityTier.SIMPLE), 150)
        self.assertEqual(cache.compute_ttl(ComplexityTier.COMPLEX, analytical=True), 900)

    def test_ttl_capped(self):
        from journal_rag.models import ComplexityTier

        cache = self._cache(base_ttl_seconds=1000, max_ttl_seconds=1800)
        self.assertEqual(cache.compute_ttl(ComplexityTier.VERY_COMPLEX, analytical=True), 1800)

    def test_entry_expires_after_tier_ttl(self):
        from journal_rag.models import ComplexityTier

        clock = FakeClock()
        cache = self._cache(clock=clock)
        ttl = cache.set("hello there", "u", 0, ComplexityTier.SIMPLE, {"text": "hi"})

        clock.advance(ttl)
        self.assertTrue(cache.has("hello there", "u", 0, ComplexityTier.SIMPLE))
        clock.advance(1)
        self.assertIsNone(cache.get("hello there", "u", 0, ComplexityTier.SIMPLE))

    def test_invalidate_owner(self):
        from journal_rag.models import ComplexityTier

        cache = self._cache()
        cache.set("a question", "u1", 0, ComplexityTier.SIMPLE, {"text": "x"})
        cache.set("b question", "u2", 0, ComplexityTier.SIMPLE, {"text": "y"})

        self.assertEqual(cache.invalidate_owner("u1"), 1)
        self.assertIsNone(cache.get("a question", "u1", 0, ComplexityTier.SIMPLE))
        self.assertIsNotNone(cache.get("b question", "u2", 0, ComplexityTier.SIMPLE))
