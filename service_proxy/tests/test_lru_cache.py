"""
Unit tests for the TTL/LRU cache-aside store.
"""

import threading

import pytest

from shared.metrics import MetricsCollector
from service_proxy.app.caching import CacheEntry, TTLLRUCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLLRUCache(max_entries=3, default_ttl=30, clock=clock)


def put(cache: TTLLRUCache, key: str, payload="{}", **kwargs) -> CacheEntry:
    kwargs.setdefault("content_type", "application/json")
    kwargs.setdefault("is_binary", False)
    entry = cache.make_entry(key, payload, **kwargs)
    cache.set(key, entry)
    return entry


class TestTTLLRUCache:
    """Expiry, eviction and bookkeeping."""

    def test_get_after_set_returns_entry_until_ttl(self, cache, clock):
        entry = put(cache, "GET:a", '{"a": 1}')

        assert cache.get("GET:a") is entry
        clock.advance(29)
        assert cache.get("GET:a") is entry
        clock.advance(1)
        assert cache.get("GET:a") is None

    def test_expired_entry_is_dropped(self, cache, clock):
        put(cache, "GET:a", ttl=5)
        clock.advance(5)

        assert cache.get("GET:a") is None
        assert len(cache) == 0
        assert cache.stats()["expirations"] == 1

    def test_ttl_is_capped_at_sixty_seconds(self, cache, clock):
        entry = put(cache, "GET:img", b"\x89PNG", content_type="image/png", is_binary=True, ttl=600)

        assert entry.ttl == 60
        clock.advance(60)
        assert cache.get("GET:img") is None

    def test_least_recently_used_is_evicted(self, cache):
        put(cache, "a")
        put(cache, "b")
        put(cache, "c")
        cache.get("a")  # b is now the oldest
        put(cache, "d")

        assert cache.get("b") is None
        assert cache.get("a") is not None
        assert cache.get("c") is not None
        assert cache.get("d") is not None
        assert cache.stats()["evictions"] == 1

    def test_overwrite_is_last_write_wins(self, cache):
        put(cache, "a", "first")
        second = put(cache, "a", "second")

        assert cache.get("a") is second
        assert len(cache) == 1

    def test_entry_key_must_match(self, cache):
        entry = cache.make_entry("a", "x", content_type="text/plain", is_binary=False)
        with pytest.raises(ValueError):
            cache.set("b", entry)

    def test_entries_are_immutable(self, cache):
        entry = put(cache, "a")
        with pytest.raises(Exception):
            entry.payload = "changed"

    def test_stats_track_hits_and_misses(self, cache):
        put(cache, "a")
        cache.get("a")
        cache.get("missing")

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_ratio"] == 0.5
        assert stats["size"] == 1

    def test_clear_and_delete(self, cache):
        put(cache, "a")
        put(cache, "b")

        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert len(cache) == 0

    def test_records_metrics(self, clock):
        metrics = MetricsCollector("proxy")
        cache = TTLLRUCache(max_entries=1, clock=clock, metrics=metrics, name="unit")
        put(cache, "a")
        put(cache, "b")
        cache.get("b")
        cache.get("a")

        sample = metrics.registry.get_sample_value
        assert sample("cache_hits_total", {"cache_type": "unit"}) == 1.0
        assert sample("cache_misses_total", {"cache_type": "unit"}) == 1.0
        assert sample("cache_evictions_total", {"cache_type": "unit"}) == 1.0

    def test_concurrent_writers_never_exceed_capacity(self, clock):
        cache = TTLLRUCache(max_entries=50, clock=clock)
        torn = []

        def writer(offset: int):
            for i in range(200):
                key = f"k{(offset + i) % 120}"
                cache.set(key, cache.make_entry(key, key, content_type="text/plain", is_binary=False))
                found = cache.get(key)
                if found is not None and found.payload != found.key:
                    torn.append(found)

        threads = [threading.Thread(target=writer, args=(n * 7,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache) == 50
        assert torn == []

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            TTLLRUCache(max_entries=0)
