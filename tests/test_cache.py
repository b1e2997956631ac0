"""Tests for the bounded TTL cache."""

import pytest

from auditchain.core import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestTTLCache:

    def test_get_set(self):
        cache = TTLCache(capacity=10, ttl_seconds=60)
        cache.set("k", "v")
        assert cache.get("k") == "v"
        assert "k" in cache
        assert cache.get("missing", "default") == "default"

    def test_capacity_evicts_least_recently_used(self):
        cache = TTLCache(capacity=2, ttl_seconds=60)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")  # "b" is now oldest
        cache.set("c", 3)
        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert cache.evictions == 1
        assert len(cache) == 2

    def test_expiry(self):
        clock = FakeClock()
        cache = TTLCache(capacity=10, ttl_seconds=30, clock=clock)
        cache.set("k", "v")
        clock.now += 29
        assert cache.get("k") == "v"
        clock.now += 1
        assert cache.get("k") is None
        assert cache.expirations == 1

    def test_add_only_when_absent(self):
        clock = FakeClock()
        cache = TTLCache(capacity=10, ttl_seconds=30, clock=clock)
        assert cache.add("k")
        assert not cache.add("k")
        clock.now += 31
        assert cache.add("k")

    def test_purge_expired(self):
        clock = FakeClock()
        cache = TTLCache(capacity=10, ttl_seconds=30, clock=clock)
        cache.set("old", 1)
        clock.now += 20
        cache.set("new", 2)
        clock.now += 15
        assert cache.purge_expired() == 1
        assert len(cache) == 1
        assert cache.get("new") == 2

    def test_invalid_bounds(self):
        with pytest.raises(ValueError):
            TTLCache(capacity=0, ttl_seconds=1)
        with pytest.raises(ValueError):
            TTLCache(capacity=1, ttl_seconds=0)
