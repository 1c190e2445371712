"""Tests for the generation-keyed LRU energy cache."""

from __future__ import annotations

import pytest

from mpp.energy_cache import EnergyCache, pair_key, unary_key
from mpp.errors import CacheCorruptionError


class _Counter:
    def __init__(self, value=1.0):
        self.calls = 0
        self.value = value

    def __call__(self):
        self.calls += 1
        return self.value


class TestEnergyCache:
    def test_compute_called_once_per_key_and_generation(self):
        cache = EnergyCache()
        compute = _Counter(2.5)
        assert cache.get_or_compute(unary_key(1), (0,), compute) == 2.5
        assert cache.get_or_compute(unary_key(1), (0,), compute) == 2.5
        assert compute.calls == 1
        assert cache.stats.hits == 1
        assert cache.stats.misses == 1

    def test_new_generation_is_a_miss_and_replaces_entry(self):
        cache = EnergyCache()
        first = _Counter(1.0)
        second = _Counter(3.0)
        cache.get_or_compute(unary_key(1), (0,), first)
        assert cache.get_or_compute(unary_key(1), (4,), second) == 3.0
        assert second.calls == 1
        assert len(cache) == 1
        assert cache.peek(unary_key(1), (0,)) is None

    def test_invalidate_drops_unary_and_pairs(self):
        cache = EnergyCache()
        cache.store(unary_key(1), (0,), 1.0)
        cache.store(unary_key(2), (0,), 1.0)
        cache.store(pair_key(2, 1), (0, 0), 0.5)
        assert cache.invalidate(1) == 2
        assert len(cache) == 1
        assert unary_key(2) in cache
        cache.check_consistency()

        compute = _Counter(7.0)
        assert cache.get_or_compute(unary_key(1), (0,), compute) == 7.0
        assert compute.calls == 1

    def test_pair_key_is_canonical(self):
        assert pair_key(5, 2) == pair_key(2, 5) == ("pair", 2, 5)

    def test_lru_eviction(self):
        cache = EnergyCache(capacity=2)
        cache.store(unary_key(1), (0,), 1.0)
        cache.store(unary_key(2), (0,), 2.0)
        cache.get_or_compute(unary_key(1), (0,), _Counter())  # touch 1
        cache.store(unary_key(3), (0,), 3.0)
        assert unary_key(1) in cache
        assert unary_key(2) not in cache
        assert cache.stats.evictions == 1
        cache.check_consistency()

    def test_failed_compute_stores_nothing(self):
        cache = EnergyCache()

        def boom():
            raise ArithmeticError("bad")

        with pytest.raises(ArithmeticError):
            cache.get_or_compute(unary_key(1), (0,), boom)
        assert len(cache) == 0

    def test_peek_does_not_count(self):
        cache = EnergyCache()
        cache.store(unary_key(1), (0,), 1.0)
        assert cache.peek(unary_key(1), (0,)) == 1.0
        assert cache.stats.hits == 0 and cache.stats.misses == 0

    def test_corruption_is_detected(self):
        cache = EnergyCache()
        cache.store(unary_key(1), (0,), 1.0)
        cache._by_identity[99] = {unary_key(99)}
        with pytest.raises(CacheCorruptionError):
            cache.check_consistency()

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            EnergyCache(capacity=0)
