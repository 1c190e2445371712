"""Tests for Configuration bookkeeping, incremental energy and candidate handling."""

from __future__ import annotations

import numpy as np
import pytest

from mpp.configuration import Configuration, ConfigurationDelta
from mpp.energy import ConstantEnergy, EnergyContext, FunctionEnergy
from mpp.energy_cache import unary_key
from mpp.errors import InvalidMarkReferenceError, InvariantViolationError
from mpp.marks import Ellipse


def _ellipse(identifier, x, y, a=3.0):
    return Ellipse(identifier, (x, y, 0.0), (a, a))


def _state(cfg: Configuration):
    return cfg.generation, cfg.snapshot(), sorted(cfg.index_entries(), key=lambda e: e[0])


class TestStructuralChanges:
    def test_generation_counts_each_change_once(self):
        cfg = Configuration()
        cfg.add(_ellipse(0, 10.0, 10.0))
        cfg.add(_ellipse(1, 30.0, 10.0))
        cfg.exchange(0, _ellipse(2, 12.0, 10.0))
        cfg.remove(1)
        assert cfg.generation == 4
        assert cfg.identities() == [2]
        cfg.assert_valid()

    def test_duplicate_add_leaves_configuration_unchanged(self):
        cfg = Configuration([_ellipse(0, 10.0, 10.0)])
        before = _state(cfg)
        with pytest.raises(InvalidMarkReferenceError):
            cfg.add(_ellipse(0, 40.0, 40.0))
        assert _state(cfg) == before

    def test_missing_identity_raises(self):
        cfg = Configuration([_ellipse(0, 10.0, 10.0)])
        before = _state(cfg)
        with pytest.raises(InvalidMarkReferenceError):
            cfg.remove(5)
        with pytest.raises(InvalidMarkReferenceError):
            cfg.exchange(5, _ellipse(6, 1.0, 1.0))
        with pytest.raises(InvalidMarkReferenceError):
            cfg.get(5)
        assert _state(cfg) == before

    def test_exchange_into_existing_identity_raises(self):
        cfg = Configuration([_ellipse(0, 10.0, 10.0), _ellipse(1, 30.0, 30.0)])
        before = _state(cfg)
        with pytest.raises(InvalidMarkReferenceError):
            cfg.exchange(0, _ellipse(1, 12.0, 12.0))
        assert _state(cfg) == before

    def test_exchange_may_reuse_identity(self):
        cfg = Configuration([_ellipse(0, 10.0, 10.0)])
        cfg.exchange(0, _ellipse(0, 11.0, 10.0))
        assert cfg.get(0).center == (11.0, 10.0, 0.0)
        assert cfg.mark_generation(0) == 1
        cfg.assert_valid()

    def test_index_stays_in_sync_under_random_operations(self):
        rng = np.random.default_rng(3)
        cfg = Configuration(max_entries=4)
        for _ in range(400):
            op = rng.integers(3)
            if op == 0 or len(cfg) == 0:
                x, y = rng.uniform(0, 100, size=2)
                cfg.add(_ellipse(cfg.peek_next_identity(), x, y))
            elif op == 1:
                ids = cfg.identities()
                cfg.remove(ids[rng.integers(len(ids))])
            else:
                ids = cfg.identities()
                old = cfg.get(ids[rng.integers(len(ids))])
                cfg.exchange(old.identifier, old.moved(rng.uniform(-3, 3, size=2)))
        cfg.assert_valid()
        assert len(cfg.index) == len(cfg)

    def test_peek_next_identity_never_reuses(self):
        cfg = Configuration([_ellipse(0, 1.0, 1.0), _ellipse(4, 20.0, 20.0)])
        assert cfg.peek_next_identity() == 5
        assert cfg.peek_next_identity() == 5
        cfg.remove(4)
        assert cfg.peek_next_identity() == 5

    def test_snapshot_is_reused_until_mutation(self):
        cfg = Configuration([_ellipse(0, 1.0, 1.0)])
        first = cfg.snapshot()
        assert cfg.snapshot() is first
        cfg.add(_ellipse(1, 30.0, 30.0))
        assert cfg.snapshot() is not first
        assert [m.identifier for m in cfg.snapshot()] == [0, 1]

    def test_neighbors_use_bounding_boxes(self):
        cfg = Configuration([
            _ellipse(0, 10.0, 10.0),
            _ellipse(1, 14.0, 10.0),
            _ellipse(2, 50.0, 50.0),
        ])
        assert cfg.neighbors(0) == {1}
        assert cfg.neighbors(2) == set()


class TestEnergy:
    def test_total_energy_counts_interacting_pairs_only(self):
        cfg = Configuration([
            _ellipse(0, 10.0, 10.0),
            _ellipse(1, 14.0, 10.0),
            _ellipse(2, 50.0, 50.0),
        ])
        energy = ConstantEnergy(unary_value=-1.0, binary_value=0.5)
        assert cfg.total_energy(energy, EnergyContext()) == pytest.approx(-2.5)
        assert cfg.energy == pytest.approx(-2.5)

    def test_total_energy_reuses_cache(self):
        calls = []

        def unary(mark, context):
            calls.append(mark.identifier)
            return 1.0

        cfg = Configuration([_ellipse(0, 10.0, 10.0), _ellipse(1, 40.0, 40.0)])
        energy = FunctionEnergy(unary)
        cfg.total_energy(energy, EnergyContext())
        cfg.total_energy(energy, EnergyContext())
        assert sorted(calls) == [0, 1]

    def test_remove_invalidates_cache_entries(self):
        cfg = Configuration([_ellipse(0, 10.0, 10.0), _ellipse(1, 14.0, 10.0)])
        cfg.total_energy(ConstantEnergy(-1.0, 0.5), EnergyContext())
        assert len(cfg.cache) == 3
        cfg.remove(0)
        assert len(cfg.cache) == 1
        cfg.assert_valid()


class TestCandidates:
    def test_evaluate_does_not_mutate(self):
        cfg = Configuration([_ellipse(0, 10.0, 10.0), _ellipse(1, 14.0, 10.0)])
        energy = ConstantEnergy(-1.0, 0.5)
        context = EnergyContext()
        cfg.total_energy(energy, context)
        before = _state(cfg)
        cache_size = len(cfg.cache)

        candidate = cfg.evaluate(ConfigurationDelta(added=_ellipse(2, 12.0, 12.0)), energy, context)
        assert candidate.energy == pytest.approx(-1.5 - 1.0 + 0.5 + 0.5)
        assert candidate.energy_change == pytest.approx(0.0)
        assert _state(cfg) == before
        assert len(cfg.cache) == cache_size
        assert cfg.energy == pytest.approx(-1.5)

    def test_evaluating_a_removal_leaves_cache_untouched(self):
        cfg = Configuration(
            [_ellipse(i, 10.0 + 20.0 * i, 10.0) for i in range(6)],
            cache_capacity=2,
        )
        energy = ConstantEnergy(-1.0)
        context = EnergyContext()
        cfg.total_energy(energy, context)
        keys_before = list(cfg.cache._od)
        stats_before = cfg.cache.stats.to_dict()

        for delta in (
            ConfigurationDelta(removed=0),
            ConfigurationDelta(removed=1, added=cfg.get(1).moved((1.0, 0.0))),
        ):
            candidate = cfg.evaluate(delta, energy, context)
            assert candidate.energy == pytest.approx(-5.0 if delta.added is None else -6.0)

        assert list(cfg.cache._od) == keys_before
        assert cfg.cache.stats.to_dict() == stats_before
        cfg.assert_valid(energy, context)

    def test_apply_commits_pending_entries(self):
        cfg = Configuration([_ellipse(0, 10.0, 10.0)])
        energy = ConstantEnergy(-1.0, 0.5)
        context = EnergyContext()
        cfg.total_energy(energy, context)

        candidate = cfg.evaluate(ConfigurationDelta(added=_ellipse(1, 13.0, 10.0)), energy, context)
        cfg.apply(candidate)
        assert cfg.generation == 1
        assert cfg.energy == pytest.approx(-1.5)
        assert cfg.cache.peek(unary_key(1), (1,)) == -1.0
        cfg.assert_valid(energy, context)

    def test_move_with_same_identity(self):
        cfg = Configuration([_ellipse(0, 10.0, 10.0), _ellipse(1, 30.0, 10.0)])
        energy = ConstantEnergy(-1.0, 0.5)
        context = EnergyContext()
        cfg.total_energy(energy, context)

        moved = cfg.get(1).moved((-16.0, 0.0))
        candidate = cfg.evaluate(ConfigurationDelta(removed=1, added=moved), energy, context)
        assert candidate.energy == pytest.approx(-1.5)
        cfg.apply(candidate)
        assert cfg.get(1).center == (14.0, 10.0, 0.0)
        cfg.assert_valid(energy, context)

    def test_death_candidate(self):
        cfg = Configuration([_ellipse(0, 10.0, 10.0), _ellipse(1, 14.0, 10.0)])
        energy = ConstantEnergy(-1.0, 0.5)
        context = EnergyContext()
        candidate = cfg.evaluate(ConfigurationDelta(removed=0), energy, context)
        assert candidate.energy == pytest.approx(-1.0)
        cfg.apply(candidate)
        assert cfg.identities() == [1]
        cfg.assert_valid(energy, context)

    def test_stale_candidate_is_an_invariant_violation(self):
        cfg = Configuration([_ellipse(0, 10.0, 10.0)])
        energy = ConstantEnergy(-1.0)
        candidate = cfg.evaluate(ConfigurationDelta(added=_ellipse(1, 40.0, 40.0)), energy, EnergyContext())
        cfg.add(_ellipse(2, 60.0, 60.0))
        with pytest.raises(InvariantViolationError):
            cfg.apply(candidate)

    def test_assert_valid_detects_energy_drift(self):
        cfg = Configuration([_ellipse(0, 10.0, 10.0)])
        energy = ConstantEnergy(-1.0)
        cfg.total_energy(energy, EnergyContext())
        cfg.energy = 5.0
        with pytest.raises(InvariantViolationError):
            cfg.assert_valid(energy, EnergyContext())

    def test_empty_delta_rejected(self):
        with pytest.raises(ValueError):
            ConfigurationDelta()
