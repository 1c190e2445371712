"""
Configuration: the evolving set of marks.

A Configuration owns its SpatialIndex and EnergyCache and keeps them in step
with the marks. Every structural change (add, remove, exchange, or applying
an accepted candidate) bumps `generation` exactly once. Candidate evaluation
is read-only: a rejected candidate leaves no trace on marks, index,
generation, or cached values.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from mpp.energy import EnergyContext, EnergyFunction
from mpp.energy_cache import (
    DEFAULT_CAPACITY,
    CacheKey,
    EnergyCache,
    Generation,
    pair_key,
    unary_key,
)
from mpp.errors import (
    IndexDesyncError,
    InvalidMarkReferenceError,
    InvariantViolationError,
    SpatialIndexError,
)
from mpp.geometry import BoundingBox
from mpp.marks import Mark
from mpp.spatial_index import DEFAULT_MAX_ENTRIES, SpatialIndex

logger = logging.getLogger(__name__)

ENERGY_TOLERANCE = 1e-6


@dataclass(frozen=True)
class ConfigurationDelta:
    """Structural change: remove one identity and/or add one mark."""

    removed: Optional[int] = None
    added: Optional[Mark] = None

    def __post_init__(self):
        if self.removed is None and self.added is None:
            raise ValueError("ConfigurationDelta must remove or add something")

    @property
    def kind(self) -> str:
        if self.removed is None:
            return "add"
        if self.added is None:
            return "remove"
        return "exchange"

    @property
    def changed_identities(self) -> Tuple[int, ...]:
        """Identities touched by the change; a move that keeps its identity counts once."""
        changed = [] if self.removed is None else [self.removed]
        if self.added is not None and self.added.identifier not in changed:
            changed.append(self.added.identifier)
        return tuple(changed)


@dataclass
class Candidate:
    """Result of evaluating a delta against a configuration, not yet applied."""

    delta: ConfigurationDelta
    energy: float
    energy_before: float
    base_generation: int
    pending: List[Tuple[CacheKey, Generation, float]] = field(default_factory=list)

    @property
    def energy_change(self) -> float:
        return self.energy - self.energy_before


class Configuration:
    """Marks unique by identity, iterated in insertion order."""

    def __init__(
        self,
        marks: Iterable[Mark] = (),
        max_entries: int = DEFAULT_MAX_ENTRIES,
        cache_capacity: int = DEFAULT_CAPACITY,
    ):
        self.index = SpatialIndex(max_entries=max_entries)
        self.cache = EnergyCache(capacity=cache_capacity)
        self.generation = 0
        self.energy: Optional[float] = None
        self._marks: Dict[int, Mark] = {}
        self._mark_generation: Dict[int, int] = {}
        self._next_identity = 0
        self._snapshot: Optional[Tuple[Mark, ...]] = None
        for mark in marks:
            if mark.identifier in self._marks:
                raise InvalidMarkReferenceError(f"Duplicate identity {mark.identifier}")
            self._install(mark)

    # ─── Read access ────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._marks)

    def __contains__(self, identity: object) -> bool:
        return identity in self._marks

    def __iter__(self) -> Iterator[Mark]:
        return iter(self._marks.values())

    def get(self, identity: int) -> Mark:
        try:
            return self._marks[identity]
        except KeyError:
            raise InvalidMarkReferenceError(f"No mark with identity {identity}") from None

    def identities(self) -> List[int]:
        return list(self._marks)

    def snapshot(self) -> Tuple[Mark, ...]:
        """Ordered tuple of the live marks; reused until the next mutation."""
        if self._snapshot is None:
            self._snapshot = tuple(self._marks.values())
        return self._snapshot

    def index_entries(self) -> List[Tuple[int, BoundingBox]]:
        return self.index.entries()

    def mark_generation(self, identity: int) -> int:
        try:
            return self._mark_generation[identity]
        except KeyError:
            raise InvalidMarkReferenceError(f"No mark with identity {identity}") from None

    def neighbors(self, identity: int) -> Set[int]:
        """Identities whose boxes overlap the box of `identity`."""
        mark = self.get(identity)
        found = self.index.intersects_with(mark.bounding_box())
        found.discard(identity)
        return found

    def peek_next_identity(self) -> int:
        """Identity a new mark should take. Never reuses a previously seen identity."""
        return self._next_identity

    # ─── Structural changes ─────────────────────────────────────────────────

    def add(self, mark: Mark) -> None:
        if mark.identifier in self._marks:
            raise InvalidMarkReferenceError(f"Identity {mark.identifier} is already present")
        self.generation += 1
        self._install(mark)
        self.energy = None

    def remove(self, identity: int) -> Mark:
        if identity not in self._marks:
            raise InvalidMarkReferenceError(f"Cannot remove missing identity {identity}")
        self.generation += 1
        mark = self._uninstall(identity)
        self.cache.invalidate(identity)
        self.energy = None
        return mark

    def exchange(self, old_identity: int, new_mark: Mark) -> Mark:
        """Atomically replace one mark by another (which may reuse its identity)."""
        self._check_delta(ConfigurationDelta(removed=old_identity, added=new_mark))
        self.generation += 1
        old = self._uninstall(old_identity)
        self.cache.invalidate(old_identity)
        self._install(new_mark)
        self.energy = None
        return old

    def _check_delta(self, delta: ConfigurationDelta) -> None:
        if delta.removed is not None and delta.removed not in self._marks:
            raise InvalidMarkReferenceError(f"Cannot remove missing identity {delta.removed}")
        if delta.added is not None:
            new_id = delta.added.identifier
            if new_id in self._marks and new_id != delta.removed:
                raise InvalidMarkReferenceError(f"Identity {new_id} is already present")

    def _install(self, mark: Mark) -> None:
        try:
            self.index.insert(mark.identifier, mark.bounding_box())
        except SpatialIndexError as exc:
            raise IndexDesyncError(
                f"Index rejected identity {mark.identifier} absent from the marks: {exc}"
            ) from exc
        self._marks[mark.identifier] = mark
        self._mark_generation[mark.identifier] = self.generation
        self._next_identity = max(self._next_identity, mark.identifier + 1)
        self._snapshot = None

    def _uninstall(self, identity: int) -> Mark:
        mark = self._marks[identity]
        try:
            self.index.remove(identity, mark.bounding_box())
        except SpatialIndexError as exc:
            raise IndexDesyncError(
                f"Index has no matching entry for live identity {identity}: {exc}"
            ) from exc
        del self._marks[identity]
        del self._mark_generation[identity]
        self._snapshot = None
        return mark

    # ─── Energy ─────────────────────────────────────────────────────────────

    def _unary(self, mark: Mark, energy_fn: EnergyFunction, context: EnergyContext) -> float:
        generation = (self._mark_generation[mark.identifier],)
        return self.cache.get_or_compute(
            unary_key(mark.identifier), generation, lambda: energy_fn.unary(mark, context),
        )

    def _pair_generation(self, a: int, b: int) -> Generation:
        lo, hi = (a, b) if a <= b else (b, a)
        return (self._mark_generation[lo], self._mark_generation[hi])

    def _binary(self, a: Mark, b: Mark, energy_fn: EnergyFunction, context: EnergyContext) -> float:
        generation = self._pair_generation(a.identifier, b.identifier)
        return self.cache.get_or_compute(
            pair_key(a.identifier, b.identifier),
            generation,
            lambda: energy_fn.binary(a, b, context),
        )

    def _contribution(self, identity: int, energy_fn: EnergyFunction, context: EnergyContext) -> float:
        """Unary term of a live mark plus all its pair terms.

        Reads cached values with `peek` and computes misses without storing them,
        so the cache keeps its contents, LRU order and stats.
        """
        mark = self._marks[identity]
        generation = (self._mark_generation[identity],)
        total = self.cache.peek(unary_key(identity), generation)
        if total is None:
            total = energy_fn.unary(mark, context)
        if energy_fn.has_pairwise:
            for other in self.index.intersects_with(mark.bounding_box()):
                if other == identity:
                    continue
                value = self.cache.peek(pair_key(identity, other), self._pair_generation(identity, other))
                if value is None:
                    value = energy_fn.binary(mark, self._marks[other], context)
                total += value
        return total

    def total_energy(self, energy_fn: EnergyFunction, context: EnergyContext) -> float:
        """Sum of unary terms and pair terms over spatially interacting pairs."""
        total = 0.0
        for identity, mark in self._marks.items():
            total += self._unary(mark, energy_fn, context)
            if not energy_fn.has_pairwise:
                continue
            for other in self.index.intersects_with(mark.bounding_box()):
                if other > identity:
                    total += self._binary(mark, self._marks[other], energy_fn, context)
        self.energy = total
        return total

    def evaluate(
        self,
        delta: ConfigurationDelta,
        energy_fn: EnergyFunction,
        context: EnergyContext,
    ) -> Candidate:
        """Energy the configuration would have after `delta`, without applying it."""
        self._check_delta(delta)
        if self.energy is None:
            self.total_energy(energy_fn, context)
        before = self.energy
        after = before

        if delta.removed is not None:
            after -= self._contribution(delta.removed, energy_fn, context)

        pending: List[Tuple[CacheKey, Generation, float]] = []
        if delta.added is not None:
            mark = delta.added
            new_id = mark.identifier
            new_generation = self.generation + 1

            key = unary_key(new_id)
            value = self.cache.peek(key, (new_generation,))
            if value is None:
                value = energy_fn.unary(mark, context)
            pending.append((key, (new_generation,), value))
            after += value

            if energy_fn.has_pairwise:
                for other in self.index.intersects_with(mark.bounding_box()):
                    if other == delta.removed or other == new_id:
                        continue
                    gens = {new_id: new_generation, other: self._mark_generation[other]}
                    key = pair_key(new_id, other)
                    generation = (gens[key[1]], gens[key[2]])
                    value = self.cache.peek(key, generation)
                    if value is None:
                        value = energy_fn.binary(mark, self._marks[other], context)
                    pending.append((key, generation, value))
                    after += value

        return Candidate(
            delta=delta,
            energy=after,
            energy_before=before,
            base_generation=self.generation,
            pending=pending,
        )

    def apply(self, candidate: Candidate) -> None:
        """Commit an evaluated candidate."""
        if candidate.base_generation != self.generation:
            raise InvariantViolationError(
                f"Candidate built at generation {candidate.base_generation} "
                f"applied at generation {self.generation}"
            )
        delta = candidate.delta
        self._check_delta(delta)

        self.generation += 1
        if delta.removed is not None:
            self._uninstall(delta.removed)
            self.cache.invalidate(delta.removed)
        if delta.added is not None:
            self.cache.invalidate(delta.added.identifier)
            self._install(delta.added)
        for key, generation, value in candidate.pending:
            self.cache.store(key, generation, value)
        self.energy = candidate.energy

    # ─── Validation ─────────────────────────────────────────────────────────

    def assert_valid(
        self,
        energy_fn: Optional[EnergyFunction] = None,
        context: Optional[EnergyContext] = None,
        tolerance: float = ENERGY_TOLERANCE,
    ) -> None:
        """Check index/marks sync, cache bookkeeping and, optionally, the energy.

        The energy check recomputes everything from scratch without the cache
        and compares with the incrementally maintained value.
        """
        self.index.check_structure()
        indexed = dict(self.index.entries())
        if set(indexed) != set(self._marks):
            missing = set(self._marks) - set(indexed)
            extra = set(indexed) - set(self._marks)
            raise IndexDesyncError(f"Index out of sync: missing={sorted(missing)} extra={sorted(extra)}")
        for identity, mark in self._marks.items():
            if indexed[identity] != mark.bounding_box():
                raise IndexDesyncError(f"Index box for identity {identity} is stale")
        if set(self._mark_generation) != set(self._marks):
            raise InvariantViolationError("Mark generations out of sync with marks")

        self.cache.check_consistency()

        if energy_fn is None or self.energy is None:
            return
        context = context or EnergyContext()
        fresh = 0.0
        for identity, mark in self._marks.items():
            fresh += energy_fn.unary(mark, context)
            if not energy_fn.has_pairwise:
                continue
            for other in self.index.intersects_with(mark.bounding_box()):
                if other > identity:
                    fresh += energy_fn.binary(mark, self._marks[other], context)
        if not math.isclose(fresh, self.energy, rel_tol=tolerance, abs_tol=tolerance):
            raise InvariantViolationError(
                f"Incremental energy {self.energy!r} differs from recomputed {fresh!r}"
            )
        logger.debug("Configuration valid: %d marks, generation %d", len(self), self.generation)
