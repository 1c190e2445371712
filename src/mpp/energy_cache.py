"""
Generation-keyed LRU cache for unary and pairwise energy terms.

Keys are ("unary", id) or ("pair", lo, hi). Each entry also stores the
generation tuple of the contributing marks; a lookup with a different
generation is a miss, so stale values are never returned even before the
owning configuration invalidates them.
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Hashable, Optional, Set, Tuple

from mpp.errors import CacheCorruptionError

CacheKey = Tuple[Hashable, ...]
Generation = Tuple[int, ...]

DEFAULT_CAPACITY = 100_000


def unary_key(identity: int) -> CacheKey:
    return ("unary", int(identity))


def pair_key(a: int, b: int) -> CacheKey:
    """Canonical pair key (lower identity first)."""
    lo, hi = (a, b) if a <= b else (b, a)
    return ("pair", int(lo), int(hi))


def key_identities(key: CacheKey) -> Tuple[int, ...]:
    return tuple(key[1:])


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["hit_rate"] = self.hit_rate
        return payload


class EnergyCache:
    """LRU map of energy terms with an identity → keys reverse index."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._od: "OrderedDict[CacheKey, Tuple[Generation, float]]" = OrderedDict()
        self._by_identity: Dict[int, Set[CacheKey]] = {}
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._od)

    def __contains__(self, key: object) -> bool:
        return key in self._od

    def get_or_compute(
        self,
        key: CacheKey,
        generation: Generation,
        compute_fn: Callable[[], float],
    ) -> float:
        """Cached value for (key, generation); computes and stores on a miss.

        `compute_fn` is called at most once per call. If it raises, nothing is
        stored and the exception propagates.
        """
        hit = self._od.get(key)
        if hit is not None and hit[0] == generation:
            self._od.move_to_end(key)
            self.stats.hits += 1
            return hit[1]

        self.stats.misses += 1
        value = compute_fn()
        self.store(key, generation, value)
        return value

    def peek(self, key: CacheKey, generation: Generation) -> Optional[float]:
        """Cached value without computing, counting, or touching LRU order."""
        hit = self._od.get(key)
        if hit is not None and hit[0] == generation:
            return hit[1]
        return None

    def store(self, key: CacheKey, generation: Generation, value: float) -> None:
        if key in self._od:
            self._od.move_to_end(key)
        self._od[key] = (tuple(generation), float(value))
        for identity in key_identities(key):
            self._by_identity.setdefault(identity, set()).add(key)
        while len(self._od) > self.capacity:
            old_key, _ = self._od.popitem(last=False)
            self._unlink(old_key)
            self.stats.evictions += 1

    def invalidate(self, identity: int) -> int:
        """Drop every entry that references `identity`. Returns the count dropped."""
        keys = self._by_identity.pop(identity, set())
        for key in keys:
            self._od.pop(key, None)
            for other in key_identities(key):
                if other != identity:
                    linked = self._by_identity.get(other)
                    if linked is not None:
                        linked.discard(key)
                        if not linked:
                            del self._by_identity[other]
        self.stats.invalidations += len(keys)
        return len(keys)

    def clear(self) -> None:
        self._od.clear()
        self._by_identity.clear()

    def _unlink(self, key: CacheKey) -> None:
        for identity in key_identities(key):
            linked = self._by_identity.get(identity)
            if linked is not None:
                linked.discard(key)
                if not linked:
                    del self._by_identity[identity]

    def check_consistency(self) -> None:
        """Raise CacheCorruptionError if entries and the identity index disagree."""
        if len(self._od) > self.capacity:
            raise CacheCorruptionError(
                f"Cache holds {len(self._od)} entries above capacity {self.capacity}"
            )
        indexed: Set[CacheKey] = set()
        for identity, keys in self._by_identity.items():
            for key in keys:
                if key not in self._od:
                    raise CacheCorruptionError(f"Identity {identity} indexes missing key {key}")
                if identity not in key_identities(key):
                    raise CacheCorruptionError(f"Identity {identity} indexes foreign key {key}")
                indexed.add(key)
        for key, (generation, _) in self._od.items():
            if key not in indexed:
                raise CacheCorruptionError(f"Key {key} is not reachable from the identity index")
            if len(generation) != len(key_identities(key)):
                raise CacheCorruptionError(f"Key {key} has generation {generation} of wrong arity")
