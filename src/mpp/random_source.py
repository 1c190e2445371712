"""Seedable random source injected into every stochastic component."""
from __future__ import annotations

from typing import List, Optional

import numpy as np


class RandomSource:
    """Thin wrapper over a numpy Generator. Never falls back to global state."""

    def __init__(self, seed: Optional[int] = None, generator: Optional[np.random.Generator] = None):
        if generator is not None:
            self._rng = generator
            self._seed_sequence = None
        else:
            self._seed_sequence = np.random.SeedSequence(seed)
            self._rng = np.random.default_rng(self._seed_sequence)
        self.seed = seed

    @property
    def generator(self) -> np.random.Generator:
        return self._rng

    def next_double(self) -> float:
        """Uniform in [0, 1)."""
        return float(self._rng.random())

    def next_gaussian(self) -> float:
        return float(self._rng.standard_normal())

    def next_int(self, n: int) -> int:
        """Uniform integer in [0, n)."""
        if n <= 0:
            raise ValueError(f"n must be positive, got {n}")
        return int(self._rng.integers(n))

    def uniform(self, lo: float, hi: float) -> float:
        return float(self._rng.uniform(lo, hi))

    def spawn(self, n: int) -> List["RandomSource"]:
        """Independent child streams, e.g. one per annealing chain."""
        if self._seed_sequence is None:
            children = self._rng.bit_generator.seed_seq.spawn(n)
        else:
            children = self._seed_sequence.spawn(n)
        return [RandomSource(generator=np.random.default_rng(child)) for child in children]
