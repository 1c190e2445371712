"""Weighted random choice among proposal kernels."""
from __future__ import annotations

import bisect
import itertools
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from mpp.configuration import Configuration
from mpp.kernels import Kernel, Proposal
from mpp.random_source import RandomSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WeightedKernel:
    kernel: Kernel
    weight: float

    def __post_init__(self):
        if not (math.isfinite(self.weight) and self.weight > 0):
            raise ValueError(
                f"Kernel '{self.kernel.name}' weight must be positive and finite, got {self.weight}"
            )

    @property
    def name(self) -> str:
        return self.kernel.name


class KernelProposer:
    """Picks a kernel with probability proportional to its weight.

    Weights need not sum to one. When both a kernel and its reverse kernel
    are registered, proposal densities are scaled by their selection
    probabilities so the Hastings ratio covers the kernel choice too.

    The optional `initial_kernel` is never drawn by `select`; it only builds
    the starting configuration in `initialize`.
    """

    def __init__(
        self,
        kernels: Sequence[WeightedKernel],
        max_attempts: int = 10,
        initial_kernel: Optional[Kernel] = None,
    ):
        if not kernels:
            raise ValueError("KernelProposer needs at least one kernel")
        names = [wk.name for wk in kernels]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Kernel names must be unique, duplicated: {duplicates}")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        self.kernels: List[WeightedKernel] = list(kernels)
        self.max_attempts = max_attempts
        self.initial_kernel = initial_kernel
        self._cumulative = list(itertools.accumulate(wk.weight for wk in self.kernels))
        self._total = self._cumulative[-1]
        self._probabilities: Dict[str, float] = {
            wk.name: wk.weight / self._total for wk in self.kernels
        }

    @property
    def names(self) -> List[str]:
        return [wk.name for wk in self.kernels]

    @property
    def probabilities(self) -> Dict[str, float]:
        return dict(self._probabilities)

    def select(self, random: RandomSource) -> WeightedKernel:
        u = random.next_double() * self._total
        idx = bisect.bisect_right(self._cumulative, u)
        return self.kernels[min(idx, len(self.kernels) - 1)]

    def next_proposal(self, configuration: Configuration, random: RandomSource) -> Optional[Proposal]:
        """A proposal, or None when every attempt's kernel declined."""
        for _ in range(self.max_attempts):
            chosen = self.select(random)
            proposal = chosen.kernel.propose(configuration, random)
            if proposal is None:
                continue
            reverse_probability = self._probabilities.get(chosen.kernel.reverse_name)
            if reverse_probability is not None:
                proposal = proposal.scaled(self._probabilities[chosen.name], reverse_probability)
            return proposal

        logger.debug("No proposal after %d attempts", self.max_attempts)
        return None

    def check_compatible_with(self, mark_type: str) -> None:
        kernels = [wk.kernel for wk in self.kernels]
        if self.initial_kernel is not None:
            kernels.append(self.initial_kernel)
        for kernel in kernels:
            if not kernel.is_compatible_with(mark_type):
                raise ValueError(f"Kernel '{kernel.name}' is not compatible with mark type '{mark_type}'")

    def initialize(self, configuration: Configuration, count: int, random: RandomSource) -> int:
        """Apply up to `count` initial-kernel changes without an acceptance test.

        Each change gets `max_attempts` tries. Returns the number applied.
        """
        if count < 0:
            raise ValueError(f"count must be >= 0, got {count}")
        if count == 0:
            return 0
        if self.initial_kernel is None:
            raise ValueError("KernelProposer has no initial kernel")

        applied = 0
        for _ in range(count):
            proposal = None
            for _ in range(self.max_attempts):
                proposal = self.initial_kernel.propose(configuration, random)
                if proposal is not None:
                    break
            if proposal is None:
                continue
            delta = proposal.delta
            if delta.removed is None:
                configuration.add(delta.added)
            elif delta.added is None:
                configuration.remove(delta.removed)
            else:
                configuration.exchange(delta.removed, delta.added)
            applied += 1

        if applied < count:
            logger.warning(
                "Initial kernel '%s' applied %d of %d changes", self.initial_kernel.name, applied, count,
            )
        return applied
