"""
Proposal kernels.

Each kernel inspects the current configuration and returns a Proposal (a
delta plus forward/reverse proposal densities) or None when it has nothing
sensible to propose, e.g. death on an empty configuration. Kernels never
mutate the configuration.
"""
from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Optional, Sequence, Tuple

import numpy as np

from mpp.configuration import Configuration, ConfigurationDelta
from mpp.geometry import BoundingBox
from mpp.marks import DEFAULT_SHELL, Ellipse, Ellipsoid, Mark
from mpp.random_source import RandomSource

logger = logging.getLogger(__name__)

MARK_TYPES = ("ellipse", "ellipsoid")


@dataclass(frozen=True)
class Proposal:
    kernel: str
    delta: ConfigurationDelta
    forward_density: float = 1.0
    reverse_density: float = 1.0

    def __post_init__(self):
        if not (self.forward_density > 0 and math.isfinite(self.forward_density)):
            raise ValueError(f"forward_density must be positive, got {self.forward_density}")
        if not (self.reverse_density >= 0 and math.isfinite(self.reverse_density)):
            raise ValueError(f"reverse_density must be >= 0, got {self.reverse_density}")

    @property
    def hastings_ratio(self) -> float:
        return self.reverse_density / self.forward_density

    def scaled(self, forward_factor: float, reverse_factor: float) -> "Proposal":
        return replace(
            self,
            forward_density=self.forward_density * forward_factor,
            reverse_density=self.reverse_density * reverse_factor,
        )


@dataclass(frozen=True)
class MarkPrior:
    """Distribution new marks are drawn from.

    Centers are uniform over `domain`; 2D marks sit at z = domain min z.
    Radii are uniform in [min_radius, max_radius], orientation uniform.
    """

    domain: BoundingBox
    mark_type: str = "ellipse"
    min_radius: float = 2.0
    max_radius: float = 8.0
    shell: float = DEFAULT_SHELL

    def __post_init__(self):
        if self.mark_type not in MARK_TYPES:
            raise ValueError(f"mark_type must be one of {MARK_TYPES}, got '{self.mark_type}'")
        if not (0.0 < self.min_radius <= self.max_radius):
            raise ValueError(
                f"Need 0 < min_radius <= max_radius, got {self.min_radius}, {self.max_radius}"
            )
        if self.domain_measure <= 0.0:
            raise ValueError(f"Prior domain has zero measure: {self.domain}")

    @property
    def planar(self) -> bool:
        return self.mark_type == "ellipse"

    @property
    def num_radii(self) -> int:
        return 2 if self.planar else 3

    @property
    def domain_measure(self) -> float:
        """Area of the domain for 2D marks, volume for 3D marks."""
        ex, ey, ez = self.domain.extent
        return ex * ey if self.planar else ex * ey * ez

    def _center_axes(self) -> int:
        return 2 if self.planar else 3

    def _build(self, identifier: int, center: Sequence[float], random: RandomSource) -> Mark:
        radii = tuple(random.uniform(self.min_radius, self.max_radius) for _ in range(self.num_radii))
        if self.planar:
            angle = random.uniform(0.0, math.pi)
            return Ellipse(identifier, tuple(center), radii, angle=angle, shell=self.shell)
        angles = tuple(random.uniform(0.0, 2.0 * math.pi) for _ in range(3))
        return Ellipsoid(identifier, tuple(center), radii, angles=angles, shell=self.shell)

    def sample(self, identifier: int, random: RandomSource) -> Mark:
        lo, hi = self.domain.min_corner, self.domain.max_corner
        center = [random.uniform(lo[i], hi[i]) for i in range(self._center_axes())]
        if self.planar:
            center.append(lo[2])
        return self._build(identifier, center, random)

    def sample_near(self, identifier: int, center: Sequence[float], spread: float,
                    random: RandomSource) -> Mark:
        """Sample with a Gaussian-perturbed center, clipped to the domain."""
        lo, hi = self.domain.min_corner, self.domain.max_corner
        near = [
            float(np.clip(center[i] + random.next_gaussian() * spread, lo[i], hi[i]))
            for i in range(self._center_axes())
        ]
        if self.planar:
            near.append(lo[2])
        return self._build(identifier, near, random)

    def accepts(self, mark: Mark) -> bool:
        if not self.domain.contains_point(mark.center):
            return False
        radii = getattr(mark, "radii", None)
        if radii is None:
            return True
        return all(self.min_radius <= r <= self.max_radius for r in radii)


class Kernel(ABC):
    """Proposes one structural change."""

    name: str = "kernel"
    reverse_name: str = "kernel"
    mark_types: Tuple[str, ...] = ("ellipse", "ellipsoid", "points")

    @abstractmethod
    def propose(self, configuration: Configuration, random: RandomSource) -> Optional[Proposal]:
        ...

    def is_compatible_with(self, mark_type: str) -> bool:
        return mark_type in self.mark_types

    @staticmethod
    def _pick(configuration: Configuration, random: RandomSource) -> Optional[Mark]:
        if len(configuration) == 0:
            return None
        identities = configuration.identities()
        return configuration.get(identities[random.next_int(len(identities))])


class BirthKernel(Kernel):
    name = "birth"
    reverse_name = "death"

    def __init__(self, prior: MarkPrior):
        self.prior = prior

    def propose(self, configuration: Configuration, random: RandomSource) -> Optional[Proposal]:
        n = len(configuration)
        mark = self.prior.sample(configuration.peek_next_identity(), random)
        if mark.is_degenerate() or not self.prior.accepts(mark):
            logger.debug("birth declined: sampled mark outside prior")
            return None
        return Proposal(
            kernel=self.name,
            delta=ConfigurationDelta(added=mark),
            forward_density=1.0 / self.prior.domain_measure,
            reverse_density=1.0 / (n + 1),
        )


class DeathKernel(Kernel):
    name = "death"
    reverse_name = "birth"

    def __init__(self, prior: MarkPrior):
        self.prior = prior

    def propose(self, configuration: Configuration, random: RandomSource) -> Optional[Proposal]:
        mark = self._pick(configuration, random)
        if mark is None:
            return None
        return Proposal(
            kernel=self.name,
            delta=ConfigurationDelta(removed=mark.identifier),
            forward_density=1.0 / len(configuration),
            reverse_density=1.0 / self.prior.domain_measure,
        )


class MoveKernel(Kernel):
    """Gaussian translation of a mark's center, clipped to `max_step` per axis."""

    name = "move"
    reverse_name = "move"

    def __init__(self, prior: MarkPrior, sigma: float = 1.0, max_step: float = 3.0):
        if sigma <= 0 or max_step <= 0:
            raise ValueError(f"sigma and max_step must be positive, got {sigma}, {max_step}")
        self.prior = prior
        self.sigma = sigma
        self.max_step = max_step

    def propose(self, configuration: Configuration, random: RandomSource) -> Optional[Proposal]:
        mark = self._pick(configuration, random)
        if mark is None:
            return None
        axes = 2 if mark.num_dims == 2 else 3
        step = [
            float(np.clip(random.next_gaussian() * self.sigma, -self.max_step, self.max_step))
            for _ in range(axes)
        ]
        moved = mark.moved(step)
        if not self.prior.accepts(moved):
            logger.debug("move declined: mark %d would leave the domain", mark.identifier)
            return None
        return Proposal(
            kernel=self.name,
            delta=ConfigurationDelta(removed=mark.identifier, added=moved),
        )


class DilateKernel(Kernel):
    """Log-normal rescaling of a mark's radii, bounded to [1/max_factor, max_factor]."""

    name = "dilate"
    reverse_name = "dilate"
    mark_types = ("ellipse", "ellipsoid")

    def __init__(self, prior: MarkPrior, sigma: float = 0.1, max_factor: float = 1.5):
        if sigma <= 0:
            raise ValueError(f"sigma must be positive, got {sigma}")
        if max_factor <= 1.0:
            raise ValueError(f"max_factor must be > 1, got {max_factor}")
        self.prior = prior
        self.sigma = sigma
        self.max_factor = max_factor

    def _factors(self, count: int, random: RandomSource) -> Tuple[float, ...]:
        lo, hi = 1.0 / self.max_factor, self.max_factor
        return tuple(
            float(np.clip(math.exp(random.next_gaussian() * self.sigma), lo, hi))
            for _ in range(count)
        )

    def propose(self, configuration: Configuration, random: RandomSource) -> Optional[Proposal]:
        mark = self._pick(configuration, random)
        if mark is None:
            return None
        radii = getattr(mark, "radii", None)
        if radii is None:
            return None
        dilated = mark.scaled(self._factors(len(radii), random))
        if dilated.is_degenerate() or not self.prior.accepts(dilated):
            logger.debug("dilate declined: mark %d outside radius range", mark.identifier)
            return None
        ratio = float(np.prod(dilated.radii) / np.prod(radii))
        return Proposal(
            kernel=self.name,
            delta=ConfigurationDelta(removed=mark.identifier, added=dilated),
            forward_density=1.0,
            reverse_density=ratio,
        )


class ExchangeKernel(Kernel):
    """Replace a mark with a fresh prior sample near the same center."""

    name = "exchange"
    reverse_name = "exchange"

    def __init__(self, prior: MarkPrior, spread: float = 2.0):
        if spread < 0:
            raise ValueError(f"spread must be >= 0, got {spread}")
        self.prior = prior
        self.spread = spread

    def propose(self, configuration: Configuration, random: RandomSource) -> Optional[Proposal]:
        mark = self._pick(configuration, random)
        if mark is None:
            return None
        fresh = self.prior.sample_near(
            configuration.peek_next_identity(), mark.center, self.spread, random,
        )
        if fresh.is_degenerate() or not self.prior.accepts(fresh):
            return None
        return Proposal(
            kernel=self.name,
            delta=ConfigurationDelta(removed=mark.identifier, added=fresh),
        )
