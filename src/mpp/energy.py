"""
Energy terms.

An EnergyFunction is a pure black box: `unary(mark, context)` scores a single
mark against the data, `binary(a, b, context)` scores an interacting pair.
Lower is better. Pairs are only ever evaluated for marks whose bounding boxes
overlap, so terms must return 0 for spatially separated marks.
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import numpy as np

from mpp.errors import EnergyEvaluationError
from mpp.marks import (
    REGION_ID_INSIDE,
    REGION_ID_SHELL,
    Ellipse,
    Mark,
    RegionMap,
    default_region_map,
    overlap_count,
    voxelize,
)


@dataclass
class EnergyContext:
    """Per-run data handed to every energy evaluation.

    Attributes:
        image: optional intensity image indexed [x, y, z]; 2D images are
            promoted to a single z-slice
        region_map: region id → membership, built once per run
        extras: free-form values for custom terms
    """

    image: Optional[np.ndarray] = None
    region_map: RegionMap = field(default_factory=default_region_map)
    extras: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.image is not None:
            image = np.asarray(self.image, dtype=float)
            if image.ndim == 2:
                image = image[:, :, np.newaxis]
            if image.ndim != 3:
                raise ValueError(f"Image must be 2D or 3D, got shape {image.shape}")
            self.image = image

    @property
    def extent(self) -> Optional[Tuple[int, int, int]]:
        if self.image is None:
            return None
        return tuple(int(v) for v in self.image.shape)


class EnergyFunction(ABC):
    """Unary + pairwise energy. Implementations must be side-effect free."""

    has_pairwise: bool = True

    @abstractmethod
    def unary(self, mark: Mark, context: EnergyContext) -> float:
        ...

    def binary(self, a: Mark, b: Mark, context: EnergyContext) -> float:
        return 0.0


class ConstantEnergy(EnergyFunction):
    """Fixed value per mark and per interacting pair."""

    def __init__(self, unary_value: float = 0.0, binary_value: float = 0.0):
        self.unary_value = float(unary_value)
        self.binary_value = float(binary_value)
        self.has_pairwise = self.binary_value != 0.0

    def unary(self, mark: Mark, context: EnergyContext) -> float:
        return self.unary_value

    def binary(self, a: Mark, b: Mark, context: EnergyContext) -> float:
        return self.binary_value


class FunctionEnergy(EnergyFunction):
    """Adapts plain callables into an EnergyFunction."""

    def __init__(
        self,
        unary_fn: Callable[[Mark, EnergyContext], float],
        binary_fn: Optional[Callable[[Mark, Mark, EnergyContext], float]] = None,
    ):
        self.unary_fn = unary_fn
        self.binary_fn = binary_fn
        self.has_pairwise = binary_fn is not None

    def unary(self, mark: Mark, context: EnergyContext) -> float:
        return float(self.unary_fn(mark, context))

    def binary(self, a: Mark, b: Mark, context: EnergyContext) -> float:
        if self.binary_fn is None:
            return 0.0
        return float(self.binary_fn(a, b, context))


class OverlapPenalty(EnergyFunction):
    """Penalizes shared area/volume between two marks' regions.

    Two ellipses are compared exactly through their shapely polygons; any other
    pair falls back to counting shared voxels.
    """

    def __init__(self, weight: float = 1.0, region_id: int = REGION_ID_INSIDE,
                 normalize: bool = True):
        if weight < 0:
            raise ValueError(f"weight must be >= 0, got {weight}")
        self.weight = float(weight)
        self.region_id = region_id
        self.normalize = normalize

    def unary(self, mark: Mark, context: EnergyContext) -> float:
        return 0.0

    def binary(self, a: Mark, b: Mark, context: EnergyContext) -> float:
        if isinstance(a, Ellipse) and isinstance(b, Ellipse) and a.center[2] == b.center[2]:
            shared = a.to_polygon().intersection(b.to_polygon()).area
            smaller = min(a.volume(), b.volume())
        else:
            membership = context.region_map.membership(self.region_id)
            va = voxelize(a, membership, context.extent)
            vb = voxelize(b, membership, context.extent)
            shared = overlap_count(va, vb)
            smaller = min(va.count(), vb.count())
        if shared <= 0:
            return 0.0
        if self.normalize:
            if smaller <= 0:
                return 0.0
            return self.weight * shared / smaller
        return self.weight * shared


class IntensityContrastEnergy(EnergyFunction):
    """Data term rewarding marks brighter inside than in their shell.

    energy = weight * (threshold - (mean_inside - mean_shell))

    Raises EnergyEvaluationError when a region has no voxels in the image,
    e.g. a mark born at the image border.
    """

    has_pairwise = False

    def __init__(self, weight: float = 1.0, threshold: float = 0.0,
                 inside_region: int = REGION_ID_INSIDE, shell_region: int = REGION_ID_SHELL):
        self.weight = float(weight)
        self.threshold = float(threshold)
        self.inside_region = inside_region
        self.shell_region = shell_region

    def region_mean(self, mark: Mark, region_id: int, context: EnergyContext) -> float:
        if context.image is None:
            raise EnergyEvaluationError("IntensityContrastEnergy needs an image in the context")
        membership = context.region_map.membership(region_id)
        vox = voxelize(mark, membership, context.extent)
        if vox.is_empty():
            raise EnergyEvaluationError(
                f"Mark {mark.identifier} has no voxels in region {region_id} inside the image"
            )
        return float(context.image[vox.global_indices()].mean())

    def contrast(self, mark: Mark, context: EnergyContext) -> float:
        inside = self.region_mean(mark, self.inside_region, context)
        shell = self.region_mean(mark, self.shell_region, context)
        return inside - shell

    def unary(self, mark: Mark, context: EnergyContext) -> float:
        return self.weight * (self.threshold - self.contrast(mark, context))


class WeightedSum(EnergyFunction):
    """Linear combination of energy terms."""

    def __init__(self, terms: Sequence[Tuple[float, EnergyFunction]]):
        if not terms:
            raise ValueError("WeightedSum needs at least one term")
        for weight, _ in terms:
            if not math.isfinite(weight):
                raise ValueError(f"Term weights must be finite, got {weight}")
        self.terms = [(float(w), t) for w, t in terms]
        self.has_pairwise = any(t.has_pairwise and w != 0.0 for w, t in self.terms)

    def unary(self, mark: Mark, context: EnergyContext) -> float:
        return sum(w * t.unary(mark, context) for w, t in self.terms if w != 0.0)

    def binary(self, a: Mark, b: Mark, context: EnergyContext) -> float:
        return sum(
            w * t.binary(a, b, context)
            for w, t in self.terms
            if w != 0.0 and t.has_pairwise
        )
