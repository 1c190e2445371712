"""
Core geometry types for the optimizer.

BoundingBox is the axis-aligned box stored in the spatial index and derived
from every mark. Boxes are always three-dimensional; 2D marks occupy a
one-voxel slab around their z coordinate.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

Vec3 = Tuple[float, float, float]

NUMBER_DIMENSIONS = 3

# Half-thickness of the z-slab occupied by a 2D mark
PLANAR_HALF_DEPTH = 0.5


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box with float corners (inclusive extent)."""

    min_corner: Vec3
    max_corner: Vec3

    def __post_init__(self):
        if len(self.min_corner) != NUMBER_DIMENSIONS or len(self.max_corner) != NUMBER_DIMENSIONS:
            raise ValueError(
                f"BoundingBox corners must have {NUMBER_DIMENSIONS} dimensions, "
                f"got {self.min_corner} and {self.max_corner}"
            )
        for lo, hi in zip(self.min_corner, self.max_corner):
            if not (math.isfinite(lo) and math.isfinite(hi)):
                raise ValueError(f"BoundingBox corners must be finite: {self}")
            if lo > hi:
                raise ValueError(f"BoundingBox min corner exceeds max corner: {self}")

    @classmethod
    def from_center(cls, center: Sequence[float], half_extent: Sequence[float]) -> "BoundingBox":
        return cls(
            tuple(float(c) - float(h) for c, h in zip(center, half_extent)),
            tuple(float(c) + float(h) for c, h in zip(center, half_extent)),
        )

    @classmethod
    def from_points(cls, points: np.ndarray, margin: float = 0.0) -> "BoundingBox":
        pts = np.asarray(points, dtype=float).reshape(-1, NUMBER_DIMENSIONS)
        if pts.size == 0:
            raise ValueError("Cannot derive a BoundingBox from zero points")
        lo = pts.min(axis=0) - margin
        hi = pts.max(axis=0) + margin
        return cls(tuple(float(v) for v in lo), tuple(float(v) for v in hi))

    @classmethod
    def from_extent(cls, extent: Sequence[int]) -> "BoundingBox":
        """Box spanning the voxel centers of an image with shape `extent`."""
        return cls((0.0, 0.0, 0.0), tuple(float(max(int(e), 1) - 1) for e in extent))

    @classmethod
    def union_all(cls, boxes: Iterable["BoundingBox"]) -> "BoundingBox":
        result: Optional[BoundingBox] = None
        for box in boxes:
            result = box if result is None else result.union(box)
        if result is None:
            raise ValueError("Cannot take the union of zero boxes")
        return result

    @property
    def extent(self) -> Vec3:
        return tuple(hi - lo for lo, hi in zip(self.min_corner, self.max_corner))

    @property
    def center(self) -> Vec3:
        return tuple((lo + hi) / 2.0 for lo, hi in zip(self.min_corner, self.max_corner))

    def volume(self) -> float:
        return float(np.prod(self.extent))

    def margin(self) -> float:
        return float(sum(self.extent))

    def intersects(self, other: "BoundingBox") -> bool:
        """Open-interval overlap test. Touching boxes do not intersect."""
        for a_lo, a_hi, b_lo, b_hi in zip(
            self.min_corner, self.max_corner, other.min_corner, other.max_corner,
        ):
            if not (a_lo < b_hi and b_lo < a_hi):
                return False
        return True

    def contains_point(self, point: Sequence[float]) -> bool:
        return all(
            lo <= float(p) <= hi
            for p, lo, hi in zip(point, self.min_corner, self.max_corner)
        )

    def union(self, other: "BoundingBox") -> "BoundingBox":
        return BoundingBox(
            tuple(min(a, b) for a, b in zip(self.min_corner, other.min_corner)),
            tuple(max(a, b) for a, b in zip(self.max_corner, other.max_corner)),
        )

    def enlargement(self, other: "BoundingBox") -> float:
        """Volume increase needed for this box to also cover `other`."""
        return self.union(other).volume() - self.volume()

    def expanded(self, margin: float) -> "BoundingBox":
        return BoundingBox(
            tuple(v - margin for v in self.min_corner),
            tuple(v + margin for v in self.max_corner),
        )

    def clipped(self, extent: Sequence[int]) -> Optional["BoundingBox"]:
        """Restrict to the voxel centers of an image; None if nothing remains."""
        lo = []
        hi = []
        for v_lo, v_hi, size in zip(self.min_corner, self.max_corner, extent):
            c_lo = max(v_lo, 0.0)
            c_hi = min(v_hi, float(int(size) - 1))
            if c_lo > c_hi:
                return None
            lo.append(c_lo)
            hi.append(c_hi)
        return BoundingBox(tuple(lo), tuple(hi))

    def voxel_range(self) -> Tuple[np.ndarray, np.ndarray]:
        """Integer (inclusive) voxel-center range covered by the box."""
        lo = np.ceil(np.asarray(self.min_corner) - 1e-9).astype(int)
        hi = np.floor(np.asarray(self.max_corner) + 1e-9).astype(int)
        return lo, hi

    def to_dict(self) -> dict:
        return {"min": list(self.min_corner), "max": list(self.max_corner)}


def as_vec3(values: Sequence[float]) -> Vec3:
    """Coerce a 2- or 3-element sequence into a float triple (z defaults to 0)."""
    vals = [float(v) for v in values]
    if len(vals) == 2:
        vals.append(0.0)
    if len(vals) != NUMBER_DIMENSIONS:
        raise ValueError(f"Expected 2 or 3 coordinates, got {len(vals)}")
    return (vals[0], vals[1], vals[2])


def rotated_half_extent(rotation: np.ndarray, radii: Sequence[float]) -> np.ndarray:
    """Half-extent of the axis-aligned box around a rotated ellipsoid.

    Args:
        rotation: (d, d) rotation matrix, columns are the ellipsoid axes
        radii: (d,) semi-axis lengths

    Returns:
        (d,) half-widths along each world axis.
    """
    scaled = rotation * np.asarray(radii, dtype=float)[np.newaxis, :]
    return np.sqrt(np.sum(scaled ** 2, axis=1))


def rotation_matrix_2d(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s], [s, c]])
