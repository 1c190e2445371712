"""
Mark types: the geometric primitives that make up a configuration.

Marks are immutable value snapshots. Every structural change (move, dilate,
re-identify) returns a new Mark, so configurations compared side by side never
share mutable state. Each mark classifies points into regions (inside, core,
shell, exterior) which energy terms use to sample an image.
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import IntFlag
from functools import cached_property
from typing import Any, ClassVar, Dict, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree
from scipy.spatial.transform import Rotation
from shapely import affinity
from shapely.geometry import Point, Polygon

from mpp.geometry import (
    PLANAR_HALF_DEPTH,
    BoundingBox,
    Vec3,
    as_vec3,
    rotated_half_extent,
    rotation_matrix_2d,
)

DEFAULT_SHELL = 0.2

# Distance thresholds (voxels) for point-cloud region membership
POINT_INSIDE_DISTANCE = 0.5
POINT_SHELL_DISTANCE = 1.5
POINT_EXTERIOR_DISTANCE = 2.5


class Region(IntFlag):
    """Bit flags describing where a point lies relative to a mark."""
    NONE = 0
    INSIDE = 1
    SHELL = 2
    CORE = 4
    EXTERIOR = 8


@dataclass(frozen=True)
class RegionMembership:
    """Selects points whose flags intersect `flags`."""
    flags: Region

    def is_member(self, flags: np.ndarray) -> np.ndarray:
        return (np.asarray(flags, dtype=np.uint8) & np.uint8(int(self.flags))) != 0


@dataclass(frozen=True)
class RegionMap:
    """Ordered region memberships addressed by region id."""
    memberships: Tuple[RegionMembership, ...]

    def membership(self, region_id: int) -> RegionMembership:
        if region_id < 0 or region_id >= len(self.memberships):
            raise ValueError(
                f"Region id {region_id} outside region map of size {len(self.memberships)}"
            )
        return self.memberships[region_id]

    def __len__(self) -> int:
        return len(self.memberships)


REGION_ID_INSIDE = 0
REGION_ID_SHELL = 1


def default_region_map() -> RegionMap:
    """Region 0 is the mark interior, region 1 its shell."""
    return RegionMap((RegionMembership(Region.INSIDE), RegionMembership(Region.SHELL)))


def _flags_from_quadratic(s: np.ndarray, shell: float) -> np.ndarray:
    """Classify normalized quadratic-form values into region flags."""
    flags = np.zeros(s.shape, dtype=np.uint8)
    flags[s <= (1.0 + 2.0 * shell) ** 2] = Region.EXTERIOR
    flags[s <= (1.0 + shell) ** 2] = Region.SHELL
    flags[s <= 1.0] = Region.INSIDE | Region.SHELL
    flags[s <= (1.0 - shell) ** 2] = Region.INSIDE | Region.CORE
    return flags


def _radial_bounds(region: Region, shell: float) -> Tuple[float, float]:
    """Inner/outer radius multipliers of a conic region."""
    if region == Region.INSIDE:
        return 0.0, 1.0
    if region == Region.CORE:
        return 0.0, 1.0 - shell
    if region == Region.SHELL:
        return 1.0 - shell, 1.0 + shell
    if region == Region.EXTERIOR:
        return 1.0 + shell, 1.0 + 2.0 * shell
    raise ValueError(f"Volume is defined for a single region, got {region!r}")


def _outer_multiplier(region: Optional[Region], shell: float) -> float:
    """Radius multiplier that bounds `region` (None = all regions)."""
    if region is None or region & Region.EXTERIOR:
        return 1.0 + 2.0 * shell
    if region & Region.SHELL:
        return 1.0 + shell
    if region & Region.CORE and not region & Region.INSIDE:
        return 1.0 - shell
    return 1.0


def _check_shell(shell: float) -> None:
    if not (0.0 < shell < 1.0):
        raise ValueError(f"shell must be in (0, 1), got {shell}")


class Mark(ABC):
    """A geometric primitive representing a candidate object.

    Concrete marks are frozen dataclasses carrying `identifier` and `center`.
    """

    name: ClassVar[str] = "mark"
    num_dims: ClassVar[int] = 3

    identifier: int

    @abstractmethod
    def bounding_box(self, region: Optional[Region] = None) -> BoundingBox:
        """Axis-aligned box; `None` covers every region."""

    @abstractmethod
    def region_flags(self, points: np.ndarray) -> np.ndarray:
        """Region flags (uint8) for an (N, 3) array of points."""

    @abstractmethod
    def volume(self, region: Region = Region.INSIDE) -> float:
        """Area (2D) or volume (3D) of a region."""

    @abstractmethod
    def is_degenerate(self, min_extent: float = 0.0) -> bool:
        """True when the mark has (near) zero extent."""

    @abstractmethod
    def moved(self, delta: Sequence[float]) -> "Mark":
        """Copy translated by `delta`."""

    @abstractmethod
    def scaled(self, factors: Sequence[float]) -> "Mark":
        """Copy with its shape scaled about the center."""

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready payload including a `type` tag."""

    def with_identifier(self, identifier: int) -> "Mark":
        return replace(self, identifier=int(identifier))

    @property
    def center_array(self) -> np.ndarray:
        return np.asarray(self.center, dtype=float)


@dataclass(frozen=True)
class Ellipse(Mark):
    """2D ellipse lying in the plane z = center[2]."""

    name: ClassVar[str] = "ellipse"
    num_dims: ClassVar[int] = 2

    identifier: int
    center: Vec3
    radii: Tuple[float, float]
    angle: float = 0.0
    shell: float = DEFAULT_SHELL

    def __post_init__(self):
        object.__setattr__(self, "center", as_vec3(self.center))
        radii = tuple(float(r) for r in self.radii)
        if len(radii) != 2:
            raise ValueError(f"Ellipse needs 2 radii, got {len(radii)}")
        if any(not math.isfinite(r) or r < 0.0 for r in radii):
            raise ValueError(f"Ellipse radii must be finite and >= 0, got {radii}")
        object.__setattr__(self, "radii", radii)
        object.__setattr__(self, "angle", float(self.angle))
        _check_shell(self.shell)

    @cached_property
    def _rotation(self) -> np.ndarray:
        return rotation_matrix_2d(self.angle)

    def bounding_box(self, region: Optional[Region] = None) -> BoundingBox:
        factor = _outer_multiplier(region, self.shell)
        hx, hy = rotated_half_extent(self._rotation, self.radii) * factor
        return BoundingBox.from_center(self.center, (hx, hy, PLANAR_HALF_DEPTH))

    def quadratic_form(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        d = pts[:, :2] - np.asarray(self.center[:2])
        local = d @ self._rotation
        with np.errstate(divide="ignore", invalid="ignore"):
            s = (local[:, 0] / self.radii[0]) ** 2 + (local[:, 1] / self.radii[1]) ** 2
        s = np.where(np.isnan(s), np.inf, s)
        off_plane = np.abs(pts[:, 2] - self.center[2]) > PLANAR_HALF_DEPTH
        s[off_plane] = np.inf
        return s

    def region_flags(self, points: np.ndarray) -> np.ndarray:
        return _flags_from_quadratic(self.quadratic_form(points), self.shell)

    def volume(self, region: Region = Region.INSIDE) -> float:
        inner, outer = _radial_bounds(region, self.shell)
        return math.pi * self.radii[0] * self.radii[1] * (outer ** 2 - inner ** 2)

    def is_degenerate(self, min_extent: float = 0.0) -> bool:
        return min(self.radii) <= min_extent

    def moved(self, delta: Sequence[float]) -> "Ellipse":
        dx, dy, _ = as_vec3(delta)
        cx, cy, cz = self.center
        return replace(self, center=(cx + dx, cy + dy, cz))

    def scaled(self, factors: Sequence[float]) -> "Ellipse":
        fa, fb = (float(f) for f in factors)
        return replace(self, radii=(self.radii[0] * fa, self.radii[1] * fb))

    def to_polygon(self, region: Region = Region.INSIDE, resolution: int = 16) -> Polygon:
        """Shapely polygon of the outer boundary of `region`."""
        factor = _outer_multiplier(region, self.shell)
        unit = Point(0.0, 0.0).buffer(1.0, resolution)
        shaped = affinity.scale(
            unit, self.radii[0] * factor, self.radii[1] * factor, origin=(0.0, 0.0),
        )
        shaped = affinity.rotate(shaped, self.angle, origin=(0.0, 0.0), use_radians=True)
        return affinity.translate(shaped, self.center[0], self.center[1])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.name,
            "identifier": int(self.identifier),
            "center": list(self.center),
            "radii": list(self.radii),
            "angle": float(self.angle),
            "shell": float(self.shell),
        }


@dataclass(frozen=True)
class Ellipsoid(Mark):
    """3D ellipsoid with orientation given as XYZ Euler angles (radians)."""

    name: ClassVar[str] = "ellipsoid"
    num_dims: ClassVar[int] = 3

    identifier: int
    center: Vec3
    radii: Tuple[float, float, float]
    angles: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    shell: float = DEFAULT_SHELL

    def __post_init__(self):
        object.__setattr__(self, "center", as_vec3(self.center))
        radii = tuple(float(r) for r in self.radii)
        if len(radii) != 3:
            raise ValueError(f"Ellipsoid needs 3 radii, got {len(radii)}")
        if any(not math.isfinite(r) or r < 0.0 for r in radii):
            raise ValueError(f"Ellipsoid radii must be finite and >= 0, got {radii}")
        object.__setattr__(self, "radii", radii)
        object.__setattr__(self, "angles", as_vec3(self.angles))
        _check_shell(self.shell)

    @cached_property
    def _rotation(self) -> np.ndarray:
        return Rotation.from_euler("xyz", self.angles).as_matrix()

    def bounding_box(self, region: Optional[Region] = None) -> BoundingBox:
        factor = _outer_multiplier(region, self.shell)
        half = rotated_half_extent(self._rotation, self.radii) * factor
        return BoundingBox.from_center(self.center, half)

    def quadratic_form(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        local = (pts - self.center_array) @ self._rotation
        with np.errstate(divide="ignore", invalid="ignore"):
            s = np.sum((local / np.asarray(self.radii)) ** 2, axis=1)
        return np.where(np.isnan(s), np.inf, s)

    def region_flags(self, points: np.ndarray) -> np.ndarray:
        return _flags_from_quadratic(self.quadratic_form(points), self.shell)

    def volume(self, region: Region = Region.INSIDE) -> float:
        inner, outer = _radial_bounds(region, self.shell)
        a, b, c = self.radii
        return 4.0 / 3.0 * math.pi * a * b * c * (outer ** 3 - inner ** 3)

    def is_degenerate(self, min_extent: float = 0.0) -> bool:
        return min(self.radii) <= min_extent

    def moved(self, delta: Sequence[float]) -> "Ellipsoid":
        d = as_vec3(delta)
        return replace(self, center=tuple(c + v for c, v in zip(self.center, d)))

    def scaled(self, factors: Sequence[float]) -> "Ellipsoid":
        return replace(self, radii=tuple(r * float(f) for r, f in zip(self.radii, factors)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.name,
            "identifier": int(self.identifier),
            "center": list(self.center),
            "radii": list(self.radii),
            "angles": list(self.angles),
            "shell": float(self.shell),
        }


@dataclass(frozen=True)
class PointsMark(Mark):
    """A point-cloud mark (e.g. a traced object outline or voxel list)."""

    name: ClassVar[str] = "points"
    num_dims: ClassVar[int] = 3

    identifier: int
    points: Tuple[Vec3, ...]

    def __post_init__(self):
        pts = tuple(as_vec3(p) for p in self.points)
        if not pts:
            raise ValueError("PointsMark needs at least one point")
        object.__setattr__(self, "points", pts)

    @property
    def center(self) -> Vec3:
        return tuple(float(v) for v in np.mean(self.points_array, axis=0))

    @cached_property
    def points_array(self) -> np.ndarray:
        return np.asarray(self.points, dtype=float)

    @cached_property
    def _tree(self) -> cKDTree:
        return cKDTree(self.points_array)

    def bounding_box(self, region: Optional[Region] = None) -> BoundingBox:
        if region is None or region & Region.EXTERIOR:
            margin = POINT_EXTERIOR_DISTANCE
        elif region & Region.SHELL:
            margin = POINT_SHELL_DISTANCE
        else:
            margin = POINT_INSIDE_DISTANCE
        return BoundingBox.from_points(self.points_array, margin=margin)

    def region_flags(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        dist, _ = self._tree.query(pts, distance_upper_bound=POINT_EXTERIOR_DISTANCE + 1e-9)
        flags = np.zeros(dist.shape, dtype=np.uint8)
        flags[dist <= POINT_EXTERIOR_DISTANCE] = Region.EXTERIOR
        flags[dist <= POINT_SHELL_DISTANCE] = Region.SHELL
        flags[dist <= POINT_INSIDE_DISTANCE] = Region.INSIDE | Region.CORE
        return flags

    def volume(self, region: Region = Region.INSIDE) -> float:
        return float(voxelize(self, RegionMembership(region)).count())

    def is_degenerate(self, min_extent: float = 0.0) -> bool:
        return len(self.points) == 0

    def moved(self, delta: Sequence[float]) -> "PointsMark":
        d = np.asarray(as_vec3(delta))
        return replace(self, points=tuple(tuple(p) for p in (self.points_array + d)))

    def scaled(self, factors: Sequence[float]) -> "PointsMark":
        f = np.asarray(as_vec3(factors) if len(factors) == 3 else (*factors, 1.0), dtype=float)
        c = np.asarray(self.center)
        return replace(self, points=tuple(tuple(p) for p in (c + (self.points_array - c) * f)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.name,
            "identifier": int(self.identifier),
            "points": [list(p) for p in self.points],
        }


MARK_TYPES: Dict[str, type] = {
    Ellipse.name: Ellipse,
    Ellipsoid.name: Ellipsoid,
    PointsMark.name: PointsMark,
}


def mark_from_dict(payload: Dict[str, Any]) -> Mark:
    """Rebuild a mark from `Mark.to_dict()` output."""
    kind = str(payload.get("type", "")).strip().lower()
    if kind == Ellipse.name:
        return Ellipse(
            identifier=int(payload["identifier"]),
            center=tuple(payload["center"]),
            radii=tuple(payload["radii"]),
            angle=float(payload.get("angle", 0.0)),
            shell=float(payload.get("shell", DEFAULT_SHELL)),
        )
    if kind == Ellipsoid.name:
        return Ellipsoid(
            identifier=int(payload["identifier"]),
            center=tuple(payload["center"]),
            radii=tuple(payload["radii"]),
            angles=tuple(payload.get("angles", (0.0, 0.0, 0.0))),
            shell=float(payload.get("shell", DEFAULT_SHELL)),
        )
    if kind == PointsMark.name:
        return PointsMark(
            identifier=int(payload["identifier"]),
            points=tuple(tuple(p) for p in payload["points"]),
        )
    raise ValueError(f"Unknown mark type '{kind}'. Expected one of {sorted(MARK_TYPES)}")


# ─── Voxelization ───────────────────────────────────────────────────────────


@dataclass
class VoxelizedMark:
    """Boolean mask of a mark region over integer voxel centers, indexed [x, y, z]."""

    origin: np.ndarray  # (3,) int, voxel coordinate of mask[0, 0, 0]
    mask: np.ndarray    # bool (nx, ny, nz)

    def count(self) -> int:
        return int(self.mask.sum())

    def is_empty(self) -> bool:
        return self.mask.size == 0 or not self.mask.any()

    def global_indices(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        ii, jj, kk = np.nonzero(self.mask)
        return ii + self.origin[0], jj + self.origin[1], kk + self.origin[2]


def _empty_voxelized() -> VoxelizedMark:
    return VoxelizedMark(origin=np.zeros(3, dtype=int), mask=np.zeros((0, 0, 0), dtype=bool))


def voxelize(
    mark: Mark,
    membership: RegionMembership,
    extent: Optional[Sequence[int]] = None,
) -> VoxelizedMark:
    """Rasterize a mark region over voxel centers inside its bounding box.

    Args:
        mark: the mark to rasterize
        membership: which region flags count as "on"
        extent: optional image shape (nx, ny, nz) to clip against
    """
    box: Optional[BoundingBox] = mark.bounding_box()
    if extent is not None:
        box = box.clipped(extent)
    if box is None:
        return _empty_voxelized()

    lo, hi = box.voxel_range()
    if np.any(hi < lo):
        return _empty_voxelized()

    shape = tuple(int(v) for v in (hi - lo + 1))
    grid = np.indices(shape).reshape(3, -1).T + lo
    flags = mark.region_flags(grid)
    mask = membership.is_member(flags).reshape(shape)
    return VoxelizedMark(origin=lo.astype(int), mask=mask)


def overlap_count(a: VoxelizedMark, b: VoxelizedMark) -> int:
    """Number of voxels set in both masks."""
    if a.mask.size == 0 or b.mask.size == 0:
        return 0
    lo = np.maximum(a.origin, b.origin)
    hi = np.minimum(a.origin + np.asarray(a.mask.shape), b.origin + np.asarray(b.mask.shape))
    if np.any(hi <= lo):
        return 0
    sa = tuple(slice(int(l - o), int(h - o)) for l, h, o in zip(lo, hi, a.origin))
    sb = tuple(slice(int(l - o), int(h - o)) for l, h, o in zip(lo, hi, b.origin))
    return int(np.count_nonzero(a.mask[sa] & b.mask[sb]))
