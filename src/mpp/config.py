"""Configuration dataclasses for the optimization loop and CLI runs."""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

SCHEMA_RUN_CONFIG_V1 = "mpp.run_config.1"

KERNEL_NAMES = ("birth", "death", "move", "dilate", "exchange")
SCHEDULE_NAMES = ("exponential", "geometric", "logarithmic", "constant")


@dataclass(frozen=True)
class OptimizationConfig:
    """Loop-level knobs for OptimizationScheme."""

    max_consecutive_null_iterations: int = 1000
    invariant_check_interval: int = 0  # 0 disables periodic assert_valid
    track_best: bool = True

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.max_consecutive_null_iterations < 1:
            raise ValueError("OptimizationConfig.max_consecutive_null_iterations must be >= 1")
        if self.invariant_check_interval < 0:
            raise ValueError("OptimizationConfig.invariant_check_interval must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RunConfig:
    """Everything needed to assemble and run an optimization from the CLI."""

    # Marks
    mark_type: str = "ellipse"
    min_radius: float = 3.0
    max_radius: float = 10.0
    shell: float = 0.2
    domain_margin: float = 0.0

    # Kernels
    kernel_weights: Dict[str, float] = field(
        default_factory=lambda: {
            "birth": 1.0,
            "death": 1.0,
            "move": 1.0,
            "dilate": 0.5,
            "exchange": 0.5,
        }
    )
    max_attempts: int = 10
    initial_marks: int = 0
    move_sigma: float = 1.0
    move_max_step: float = 3.0
    dilate_sigma: float = 0.1
    dilate_max_factor: float = 1.5
    exchange_spread: float = 2.0

    # Annealing
    schedule: str = "exponential"
    start_temperature: float = 1.0
    end_temperature: float = 0.01
    cooling_rate: float = 0.999

    # Termination
    iterations: int = 2000
    plateau_window: Optional[int] = None
    plateau_tolerance: float = 1e-9
    target_energy: Optional[float] = None
    max_marks: Optional[int] = None

    # Energy
    contrast_weight: float = 1.0
    contrast_threshold: float = 0.1
    overlap_weight: float = 2.0

    # Execution
    chains: int = 1
    max_workers: Optional[int] = None
    seed: Optional[int] = 0
    cache_capacity: int = 100_000
    rtree_max_entries: int = 8
    optimization: OptimizationConfig = field(default_factory=OptimizationConfig)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.mark_type not in ("ellipse", "ellipsoid"):
            raise ValueError(f"RunConfig.mark_type must be 'ellipse' or 'ellipsoid', got '{self.mark_type}'")
        if not (0.0 < self.min_radius <= self.max_radius):
            raise ValueError("RunConfig requires 0 < min_radius <= max_radius")
        if not (0.0 < self.shell < 1.0):
            raise ValueError("RunConfig.shell must be in (0, 1)")
        if self.domain_margin < 0:
            raise ValueError("RunConfig.domain_margin must be >= 0")

        unknown = sorted(set(self.kernel_weights) - set(KERNEL_NAMES))
        if unknown:
            raise ValueError(f"Unknown kernels in RunConfig.kernel_weights: {unknown}")
        active = {k: w for k, w in self.kernel_weights.items() if w != 0}
        if not active:
            raise ValueError("RunConfig.kernel_weights must enable at least one kernel")
        for name, weight in active.items():
            if not (math.isfinite(weight) and weight > 0):
                raise ValueError(f"Kernel weight for '{name}' must be positive, got {weight}")
        if self.max_attempts < 1:
            raise ValueError("RunConfig.max_attempts must be >= 1")
        if self.initial_marks < 0:
            raise ValueError("RunConfig.initial_marks must be >= 0")

        if self.schedule not in SCHEDULE_NAMES:
            raise ValueError(f"RunConfig.schedule must be one of {SCHEDULE_NAMES}, got '{self.schedule}'")
        if self.start_temperature < 0 or self.end_temperature < 0:
            raise ValueError("RunConfig temperatures must be >= 0")
        if self.schedule == "exponential" and not (0 < self.end_temperature <= self.start_temperature):
            raise ValueError("Exponential schedule requires 0 < end_temperature <= start_temperature")

        if self.iterations < 0:
            raise ValueError("RunConfig.iterations must be >= 0")
        if self.plateau_window is not None and self.plateau_window < 1:
            raise ValueError("RunConfig.plateau_window must be >= 1")
        if self.max_marks is not None and self.max_marks < 0:
            raise ValueError("RunConfig.max_marks must be >= 0")
        if self.overlap_weight < 0:
            raise ValueError("RunConfig.overlap_weight must be >= 0")

        if self.chains < 1:
            raise ValueError("RunConfig.chains must be >= 1")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError("RunConfig.max_workers must be >= 1")
        if self.cache_capacity < 1:
            raise ValueError("RunConfig.cache_capacity must be >= 1")
        if self.rtree_max_entries < 4:
            raise ValueError("RunConfig.rtree_max_entries must be >= 4")

    @property
    def planar(self) -> bool:
        return self.mark_type == "ellipse"

    def active_kernels(self) -> Dict[str, float]:
        return {k: float(w) for k, w in self.kernel_weights.items() if w != 0}

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["schema_version"] = SCHEMA_RUN_CONFIG_V1
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RunConfig":
        data = dict(payload)
        version = data.pop("schema_version", SCHEMA_RUN_CONFIG_V1)
        if version != SCHEMA_RUN_CONFIG_V1:
            raise ValueError(f"Unexpected run config schema version: {version}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown RunConfig keys: {unknown}")

        optimization = data.pop("optimization", None)
        if isinstance(optimization, dict):
            data["optimization"] = OptimizationConfig(**optimization)
        elif optimization is not None:
            data["optimization"] = optimization
        if "kernel_weights" in data:
            data["kernel_weights"] = {str(k): float(v) for k, v in data["kernel_weights"].items()}
        return cls(**data)

    def with_overrides(self, **overrides: Any) -> "RunConfig":
        """Copy with non-None overrides applied (CLI flags win over file values)."""
        data = self.to_dict()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return RunConfig.from_dict(data)


def load_run_config(path: str) -> RunConfig:
    cfg_path = Path(path)
    with cfg_path.open("r", encoding="utf-8") as f:
        payload = json.load(f)
    if not isinstance(payload, dict):
        raise ValueError(f"Run config must be a JSON object: {cfg_path}")
    return RunConfig.from_dict(payload)

