"""Public API for the marked point process optimizer."""

from mpp.annealing import (
    ConstantTemperature,
    ExponentialInterpolation,
    GeometricCooling,
    LogarithmicCooling,
    acceptance_probability,
    metropolis_accept,
)
from mpp.chains import best_result, chain_seeds, run_chains
from mpp.config import OptimizationConfig, RunConfig, load_run_config
from mpp.configuration import Candidate, Configuration, ConfigurationDelta
from mpp.energy import (
    ConstantEnergy,
    EnergyContext,
    EnergyFunction,
    FunctionEnergy,
    IntensityContrastEnergy,
    OverlapPenalty,
    WeightedSum,
)
from mpp.energy_cache import EnergyCache
from mpp.errors import (
    EnergyEvaluationError,
    InvalidMarkReferenceError,
    InvariantViolationError,
    MppError,
)
from mpp.feedback import (
    BackgroundFeedback,
    CompositeFeedback,
    FeedbackReceiver,
    LoggingFeedback,
    NullFeedback,
    RecordingFeedback,
)
from mpp.geometry import BoundingBox
from mpp.kernels import (
    BirthKernel,
    DeathKernel,
    DilateKernel,
    ExchangeKernel,
    MarkPrior,
    MoveKernel,
    Proposal,
)
from mpp.marks import Ellipse, Ellipsoid, PointsMark, Region, default_region_map, voxelize
from mpp.proposer import KernelProposer, WeightedKernel
from mpp.random_source import RandomSource
from mpp.scheme import OptimizationResult, OptimizationScheme
from mpp.spatial_index import SpatialIndex
from mpp.termination import (
    AllOf,
    AnyOf,
    CancellationFlag,
    IterationLimit,
    ScorePlateau,
    SizeLimit,
    TargetScore,
)

__all__ = [
    "AllOf",
    "AnyOf",
    "BackgroundFeedback",
    "BirthKernel",
    "BoundingBox",
    "CancellationFlag",
    "Candidate",
    "CompositeFeedback",
    "Configuration",
    "ConfigurationDelta",
    "ConstantEnergy",
    "ConstantTemperature",
    "DeathKernel",
    "DilateKernel",
    "Ellipse",
    "Ellipsoid",
    "EnergyCache",
    "EnergyContext",
    "EnergyEvaluationError",
    "EnergyFunction",
    "ExchangeKernel",
    "ExponentialInterpolation",
    "FeedbackReceiver",
    "FunctionEnergy",
    "GeometricCooling",
    "IntensityContrastEnergy",
    "InvalidMarkReferenceError",
    "InvariantViolationError",
    "IterationLimit",
    "KernelProposer",
    "LogarithmicCooling",
    "LoggingFeedback",
    "MarkPrior",
    "MoveKernel",
    "MppError",
    "NullFeedback",
    "OptimizationConfig",
    "OptimizationResult",
    "OptimizationScheme",
    "OverlapPenalty",
    "PointsMark",
    "Proposal",
    "RandomSource",
    "RecordingFeedback",
    "Region",
    "RunConfig",
    "ScorePlateau",
    "SizeLimit",
    "SpatialIndex",
    "TargetScore",
    "WeightedKernel",
    "WeightedSum",
    "acceptance_probability",
    "best_result",
    "chain_seeds",
    "default_region_map",
    "load_run_config",
    "metropolis_accept",
    "run_chains",
    "voxelize",
]
