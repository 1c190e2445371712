"""
Factories that turn a RunConfig into runnable components.

Plain functions, one per component, so tests and scripts can swap any piece.
"""
from __future__ import annotations

import threading
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from mpp.annealing import (
    AnnealingSchedule,
    ConstantTemperature,
    ExponentialInterpolation,
    GeometricCooling,
    LogarithmicCooling,
)
from mpp.config import RunConfig
from mpp.configuration import Configuration
from mpp.energy import (
    EnergyContext,
    EnergyFunction,
    IntensityContrastEnergy,
    OverlapPenalty,
    WeightedSum,
)
from mpp.feedback import FeedbackReceiver
from mpp.geometry import BoundingBox
from mpp.kernels import (
    BirthKernel,
    DeathKernel,
    DilateKernel,
    ExchangeKernel,
    Kernel,
    MarkPrior,
    MoveKernel,
)
from mpp.marks import Mark, default_region_map
from mpp.proposer import KernelProposer, WeightedKernel
from mpp.scheme import OptimizationScheme
from mpp.termination import (
    AllOf,
    CancellationFlag,
    IterationLimit,
    ScorePlateau,
    SizeLimit,
    TargetScore,
    TerminationCondition,
)


def build_domain(config: RunConfig, extent: Sequence[int]) -> BoundingBox:
    """Box of allowed mark centers inside an image of shape `extent`."""
    if len(extent) != 3:
        raise ValueError(f"Extent must have 3 dimensions, got {tuple(extent)}")
    margin = config.domain_margin
    lo: List[float] = []
    hi: List[float] = []
    for axis, size in enumerate(extent):
        top = float(int(size) - 1)
        m = 0.0 if (config.planar and axis == 2) else min(margin, top / 2.0)
        lo.append(m)
        hi.append(top - m)
    if config.planar:
        hi[2] = lo[2]
    return BoundingBox(tuple(lo), tuple(hi))


def build_prior(config: RunConfig, extent: Sequence[int]) -> MarkPrior:
    return MarkPrior(
        domain=build_domain(config, extent),
        mark_type=config.mark_type,
        min_radius=config.min_radius,
        max_radius=config.max_radius,
        shell=config.shell,
    )


def build_kernel(name: str, config: RunConfig, prior: MarkPrior) -> Kernel:
    if name == "birth":
        return BirthKernel(prior)
    if name == "death":
        return DeathKernel(prior)
    if name == "move":
        return MoveKernel(prior, sigma=config.move_sigma, max_step=config.move_max_step)
    if name == "dilate":
        return DilateKernel(prior, sigma=config.dilate_sigma, max_factor=config.dilate_max_factor)
    if name == "exchange":
        return ExchangeKernel(prior, spread=config.exchange_spread)
    raise ValueError(f"Unknown kernel '{name}'")


def build_proposer(config: RunConfig, prior: MarkPrior) -> KernelProposer:
    kernels = [
        WeightedKernel(build_kernel(name, config, prior), weight)
        for name, weight in config.active_kernels().items()
    ]
    proposer = KernelProposer(kernels, max_attempts=config.max_attempts, initial_kernel=BirthKernel(prior))
    proposer.check_compatible_with(prior.mark_type)
    return proposer


def build_schedule(config: RunConfig) -> AnnealingSchedule:
    if config.schedule == "exponential":
        return ExponentialInterpolation(
            config.start_temperature, config.end_temperature, max(config.iterations, 1),
        )
    if config.schedule == "geometric":
        return GeometricCooling(
            config.start_temperature, rate=config.cooling_rate, minimum=config.end_temperature,
        )
    if config.schedule == "logarithmic":
        return LogarithmicCooling(config.start_temperature)
    return ConstantTemperature(config.start_temperature)


def build_termination(
    config: RunConfig,
    stop_event: Optional[threading.Event] = None,
) -> TerminationCondition:
    conditions: List[TerminationCondition] = [IterationLimit(config.iterations)]
    if config.plateau_window is not None:
        conditions.append(ScorePlateau(config.plateau_window, config.plateau_tolerance))
    if config.target_energy is not None:
        conditions.append(TargetScore(config.target_energy))
    if config.max_marks is not None:
        conditions.append(SizeLimit(config.max_marks))
    if stop_event is not None:
        conditions.append(CancellationFlag(stop_event))
    if len(conditions) == 1:
        return conditions[0]
    return AllOf(conditions)


def build_energy(config: RunConfig) -> EnergyFunction:
    terms: List[Tuple[float, EnergyFunction]] = [
        (config.contrast_weight, IntensityContrastEnergy(threshold=config.contrast_threshold)),
    ]
    if config.overlap_weight > 0:
        terms.append((config.overlap_weight, OverlapPenalty()))
    return WeightedSum(terms)


def build_context(image: Optional[np.ndarray]) -> EnergyContext:
    return EnergyContext(image=image, region_map=default_region_map())


def build_configuration(config: RunConfig, marks: Sequence[Mark] = ()) -> Configuration:
    return Configuration(
        marks,
        max_entries=config.rtree_max_entries,
        cache_capacity=config.cache_capacity,
    )


def build_scheme(
    config: RunConfig,
    context: EnergyContext,
    feedback: Optional[FeedbackReceiver] = None,
    stop_event: Optional[threading.Event] = None,
) -> OptimizationScheme:
    if context.extent is None:
        raise ValueError("build_scheme needs an image in the energy context")
    prior = build_prior(config, context.extent)
    return OptimizationScheme(
        proposer=build_proposer(config, prior),
        energy_fn=build_energy(config),
        schedule=build_schedule(config),
        termination=build_termination(config, stop_event),
        context=context,
        feedback=feedback,
        config=config.optimization,
        initial_marks=config.initial_marks,
    )


def scheme_factory(
    config: RunConfig,
    context: EnergyContext,
    feedback_factory: Optional[Callable[[], FeedbackReceiver]] = None,
    stop_event: Optional[threading.Event] = None,
) -> Callable[[], OptimizationScheme]:
    """Zero-argument factory for chains; every call builds fresh components."""

    def _factory() -> OptimizationScheme:
        feedback = feedback_factory() if feedback_factory is not None else None
        return build_scheme(config, context, feedback=feedback, stop_event=stop_event)

    return _factory
