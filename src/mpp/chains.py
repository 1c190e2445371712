"""
Independent annealing chains run concurrently.

Each chain gets its own Configuration (and therefore its own spatial index and
energy cache), its own RandomSource and its own scheme instance, so chains
share nothing mutable.
"""
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from mpp.configuration import Configuration
from mpp.marks import Mark
from mpp.random_source import RandomSource
from mpp.scheme import OptimizationResult, OptimizationScheme

logger = logging.getLogger(__name__)

ConfigurationFactory = Callable[[Sequence[Mark]], Configuration]


def chain_seeds(seed: Optional[int], count: int) -> List[int]:
    """Derive `count` independent chain seeds from one master seed."""
    ss = np.random.SeedSequence() if seed is None else np.random.SeedSequence(int(seed))
    return [int(child.generate_state(1)[0]) for child in ss.spawn(count)]


def _effective_workers(max_workers: Optional[int], chains: int) -> int:
    req = int(max_workers) if max_workers else int(os.cpu_count() or 1)
    return min(max(1, req), max(1, chains))


def _run_chain(
    scheme_factory: Callable[[], OptimizationScheme],
    configuration_factory: ConfigurationFactory,
    initial_marks: Sequence[Mark],
    seed: int,
    stop_event: Optional[threading.Event],
) -> OptimizationResult:
    scheme = scheme_factory()
    configuration = configuration_factory(initial_marks)
    result = scheme.find_optimum(configuration, RandomSource(seed), stop_event=stop_event)
    result.seed = seed
    return result


def run_chains(
    scheme_factory: Callable[[], OptimizationScheme],
    initial_marks: Sequence[Mark],
    seeds: Sequence[int],
    max_workers: Optional[int] = None,
    stop_event: Optional[threading.Event] = None,
    configuration_factory: ConfigurationFactory = Configuration,
) -> List[OptimizationResult]:
    """Run one chain per seed; results are returned in seed order."""
    if not seeds:
        return []
    workers = _effective_workers(max_workers, len(seeds))
    logger.info("Running %d chains on %d workers", len(seeds), workers)

    if workers == 1:
        return [
            _run_chain(scheme_factory, configuration_factory, initial_marks, seed, stop_event)
            for seed in seeds
        ]

    results: Dict[int, OptimizationResult] = {}
    with ThreadPoolExecutor(max_workers=workers) as ex:
        future_to_idx = {
            ex.submit(
                _run_chain, scheme_factory, configuration_factory, initial_marks, seed, stop_event,
            ): idx
            for idx, seed in enumerate(seeds)
        }
        for fut in as_completed(future_to_idx):
            idx = future_to_idx[fut]
            results[idx] = fut.result()
            logger.debug(
                "Chain %d finished: best=%.4f stop_reason=%s",
                idx,
                results[idx].best_energy,
                results[idx].stop_reason,
            )
    return [results[i] for i in range(len(seeds))]


def best_result(results: Sequence[OptimizationResult]) -> OptimizationResult:
    """Result with the lowest best energy (earliest chain wins ties)."""
    if not results:
        raise ValueError("best_result needs at least one result")
    return min(results, key=lambda r: r.best_energy)
