"""
Simulated-annealing optimization loop over a Configuration.

Each iteration asks the proposer for a structural change, evaluates the
candidate energy incrementally, and applies it if the Metropolis-Hastings
test accepts. Rejected candidates leave the configuration untouched.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from mpp.annealing import AnnealingSchedule, metropolis_accept
from mpp.config import OptimizationConfig
from mpp.configuration import Candidate, Configuration
from mpp.energy import EnergyContext, EnergyFunction
from mpp.energy_cache import CacheStats
from mpp.errors import EnergyEvaluationError
from mpp.feedback import FeedbackReceiver, IterationReport, NullFeedback
from mpp.kernels import Proposal
from mpp.marks import Mark
from mpp.proposer import KernelProposer
from mpp.random_source import RandomSource
from mpp.termination import TerminationCondition

logger = logging.getLogger(__name__)


class SchemeState(Enum):
    INITIALIZING = "initializing"
    ITERATING = "iterating"
    TERMINATED = "terminated"


@dataclass
class KernelStats:
    proposed: int = 0
    accepted: int = 0

    @property
    def acceptance_rate(self) -> float:
        return self.accepted / self.proposed if self.proposed else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposed": self.proposed,
            "accepted": self.accepted,
            "acceptance_rate": self.acceptance_rate,
        }


@dataclass
class OptimizationResult:
    configuration: Configuration
    energy: float
    iterations: int
    null_iterations: int
    accepted: int
    rejected: int
    energy_failures: int
    best_energy: float
    best_marks: Tuple[Mark, ...]
    stop_reason: str
    elapsed_seconds: float
    kernel_stats: Dict[str, KernelStats] = field(default_factory=dict)
    feedback_failures: int = 0
    cache_stats: CacheStats = field(default_factory=CacheStats)
    seed: Optional[int] = None

    @property
    def acceptance_rate(self) -> float:
        return self.accepted / self.iterations if self.iterations else 0.0

    @property
    def marks(self) -> Tuple[Mark, ...]:
        return self.configuration.snapshot()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "energy": self.energy,
            "size": len(self.configuration),
            "generation": self.configuration.generation,
            "iterations": self.iterations,
            "null_iterations": self.null_iterations,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "acceptance_rate": self.acceptance_rate,
            "energy_failures": self.energy_failures,
            "best_energy": self.best_energy,
            "best_size": len(self.best_marks),
            "stop_reason": self.stop_reason,
            "elapsed_s": round(self.elapsed_seconds, 3),
            "kernels": {name: s.to_dict() for name, s in sorted(self.kernel_stats.items())},
            "feedback_failures": self.feedback_failures,
            "cache": self.cache_stats.to_dict(),
            "seed": self.seed,
        }


class OptimizationScheme:
    """Runs one annealing chain: proposer + energy + schedule + termination."""

    def __init__(
        self,
        proposer: KernelProposer,
        energy_fn: EnergyFunction,
        schedule: AnnealingSchedule,
        termination: TerminationCondition,
        context: Optional[EnergyContext] = None,
        feedback: Optional[FeedbackReceiver] = None,
        config: Optional[OptimizationConfig] = None,
        initial_marks: int = 0,
    ):
        if initial_marks < 0:
            raise ValueError(f"initial_marks must be >= 0, got {initial_marks}")
        self.proposer = proposer
        self.energy_fn = energy_fn
        self.schedule = schedule
        self.termination = termination
        self.context = context if context is not None else EnergyContext()
        self.feedback = feedback if feedback is not None else NullFeedback()
        self.config = config if config is not None else OptimizationConfig()
        self.initial_marks = initial_marks
        self.state = SchemeState.INITIALIZING
        self._feedback_failures = 0

    def _notify(self, hook: str, *args) -> None:
        try:
            getattr(self.feedback, hook)(*args)
        except Exception:
            self._feedback_failures += 1
            logger.warning("Feedback %s failed", hook, exc_info=True)

    def _evaluate(self, configuration: Configuration, proposal: Proposal) -> Optional[Candidate]:
        """Candidate for a proposal, or None if its energy cannot be used."""
        try:
            candidate = configuration.evaluate(proposal.delta, self.energy_fn, self.context)
        except (EnergyEvaluationError, ArithmeticError) as exc:
            logger.debug("Energy evaluation failed for %s proposal: %s", proposal.kernel, exc)
            return None
        if not math.isfinite(candidate.energy):
            logger.debug("Non-finite energy for %s proposal: %r", proposal.kernel, candidate.energy)
            return None
        return candidate

    def find_optimum(
        self,
        configuration: Configuration,
        random: RandomSource,
        stop_event: Optional[threading.Event] = None,
    ) -> OptimizationResult:
        """Anneal `configuration` in place and return a summary of the run.

        The feedback receiver is closed when the run ends, whether it finishes
        or raises.
        """
        self._feedback_failures = 0
        try:
            result = self._anneal(configuration, random, stop_event)
        finally:
            self._notify("close")
        result.feedback_failures = self._feedback_failures
        return result

    def _anneal(
        self,
        configuration: Configuration,
        random: RandomSource,
        stop_event: Optional[threading.Event],
    ) -> OptimizationResult:
        self.state = SchemeState.INITIALIZING
        self.termination.reset()
        started = time.perf_counter()

        try:
            for mark_type in sorted({mark.name for mark in configuration}):
                self.proposer.check_compatible_with(mark_type)
            if self.initial_marks:
                added = self.proposer.initialize(configuration, self.initial_marks, random)
                logger.info("Initial kernel added %d marks", added)
            energy = configuration.total_energy(self.energy_fn, self.context)
            best_energy = energy
            best_marks = configuration.snapshot()
            logger.info(
                "Starting optimization: marks=%d energy=%.4f kernels=%s",
                len(configuration),
                energy,
                ",".join(self.proposer.names),
            )
            self._notify("on_start", configuration)

            self.state = SchemeState.ITERATING
            iterations = 0
            null_iterations = 0
            consecutive_null = 0
            accepted = 0
            rejected = 0
            energy_failures = 0
            kernel_stats: Dict[str, KernelStats] = {}
            stop_reason = "terminated"
            check_interval = self.config.invariant_check_interval

            keep_going = self.termination.continue_further(0, energy, len(configuration))
            if not keep_going:
                stop_reason = self.termination.reason or stop_reason

            while keep_going:
                if stop_event is not None and stop_event.is_set():
                    stop_reason = "cancelled"
                    break

                proposal = self.proposer.next_proposal(configuration, random)
                if proposal is None:
                    null_iterations += 1
                    consecutive_null += 1
                    if consecutive_null >= self.config.max_consecutive_null_iterations:
                        stop_reason = "no_proposals"
                        break
                    continue

                consecutive_null = 0
                iterations += 1
                stats = kernel_stats.setdefault(proposal.kernel, KernelStats())
                stats.proposed += 1
                temperature = self.schedule.temperature(iterations - 1)

                was_accepted = False
                candidate = self._evaluate(configuration, proposal)
                if candidate is None:
                    energy_failures += 1
                    rejected += 1
                elif metropolis_accept(
                    candidate.energy_before,
                    candidate.energy,
                    temperature,
                    proposal.hastings_ratio,
                    random,
                ):
                    configuration.apply(candidate)
                    was_accepted = True
                    accepted += 1
                    stats.accepted += 1
                    if self.config.track_best and configuration.energy < best_energy:
                        best_energy = configuration.energy
                        best_marks = configuration.snapshot()
                else:
                    rejected += 1

                energy = configuration.energy
                if check_interval and iterations % check_interval == 0:
                    configuration.assert_valid(self.energy_fn, self.context)

                self._notify(
                    "on_iteration",
                    IterationReport(
                        iteration=iterations,
                        energy=energy,
                        accepted=was_accepted,
                        kernel=proposal.kernel,
                        temperature=temperature,
                        size=len(configuration),
                        snapshot=configuration.snapshot(),
                        best_energy=best_energy,
                        changed=proposal.delta.changed_identities,
                    ),
                )

                keep_going = self.termination.continue_further(iterations, energy, len(configuration))
                if not keep_going:
                    stop_reason = self.termination.reason or stop_reason
        finally:
            self.state = SchemeState.TERMINATED

        if not self.config.track_best:
            best_energy = energy
            best_marks = configuration.snapshot()

        result = OptimizationResult(
            configuration=configuration,
            energy=energy,
            iterations=iterations,
            null_iterations=null_iterations,
            accepted=accepted,
            rejected=rejected,
            energy_failures=energy_failures,
            best_energy=best_energy,
            best_marks=best_marks,
            stop_reason=stop_reason,
            elapsed_seconds=time.perf_counter() - started,
            kernel_stats=kernel_stats,
            feedback_failures=self._feedback_failures,
            cache_stats=replace(configuration.cache.stats),
            seed=random.seed,
        )
        self._notify("on_complete", configuration, result)

        if energy_failures:
            logger.warning(
                "%d of %d candidates rejected after energy evaluation failures",
                energy_failures,
                iterations,
            )
        logger.info(
            "Optimization finished: stop_reason=%s iterations=%d accepted=%d energy=%.4f "
            "best=%.4f marks=%d elapsed=%.2fs",
            stop_reason,
            iterations,
            accepted,
            energy,
            best_energy,
            len(configuration),
            result.elapsed_seconds,
        )
        return result
