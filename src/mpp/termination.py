"""
Termination conditions for the optimization loop.

`continue_further(iteration, score, size)` is called once before the first
iteration (iteration = 0) and once after every non-null iteration, with the
number of completed iterations, the current energy and the mark count.
"""
from __future__ import annotations

import math
import threading
from abc import ABC, abstractmethod
from typing import Optional, Sequence


class TerminationCondition(ABC):
    def __init__(self):
        self.reason: Optional[str] = None

    @abstractmethod
    def continue_further(self, iteration: int, score: float, size: int) -> bool:
        ...

    def reset(self) -> None:
        self.reason = None


class IterationLimit(TerminationCondition):
    def __init__(self, max_iterations: int):
        super().__init__()
        if max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {max_iterations}")
        self.max_iterations = int(max_iterations)

    def continue_further(self, iteration: int, score: float, size: int) -> bool:
        if iteration >= self.max_iterations:
            self.reason = "max_iterations"
            return False
        return True


class ScorePlateau(TerminationCondition):
    """Stops when the best score has not improved by more than `tolerance`
    over `window` consecutive checks."""

    def __init__(self, window: int, tolerance: float = 1e-9):
        super().__init__()
        if window < 1:
            raise ValueError(f"window must be >= 1, got {window}")
        if tolerance < 0:
            raise ValueError(f"tolerance must be >= 0, got {tolerance}")
        self.window = int(window)
        self.tolerance = float(tolerance)
        self._best = math.inf
        self._stale = 0

    def continue_further(self, iteration: int, score: float, size: int) -> bool:
        if score < self._best - self.tolerance:
            self._best = score
            self._stale = 0
        else:
            self._stale += 1
        if self._stale >= self.window:
            self.reason = "plateau"
            return False
        return True

    def reset(self) -> None:
        super().reset()
        self._best = math.inf
        self._stale = 0


class TargetScore(TerminationCondition):
    """Stops once the score reaches `threshold` or lower."""

    def __init__(self, threshold: float):
        super().__init__()
        self.threshold = float(threshold)

    def continue_further(self, iteration: int, score: float, size: int) -> bool:
        if score <= self.threshold:
            self.reason = "target_score"
            return False
        return True


class SizeLimit(TerminationCondition):
    def __init__(self, max_size: int):
        super().__init__()
        if max_size < 0:
            raise ValueError(f"max_size must be >= 0, got {max_size}")
        self.max_size = int(max_size)

    def continue_further(self, iteration: int, score: float, size: int) -> bool:
        if size >= self.max_size:
            self.reason = "size_limit"
            return False
        return True


class CancellationFlag(TerminationCondition):
    """Stops when an external threading.Event is set."""

    def __init__(self, event: Optional[threading.Event] = None):
        super().__init__()
        self.event = event if event is not None else threading.Event()

    def continue_further(self, iteration: int, score: float, size: int) -> bool:
        if self.event.is_set():
            self.reason = "cancelled"
            return False
        return True


class _Combinator(TerminationCondition):
    def __init__(self, conditions: Sequence[TerminationCondition]):
        super().__init__()
        if not conditions:
            raise ValueError(f"{type(self).__name__} needs at least one condition")
        self.conditions = list(conditions)

    def _evaluate(self, iteration: int, score: float, size: int):
        # Every child sees every call so stateful conditions stay current
        return [c.continue_further(iteration, score, size) for c in self.conditions]

    def reset(self) -> None:
        super().reset()
        for condition in self.conditions:
            condition.reset()


class AllOf(_Combinator):
    """Continue while every child wants to continue."""

    def continue_further(self, iteration: int, score: float, size: int) -> bool:
        votes = self._evaluate(iteration, score, size)
        if all(votes):
            return True
        self.reason = next(c.reason for c, v in zip(self.conditions, votes) if not v)
        return False


class AnyOf(_Combinator):
    """Continue while at least one child wants to continue."""

    def continue_further(self, iteration: int, score: float, size: int) -> bool:
        votes = self._evaluate(iteration, score, size)
        if any(votes):
            return True
        self.reason = "+".join(str(c.reason) for c in self.conditions)
        return False
