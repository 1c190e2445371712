"""
Annealing schedules and the Metropolis-Hastings acceptance test.
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Optional

from mpp.random_source import RandomSource


class AnnealingSchedule(ABC):
    """Temperature as a non-increasing function of the iteration."""

    def __init__(self):
        self.current_temperature: Optional[float] = None

    def temperature(self, iteration: int) -> float:
        value = max(0.0, float(self._compute(int(iteration))))
        self.current_temperature = value
        return value

    @abstractmethod
    def _compute(self, iteration: int) -> float:
        ...


class GeometricCooling(AnnealingSchedule):
    """T(i) = max(minimum, initial * rate**i)."""

    def __init__(self, initial: float, rate: float = 0.999, minimum: float = 0.0):
        super().__init__()
        if initial < 0 or minimum < 0:
            raise ValueError(f"Temperatures must be >= 0, got {initial}, {minimum}")
        if not (0.0 < rate <= 1.0):
            raise ValueError(f"rate must be in (0, 1], got {rate}")
        self.initial = float(initial)
        self.rate = float(rate)
        self.minimum = float(minimum)

    def _compute(self, iteration: int) -> float:
        return max(self.minimum, self.initial * self.rate ** iteration)


class LogarithmicCooling(AnnealingSchedule):
    """T(i) = initial / ln(e + i)."""

    def __init__(self, initial: float):
        super().__init__()
        if initial < 0:
            raise ValueError(f"initial must be >= 0, got {initial}")
        self.initial = float(initial)

    def _compute(self, iteration: int) -> float:
        return self.initial / math.log(math.e + iteration)


class ExponentialInterpolation(AnnealingSchedule):
    """T(i) = start * (end / start) ** (i / (iterations - 1)), held at `end` afterwards."""

    def __init__(self, start: float, end: float, iterations: int):
        super().__init__()
        if start <= 0 or end <= 0:
            raise ValueError(f"start and end must be positive, got {start}, {end}")
        if end > start:
            raise ValueError(f"end ({end}) must not exceed start ({start})")
        if iterations < 1:
            raise ValueError(f"iterations must be >= 1, got {iterations}")
        self.start = float(start)
        self.end = float(end)
        self.iterations = int(iterations)

    def _compute(self, iteration: int) -> float:
        frac = min(1.0, iteration / max(self.iterations - 1, 1))
        return self.start * ((self.end / self.start) ** frac)


class ConstantTemperature(AnnealingSchedule):
    """Fixed temperature; 0 gives a greedy descent."""

    def __init__(self, value: float = 0.0):
        super().__init__()
        if value < 0:
            raise ValueError(f"temperature must be >= 0, got {value}")
        self.value = float(value)

    def _compute(self, iteration: int) -> float:
        return self.value


def acceptance_probability(
    before: float,
    after: float,
    temperature: float,
    hastings: float = 1.0,
) -> float:
    """Metropolis-Hastings acceptance probability for an energy change."""
    if not math.isfinite(after):
        return 0.0
    if after < before:
        return 1.0
    if hastings <= 0.0:
        return 0.0
    if after == before:
        return min(1.0, hastings)
    if temperature <= 0.0:
        return 0.0
    x = (before - after) / temperature + math.log(hastings)
    return math.exp(min(0.0, x))


def metropolis_accept(
    before: float,
    after: float,
    temperature: float,
    hastings: float,
    random: RandomSource,
) -> bool:
    """Accept/reject decision; draws exactly one uniform per call."""
    u = random.next_double()
    return u < acceptance_probability(before, after, temperature, hastings)
