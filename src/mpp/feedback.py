"""
Feedback receivers: observers of an optimization run.

Receivers are notified at start, after every non-null iteration and at
completion. They must not mutate the configuration. A receiver that raises
is logged and counted by the scheme; it never stops the run.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

from mpp.configuration import Configuration
from mpp.marks import Mark

if TYPE_CHECKING:
    from mpp.scheme import OptimizationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IterationReport:
    iteration: int
    energy: float
    accepted: bool
    kernel: str
    temperature: float
    size: int
    snapshot: Tuple[Mark, ...]
    best_energy: float
    changed: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "energy": self.energy,
            "accepted": self.accepted,
            "kernel": self.kernel,
            "temperature": self.temperature,
            "size": self.size,
            "best_energy": self.best_energy,
            "changed": list(self.changed),
        }


class FeedbackReceiver:
    """Base receiver; every hook defaults to a no-op."""

    def on_start(self, configuration: Configuration) -> None:
        pass

    def on_iteration(self, report: IterationReport) -> None:
        pass

    def on_complete(self, configuration: Configuration, result: "OptimizationResult") -> None:
        pass

    def close(self) -> None:
        """Release any resources; called once when a run ends, even on error."""


class NullFeedback(FeedbackReceiver):
    pass


class LoggingFeedback(FeedbackReceiver):
    """Logs progress every `interval` iterations and a summary at the end."""

    def __init__(self, interval: int = 1000, level: int = logging.INFO):
        if interval < 1:
            raise ValueError(f"interval must be >= 1, got {interval}")
        self.interval = interval
        self.level = level

    def on_start(self, configuration: Configuration) -> None:
        logger.log(self.level, "Optimization started with %d marks", len(configuration))

    def on_iteration(self, report: IterationReport) -> None:
        if report.iteration % self.interval != 0:
            return
        logger.log(
            self.level,
            "iter=%d energy=%.4f best=%.4f size=%d T=%.4g kernel=%s accepted=%s",
            report.iteration,
            report.energy,
            report.best_energy,
            report.size,
            report.temperature,
            report.kernel,
            report.accepted,
        )

    def on_complete(self, configuration: Configuration, result: "OptimizationResult") -> None:
        logger.log(
            self.level,
            "Optimization finished: energy=%.4f size=%d iterations=%d acceptance=%.3f",
            result.energy,
            len(configuration),
            result.iterations,
            result.acceptance_rate,
        )


class RecordingFeedback(FeedbackReceiver):
    """Keeps a trace of iteration dicts (most recent `max_records`)."""

    def __init__(self, max_records: Optional[int] = None, every: int = 1):
        if max_records is not None and max_records < 1:
            raise ValueError(f"max_records must be >= 1, got {max_records}")
        if every < 1:
            raise ValueError(f"every must be >= 1, got {every}")
        self.max_records = max_records
        self.every = every
        self.records: List[Dict[str, Any]] = []
        self.started_with: Optional[int] = None
        self.completed = False
        self.result: Optional["OptimizationResult"] = None

    def on_start(self, configuration: Configuration) -> None:
        self.started_with = len(configuration)

    def on_iteration(self, report: IterationReport) -> None:
        if report.iteration % self.every != 0:
            return
        self.records.append(report.to_dict())
        if self.max_records is not None and len(self.records) > self.max_records:
            del self.records[0]

    def on_complete(self, configuration: Configuration, result: "OptimizationResult") -> None:
        self.completed = True
        self.result = result


class CompositeFeedback(FeedbackReceiver):
    """Fans every notification out to several receivers, in order."""

    def __init__(self, receivers: Sequence[FeedbackReceiver]):
        self.receivers = list(receivers)

    def on_start(self, configuration: Configuration) -> None:
        for receiver in self.receivers:
            receiver.on_start(configuration)

    def on_iteration(self, report: IterationReport) -> None:
        for receiver in self.receivers:
            receiver.on_iteration(report)

    def on_complete(self, configuration: Configuration, result: "OptimizationResult") -> None:
        for receiver in self.receivers:
            receiver.on_complete(configuration, result)

    def close(self) -> None:
        for receiver in self.receivers:
            receiver.close()


_STOP = object()


class BackgroundFeedback(FeedbackReceiver):
    """Forwards iteration reports to a slow receiver on a worker thread.

    Reports are queued without blocking; when the queue is full the report is
    dropped and counted. `on_start` and `on_complete` are delivered inline
    (completion waits for the worker to drain first). `close` stops the worker
    when a run ends early on an error.
    """

    def __init__(self, receiver: FeedbackReceiver, max_queue: int = 1024):
        if max_queue < 1:
            raise ValueError(f"max_queue must be >= 1, got {max_queue}")
        self.receiver = receiver
        self.dropped = 0
        self.failures = 0
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue)
        self._worker: Optional[threading.Thread] = None

    def on_start(self, configuration: Configuration) -> None:
        self.receiver.on_start(configuration)
        self._worker = threading.Thread(target=self._drain, name="mpp-feedback", daemon=True)
        self._worker.start()

    def on_iteration(self, report: IterationReport) -> None:
        try:
            self._queue.put_nowait(report)
        except queue.Full:
            self.dropped += 1

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self.receiver.on_iteration(item)
            except Exception:
                self.failures += 1
                logger.warning("Background feedback receiver failed", exc_info=True)

    def _stop_worker(self) -> None:
        if self._worker is None:
            return
        self._queue.put(_STOP)
        self._worker.join()
        self._worker = None

    def on_complete(self, configuration: Configuration, result: "OptimizationResult") -> None:
        self._stop_worker()
        if self.dropped:
            logger.warning("Background feedback dropped %d reports", self.dropped)
        self.receiver.on_complete(configuration, result)

    def close(self) -> None:
        self._stop_worker()
        self.receiver.close()
