"""Run-level counters for one orchestrator session."""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass(slots=True)
class RunMetrics:
    """Counters accumulated while the loop runs."""

    iterations: int = 0
    successful_iterations: int = 0
    failed_iterations: int = 0
    errors: int = 0
    checkpoints: int = 0
    rollbacks: int = 0
    started_monotonic: float = field(default_factory=time.monotonic)


class MetricsTracker:
    """Iteration, error and checkpoint counters plus elapsed wall time."""

    def __init__(self) -> None:
        self._metrics = RunMetrics()

    def record_iteration(self, *, success: bool) -> None:
        self._metrics.iterations += 1
        if success:
            self._metrics.successful_iterations += 1
        else:
            self._metrics.failed_iterations += 1

    def record_error(self) -> None:
        self._metrics.errors += 1

    def record_checkpoint(self) -> None:
        self._metrics.checkpoints += 1

    def record_rollback(self) -> None:
        self._metrics.rollbacks += 1

    def get_elapsed_seconds(self) -> float:
        return time.monotonic() - self._metrics.started_monotonic

    def get_elapsed_hours(self) -> float:
        return self.get_elapsed_seconds() / 3600

    def get_success_rate(self) -> float:
        total = self._metrics.successful_iterations + self._metrics.failed_iterations
        if total == 0:
            return 0.0
        return self._metrics.successful_iterations / total

    def get_metrics(self) -> RunMetrics:
        """Copy of the current counters."""

        metrics = self._metrics
        return RunMetrics(
            iterations=metrics.iterations,
            successful_iterations=metrics.successful_iterations,
            failed_iterations=metrics.failed_iterations,
            errors=metrics.errors,
            checkpoints=metrics.checkpoints,
            rollbacks=metrics.rollbacks,
            started_monotonic=metrics.started_monotonic,
        )

    def to_dict(self) -> dict[str, object]:
        metrics = self._metrics
        return {
            "iterations": metrics.iterations,
            "successful_iterations": metrics.successful_iterations,
            "failed_iterations": metrics.failed_iterations,
            "errors": metrics.errors,
            "checkpoints": metrics.checkpoints,
            "rollbacks": metrics.rollbacks,
            "elapsed_hours": self.get_elapsed_hours(),
            "success_rate": self.get_success_rate(),
        }

    def reset(self) -> None:
        self._metrics = RunMetrics()
