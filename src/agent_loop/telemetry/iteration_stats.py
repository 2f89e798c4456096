"""Bounded per-iteration history for one orchestrator run."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime

from agent_loop.models import IterationRecord, utc_now
from agent_loop.telemetry.redaction import preview

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS_STORED = 1_000
DEFAULT_OUTPUT_PREVIEW_LENGTH = 500


@dataclass(slots=True)
class IterationSummary:
    """Aggregate counters derived from the iteration history."""

    total: int
    successes: int
    failures: int
    success_rate: float
    runtime_seconds: float
    average_duration_seconds: float
    last_error: str | None

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": self.success_rate,
            "runtime_seconds": self.runtime_seconds,
            "average_duration_seconds": self.average_duration_seconds,
            "last_error": self.last_error,
        }


class IterationStats:
    """Memory-bounded history of iterations; the oldest records are evicted first.

    Totals (``total``, ``successes``, ``failures``) count every recorded
    iteration, including evicted ones.
    """

    def __init__(
        self,
        *,
        max_iterations_stored: int = DEFAULT_MAX_ITERATIONS_STORED,
        max_preview_length: int = DEFAULT_OUTPUT_PREVIEW_LENGTH,
    ) -> None:
        self.max_iterations_stored = max(max_iterations_stored, 1)
        self.max_preview_length = max_preview_length
        self._records: deque[IterationRecord] = deque(maxlen=self.max_iterations_stored)
        self._total = 0
        self._successes = 0
        self._failures = 0
        self._started_at: datetime | None = None

    @property
    def total(self) -> int:
        return self._total

    @property
    def successes(self) -> int:
        return self._successes

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def current_iteration(self) -> int:
        return self._total

    def record_start(self) -> None:
        """Mark the run start used for runtime reporting; later calls are ignored."""

        if self._started_at is None:
            self._started_at = utc_now()

    def record_iteration(  # noqa: PLR0913
        self,
        *,
        iteration: int,
        duration_seconds: float,
        success: bool,
        error: str = "",
        trigger_reason: str = "",
        output: str = "",
        tokens_used: int = 0,
        cost_usd: float = 0.0,
        tools_used: list[str] | None = None,
    ) -> IterationRecord:
        self.record_start()
        record = IterationRecord(
            iteration=iteration,
            duration_seconds=duration_seconds,
            success=success,
            error=error,
            timestamp=utc_now(),
            trigger_reason=trigger_reason,
            output_preview=preview(output, self.max_preview_length) if output else "",
            tokens_used=tokens_used,
            cost_usd=cost_usd,
            tools_used=list(tools_used or []),
        )
        self._records.append(record)
        self._total += 1
        if success:
            self._successes += 1
        else:
            self._failures += 1
        return record

    def get_success_rate(self) -> float:
        if self._total == 0:
            return 0.0
        return self._successes / self._total

    def get_runtime_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        return (utc_now() - self._started_at).total_seconds()

    def get_recent_iterations(self, count: int) -> list[IterationRecord]:
        if count <= 0:
            return []
        return list(self._records)[-count:]

    def get_average_duration(self) -> float:
        if not self._records:
            return 0.0
        return sum(record.duration_seconds for record in self._records) / len(self._records)

    def get_error_messages(self) -> list[str]:
        return [record.error for record in self._records if not record.success and record.error]

    def get_last_error(self) -> str | None:
        for record in reversed(self._records):
            if not record.success and record.error:
                return record.error
        return None

    def to_summary(self) -> IterationSummary:
        return IterationSummary(
            total=self._total,
            successes=self._successes,
            failures=self._failures,
            success_rate=self.get_success_rate(),
            runtime_seconds=self.get_runtime_seconds(),
            average_duration_seconds=self.get_average_duration(),
            last_error=self.get_last_error(),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            **self.to_summary().to_dict(),
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "iterations": [record.to_dict() for record in self._records],
        }

    def reset(self) -> None:
        self._records.clear()
        self._total = 0
        self._successes = 0
        self._failures = 0
        self._started_at = None
        logger.debug("Iteration stats reset")
