"""Budget checks and near-duplicate output detection for the control loop."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import replace

from agent_loop.models import SafetyCheckResult, SafetyLimits
from agent_loop.similarity import similarity_ratio

logger = logging.getLogger(__name__)

HIGH_ITERATION_WARNING = 50
SLOW_ITERATION_FLOOR = 75
SLOW_ITERATION_AVERAGE_SECONDS = 300


class SafetyGuard:
    """Stateless budget checks plus a sliding window of recent agent outputs.

    The guard is owned by a single orchestrator; sharing one instance across
    loops requires the caller to serialize access.
    """

    def __init__(self, limits: SafetyLimits | None = None) -> None:
        self._limits = limits or SafetyLimits()
        self._consecutive_failures = 0
        self._recent_outputs: deque[str] = deque()

    @property
    def limits(self) -> SafetyLimits:
        return self._limits

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def recent_outputs(self) -> tuple[str, ...]:
        return tuple(self._recent_outputs)

    def check(
        self,
        *,
        iterations: int,
        elapsed_seconds: float,
        total_cost: float,
    ) -> SafetyCheckResult:
        """Fail on the first violated limit, most actionable first."""

        limits = self._limits
        if iterations >= limits.max_iterations:
            return SafetyCheckResult.failed(
                f"Reached maximum iterations ({limits.max_iterations})",
            )
        if elapsed_seconds >= limits.max_runtime_seconds:
            return SafetyCheckResult.failed(
                f"Reached maximum runtime ({elapsed_seconds / 3600:.1f} hours)",
            )
        if total_cost >= limits.max_cost_usd:
            return SafetyCheckResult.failed(f"Reached maximum cost (${total_cost:.2f})")
        if self._consecutive_failures >= limits.consecutive_failure_limit:
            return SafetyCheckResult.failed(
                f"Too many consecutive failures ({self._consecutive_failures})",
            )

        if iterations > HIGH_ITERATION_WARNING:
            logger.warning("High iteration count: %d", iterations)
        if (
            iterations > SLOW_ITERATION_FLOOR
            and elapsed_seconds / iterations > SLOW_ITERATION_AVERAGE_SECONDS
        ):
            return SafetyCheckResult.failed("Iterations taking too long on average")

        return SafetyCheckResult.ok()

    def record_success(self) -> None:
        self._consecutive_failures = 0

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        logger.warning("Consecutive failures: %d", self._consecutive_failures)

    def failure_limit_reached(self) -> bool:
        return self._consecutive_failures >= self._limits.consecutive_failure_limit

    def reset(self) -> None:
        """Clear counters and the output window at a session boundary."""

        self._consecutive_failures = 0
        self._recent_outputs.clear()

    def clear_loop_history(self) -> None:
        self._recent_outputs.clear()

    def detect_loop(self, output: str) -> bool:
        """Return True when output nearly repeats one of the recent outputs."""

        if not output:
            return False

        try:
            for previous in self._recent_outputs:
                ratio = similarity_ratio(output, previous)
                if ratio >= self._limits.loop_similarity_threshold:
                    logger.warning(
                        "Loop detected: %.1f%% similarity to previous output",
                        ratio * 100,
                    )
                    return True
        except Exception as error:  # noqa: BLE001
            logger.warning("Error in loop detection: %s", error)
            return False

        self._recent_outputs.append(output)
        self._trim_window()
        return False

    def update_config(self, **changes: float | int) -> SafetyLimits:
        """Replace selected limits; unknown names raise TypeError."""

        self._limits = replace(self._limits, **changes)
        self._trim_window()
        return self._limits

    def _trim_window(self) -> None:
        while len(self._recent_outputs) > max(self._limits.max_recent_outputs, 0):
            self._recent_outputs.popleft()
