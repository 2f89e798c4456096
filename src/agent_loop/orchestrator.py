"""The control loop: call the agent until the task is done or the budget runs out."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from agent_loop.adapters.base import ExecuteOptions, ToolAdapter, estimate_tokens
from agent_loop.checkpoint import Checkpointer
from agent_loop.context import ContextManager, PromptNotFoundError
from agent_loop.models import (
    OrchestratorState,
    OrchestratorStatus,
    SafetyLimits,
    StopReason,
    ToolResponse,
    TriggerReason,
)
from agent_loop.retry import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAYS_MS, execute_with_retry
from agent_loop.safety import SafetyGuard
from agent_loop.tasks import TaskTracker
from agent_loop.telemetry.cost import CostTracker
from agent_loop.telemetry.iteration_stats import IterationStats
from agent_loop.telemetry.metrics import MetricsTracker
from agent_loop.telemetry.snapshots import write_json_atomic

logger = logging.getLogger(__name__)

STATE_SNAPSHOT_NAME = "state.json"
METRICS_SNAPSHOT_NAME = "metrics.json"
_PAUSE_POLL_SECONDS = 0.1


class OrchestratorAlreadyRunningError(RuntimeError):
    """Raised when ``run()`` is called on a loop that has not finished."""


@dataclass(slots=True)
class LoopOptions:
    """Knobs of the control loop that are not part of the safety budget."""

    checkpoint_interval: int = 5
    iteration_delay_seconds: float = 2.0
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delays_ms: tuple[int, ...] = DEFAULT_RETRY_DELAYS_MS
    metrics_dir: Path | None = None
    execute_options: ExecuteOptions = field(default_factory=ExecuteOptions)


@dataclass(slots=True)
class IterationOutcome:
    """What one iteration produced, after retries and fallbacks."""

    iteration: int
    response: ToolResponse
    tool: str
    trigger_reason: TriggerReason
    duration_seconds: float
    cost_usd: float


class Orchestrator:
    """Runs one agent against one prompt under a safety budget.

    The loop is single threaded. ``stop()``, ``pause()`` and ``resume()`` only
    set flags that are observed between iterations, so they are safe to call
    from signal handlers and monitor threads.
    """

    def __init__(  # noqa: PLR0913
        self,
        adapter: ToolAdapter,
        context: ContextManager,
        *,
        limits: SafetyLimits | None = None,
        options: LoopOptions | None = None,
        fallback_adapters: Sequence[ToolAdapter] = (),
        checkpointer: Checkpointer | None = None,
        cost_tracker: CostTracker | None = None,
        iteration_stats: IterationStats | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.adapter = adapter
        self.context = context
        self.options = options or LoopOptions()
        self.fallback_adapters = list(fallback_adapters)
        self.safety = SafetyGuard(limits)
        self.checkpointer = checkpointer
        self.cost_tracker = cost_tracker or CostTracker()
        self.iteration_stats = iteration_stats or IterationStats()
        self.metrics = MetricsTracker()
        self.tasks = TaskTracker()
        self._sleep = sleep
        self._clock = clock
        self._status = OrchestratorStatus.INIT
        self._stop_reason: StopReason | None = None
        self._stop_detail: str | None = None
        self._stop_requested = False
        self._pause_requested = False
        self._stop_signal_name: str | None = None
        self._iteration = 0
        self._started: float | None = None

    @property
    def status(self) -> OrchestratorStatus:
        return self._status

    @property
    def stop_reason(self) -> StopReason | None:
        return self._stop_reason

    @property
    def iteration(self) -> int:
        return self._iteration

    def run(self) -> OrchestratorState:
        """Drive the loop to a terminal state and return the final snapshot.

        A missing prompt ends the run in ``error`` without raising. Exceptions
        escaping an adapter also end it in ``error`` and are re-raised.
        """

        if self._status in (OrchestratorStatus.RUNNING, OrchestratorStatus.PAUSED):
            raise OrchestratorAlreadyRunningError("Orchestrator is already running")

        self._reset_run()
        self._status = OrchestratorStatus.RUNNING
        self._started = self._clock()
        self.iteration_stats.record_start()
        logger.info(
            "Starting agent loop with %s (max %d iterations)",
            self.adapter.name,
            self.safety.limits.max_iterations,
        )
        try:
            with self._signal_handlers():
                self._initialize()
                self._loop()
        except PromptNotFoundError as error:
            logger.error("Cannot build prompt: %s", error)
            self._finish(StopReason.ERROR, str(error))
        except Exception as error:
            logger.exception("Agent loop failed")
            self._finish(StopReason.ERROR, str(error))
            raise
        finally:
            self._finalize()
        return self.get_state()

    def stop(self) -> None:
        """Ask the loop to stop at the next iteration boundary."""

        logger.info("Stop requested")
        self._stop_requested = True

    def pause(self) -> None:
        if self._status is OrchestratorStatus.RUNNING:
            self._pause_requested = True

    def resume(self) -> None:
        self._pause_requested = False

    def rollback(self, ref: str, *, hard: bool = False) -> bool:
        """Reset the working tree to an earlier checkpoint."""

        if self.checkpointer is None:
            return False
        result = self.checkpointer.rollback(ref, hard=hard)
        if result.success:
            self.metrics.record_rollback()
        return result.success

    def get_state(self) -> OrchestratorState:
        """Detached snapshot; mutating it never affects the running loop."""

        open_tasks, completed_tasks = self.tasks.snapshot()
        limits = self.safety.limits
        return OrchestratorState(
            status=self._status,
            iteration=self._iteration,
            max_iterations=limits.max_iterations,
            runtime_seconds=self._elapsed(),
            max_runtime_seconds=limits.max_runtime_seconds,
            primary_tool=self.adapter.name,
            prompt_file=str(self.context.prompt_file) if self.context.prompt_file else None,
            stop_reason=self._stop_reason.value if self._stop_reason else None,
            stop_detail=self._stop_detail,
            tasks=open_tasks,
            completed_tasks=completed_tasks,
        )

    def summary_lines(self) -> list[str]:
        stats = self.iteration_stats.to_summary()
        costs = self.cost_tracker.get_summary()
        lines = [
            f"Status: {self._status.value}",
            f"Stop reason: {self._stop_reason.value if self._stop_reason else '-'}",
        ]
        if self._stop_detail:
            lines.append(f"Detail: {self._stop_detail}")
        lines += [
            f"Total iterations: {stats.total}",
            f"Successful: {stats.successes}",
            f"Failed: {stats.failures}",
            f"Success rate: {stats.success_rate * 100:.1f}%",
            f"Runtime: {stats.runtime_seconds:.1f}s",
            f"Total cost: ${costs.total_cost:.4f}",
        ]
        completed = len(self.tasks.completed)
        if completed or self.tasks.pending or self.tasks.current:
            lines.append(f"Tasks completed: {completed}")
        return lines

    def _reset_run(self) -> None:
        self._stop_reason = None
        self._stop_detail = None
        self._stop_requested = False
        self._pause_requested = False
        self._stop_signal_name = None
        self._iteration = 0
        self.safety.reset()
        self.cost_tracker.reset()
        self.metrics.reset()

    def _initialize(self) -> None:
        self.tasks = TaskTracker.from_prompt(self.context.get_prompt())
        if self.context.has_completion_marker():
            logger.info("Task completion marker already present")
            self._finish(StopReason.COMPLETED, "Completion marker found before first iteration")

    def _loop(self) -> None:
        while self._stop_reason is None:
            self._wait_while_paused()
            if self._stop_requested:
                self._finish(StopReason.USER_STOP, self._user_stop_detail())
                return

            prompt = self.context.build_prompt()
            check = self.safety.check(
                iterations=self._iteration,
                elapsed_seconds=self._elapsed(),
                total_cost=self.cost_tracker.get_total_cost(),
            )
            if not check.passed:
                logger.warning("Safety check failed: %s", check.reason)
                self._finish(StopReason.SAFETY_LIMIT, check.reason)
                return

            self._iteration += 1
            outcome = self._run_iteration(self._iteration, prompt)
            if self._after_iteration(outcome):
                return

            if self.context.has_completion_marker():
                logger.info("Task completion marker found")
                self._finish(StopReason.COMPLETED, "Completion marker found")
                return

            self._checkpoint_if_needed(self._iteration)
            self._sleep_with_stop(self.options.iteration_delay_seconds)

    def _run_iteration(self, iteration: int, prompt: str) -> IterationOutcome:
        logger.info("Iteration %d", iteration)
        self.tasks.start_next(iteration)

        started = self._clock()
        adapter, response = self._execute(prompt)
        duration = self._clock() - started

        trigger = _trigger_reason(iteration, success=response.success)
        if response.success:
            self.context.update_context(response.output)
            self.tasks.check_completion(response.output, iteration=iteration)
        else:
            error = response.error or "Unknown error"
            self.context.add_error_feedback(error)
            self.metrics.record_error()
            logger.warning("Iteration %d failed: %s", iteration, error)

        cost = self._record_cost(adapter, prompt, response)
        tools_used = response.metadata.get("tools_used")
        self.iteration_stats.record_iteration(
            iteration=iteration,
            duration_seconds=duration,
            success=response.success,
            error=response.error or "",
            trigger_reason=trigger.value,
            output=response.output,
            tokens_used=response.tokens_used or 0,
            cost_usd=cost,
            tools_used=[str(tool) for tool in tools_used] if isinstance(tools_used, list) else [],
        )
        self.metrics.record_iteration(success=response.success)
        return IterationOutcome(
            iteration=iteration,
            response=response,
            tool=adapter.name,
            trigger_reason=trigger,
            duration_seconds=duration,
            cost_usd=cost,
        )

    def _execute(self, prompt: str) -> tuple[ToolAdapter, ToolResponse]:
        primary = self._call(self.adapter, prompt)
        if primary.success:
            return self.adapter, primary
        for fallback in self.fallback_adapters:
            if not fallback.ensure_available():
                continue
            logger.info("Trying fallback adapter %s", fallback.name)
            response = self._call(fallback, prompt)
            if response.success:
                return fallback, response
        return self.adapter, primary

    def _call(self, adapter: ToolAdapter, prompt: str) -> ToolResponse:
        return execute_with_retry(
            adapter,
            prompt,
            options=self.options.execute_options,
            max_retries=self.options.max_retries,
            retry_delays_ms=self.options.retry_delays_ms,
            sleep=self._sleep,
        )

    def _record_cost(self, adapter: ToolAdapter, prompt: str, response: ToolResponse) -> float:
        """Account for one call: reported cost, then reported tokens, then an estimate."""

        metadata = response.metadata
        input_tokens = _as_int(metadata.get("input_tokens"))
        output_tokens = _as_int(metadata.get("output_tokens"))
        reported = input_tokens is not None or output_tokens is not None
        if not response.success and response.cost_usd is None and not reported:
            return 0.0
        if not reported:
            input_tokens = estimate_tokens(prompt)
            output_tokens = estimate_tokens(response.output)
        return self.cost_tracker.add_usage(
            adapter.pricing_key or adapter.name,
            input_tokens or 0,
            output_tokens or 0,
            cost_usd=response.cost_usd,
        )

    def _after_iteration(self, outcome: IterationOutcome) -> bool:
        """Update the guard; True when the loop must stop."""

        response = outcome.response
        if response.success:
            self.safety.record_success()
            if self.safety.detect_loop(response.output):
                self._finish(StopReason.LOOP_DETECTED, "Agent output repeats recent iterations")
                return True
            return False

        self.safety.record_failure()
        if self.safety.failure_limit_reached():
            self._finish(
                StopReason.CONSECUTIVE_FAILURES,
                f"Too many consecutive failures ({self.safety.consecutive_failures})",
            )
            return True
        return False

    def _checkpoint_if_needed(self, iteration: int) -> None:
        if iteration % max(self.options.checkpoint_interval, 1) != 0:
            return
        if self.checkpointer is not None and self.checkpointer.should_checkpoint(iteration):
            result = self.checkpointer.checkpoint(iteration)
            if result.success:
                self.metrics.record_checkpoint()
        self._write_snapshots()

    def _finish(self, reason: StopReason, detail: str | None = None) -> None:
        if self._stop_reason is not None:
            return
        self._stop_reason = reason
        self._stop_detail = detail
        logger.info("Agent loop stopping: %s%s", reason.value, f" ({detail})" if detail else "")

    def _finalize(self) -> None:
        if self._stop_reason is None:
            self._finish(StopReason.USER_STOP, self._user_stop_detail())
        if self._stop_reason is StopReason.COMPLETED:
            self._status = OrchestratorStatus.COMPLETED
        elif self._stop_reason is StopReason.ERROR:
            self._status = OrchestratorStatus.ERROR
        else:
            self._status = OrchestratorStatus.STOPPED

        if self.checkpointer is not None and self._iteration > 0:
            result = self.checkpointer.final_checkpoint(self._iteration)
            if result is not None and result.success:
                self.metrics.record_checkpoint()
        self._write_snapshots()
        for adapter in (self.adapter, *self.fallback_adapters):
            adapter.close()
        for line in self.summary_lines():
            logger.info(line)

    def _write_snapshots(self) -> None:
        metrics_dir = self.options.metrics_dir
        if metrics_dir is None:
            return
        try:
            write_json_atomic(metrics_dir / STATE_SNAPSHOT_NAME, self.get_state().to_dict())
            write_json_atomic(
                metrics_dir / METRICS_SNAPSHOT_NAME,
                {
                    "metrics": self.metrics.to_dict(),
                    "iterations": self.iteration_stats.to_dict(),
                    "cost": self.cost_tracker.get_summary().to_dict(),
                },
            )
        except OSError as error:
            logger.warning("Failed to write snapshots to %s: %s", metrics_dir, error)

    def _elapsed(self) -> float:
        if self._started is None:
            return 0.0
        return self._clock() - self._started

    def _user_stop_detail(self) -> str:
        if self._stop_signal_name:
            return f"Received {self._stop_signal_name}"
        return "Stop requested"

    def _wait_while_paused(self) -> None:
        if not self._pause_requested:
            return
        self._status = OrchestratorStatus.PAUSED
        logger.info("Agent loop paused")
        while self._pause_requested and not self._stop_requested:
            self._sleep(_PAUSE_POLL_SECONDS)
        self._status = OrchestratorStatus.RUNNING
        logger.info("Agent loop resumed")

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = self._clock() + seconds
        while not self._stop_requested and self._clock() < deadline:
            self._sleep(min(0.1, max(0.0, deadline - self._clock())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        logger.info("Received %s, stopping after the current iteration", signal_name)
        self._stop_signal_name = signal_name
        self._stop_requested = True


def _as_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)


def _trigger_reason(iteration: int, *, success: bool) -> TriggerReason:
    if not success:
        return TriggerReason.RECOVERY
    return TriggerReason.INITIAL if iteration == 1 else TriggerReason.PREVIOUS_SUCCESS
