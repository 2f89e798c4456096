"""Domain models for the agent loop, its safety budget, and telemetry."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class OrchestratorStatus(str, Enum):
    """Orchestrator lifecycle states."""

    INIT = "init"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    ERROR = "error"


class StopReason(str, Enum):
    """Why the control loop left the running state."""

    COMPLETED = "completed"
    SAFETY_LIMIT = "safety_limit"
    LOOP_DETECTED = "loop_detected"
    CONSECUTIVE_FAILURES = "consecutive_failures"
    USER_STOP = "user_stop"
    ERROR = "error"


class TriggerReason(str, Enum):
    """Why one iteration was started."""

    INITIAL = "initial"
    TASK_INCOMPLETE = "task_incomplete"
    PREVIOUS_SUCCESS = "previous_success"
    RECOVERY = "recovery"
    LOOP_DETECTED = "loop_detected"
    SAFETY_LIMIT = "safety_limit"
    USER_STOP = "user_stop"


class RetryCode(str, Enum):
    """Normalized retry classes used by the retry policy."""

    NONE = "none"
    CONNECTION_ERROR = "connection_error"
    TIMEOUT_ERROR = "timeout_error"
    EXECUTION_ERROR = "execution_error"
    ERROR_DURING_EXECUTION = "error_during_execution"
    VALIDATION_ERROR = "validation_error"


RETRYABLE_CODES: frozenset[RetryCode] = frozenset(
    {
        RetryCode.CONNECTION_ERROR,
        RetryCode.TIMEOUT_ERROR,
        RetryCode.EXECUTION_ERROR,
        RetryCode.ERROR_DURING_EXECUTION,
    },
)


class TaskStatus(str, Enum):
    """Lifecycle of a task extracted from the prompt."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(slots=True)
class Task:
    """One unit of work found in the prompt text."""

    id: int
    description: str
    status: TaskStatus
    created_at: datetime
    completed_at: datetime | None = None
    iteration: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "iteration": self.iteration,
        }


@dataclass(frozen=True, slots=True)
class OrchestratorState:
    """Read-only snapshot of the orchestrator handed to monitors."""

    status: OrchestratorStatus
    iteration: int
    max_iterations: int
    runtime_seconds: float
    max_runtime_seconds: float
    primary_tool: str
    prompt_file: str | None
    stop_reason: str | None
    stop_detail: str | None = None
    tasks: tuple[Task, ...] = ()
    completed_tasks: tuple[Task, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "runtime_seconds": self.runtime_seconds,
            "max_runtime_seconds": self.max_runtime_seconds,
            "primary_tool": self.primary_tool,
            "prompt_file": self.prompt_file,
            "stop_reason": self.stop_reason,
            "stop_detail": self.stop_detail,
            "tasks": [task.to_dict() for task in self.tasks],
            "completed_tasks": [task.to_dict() for task in self.completed_tasks],
        }


@dataclass(frozen=True, slots=True)
class SafetyLimits:
    """Budget bounding one run of the control loop."""

    max_iterations: int = 100
    max_runtime_seconds: float = 14_400
    max_cost_usd: float = 10.0
    consecutive_failure_limit: int = 5
    loop_similarity_threshold: float = 0.9
    max_recent_outputs: int = 5


@dataclass(frozen=True, slots=True)
class SafetyCheckResult:
    """Outcome of one budget check."""

    passed: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> SafetyCheckResult:
        return cls(passed=True)

    @classmethod
    def failed(cls, reason: str) -> SafetyCheckResult:
        return cls(passed=False, reason=reason)


@dataclass(frozen=True, slots=True)
class ToolResponse:
    """Result of exactly one adapter invocation."""

    success: bool
    output: str = ""
    error: str | None = None
    tokens_used: int | None = None
    cost_usd: float | None = None
    retry_code: RetryCode = RetryCode.NONE
    metadata: dict[str, Any] = field(default_factory=dict)


def success_response(
    output: str,
    *,
    tokens_used: int | None = None,
    cost_usd: float | None = None,
    metadata: dict[str, Any] | None = None,
) -> ToolResponse:
    """Build a successful tool response."""

    return ToolResponse(
        success=True,
        output=output,
        tokens_used=tokens_used,
        cost_usd=cost_usd,
        metadata=metadata or {},
    )


def error_response(
    error: str,
    *,
    output: str = "",
    retry_code: RetryCode = RetryCode.EXECUTION_ERROR,
    metadata: dict[str, Any] | None = None,
) -> ToolResponse:
    """Build a failed tool response."""

    return ToolResponse(
        success=False,
        output=output,
        error=error,
        retry_code=retry_code,
        metadata=metadata or {},
    )


@dataclass(slots=True)
class IterationRecord:
    """Telemetry captured for one iteration."""

    iteration: int
    duration_seconds: float
    success: bool
    error: str
    timestamp: datetime
    trigger_reason: str
    output_preview: str = ""
    tokens_used: int = 0
    cost_usd: float = 0.0
    tools_used: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload
