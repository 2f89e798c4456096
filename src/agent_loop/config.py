"""Runtime configuration for the agent loop."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar

from agent_loop.adapters.acp.models import PermissionMode
from agent_loop.adapters.base import AgentType
from agent_loop.models import SafetyLimits

E = TypeVar("E", bound=Enum)


@dataclass(slots=True)
class LoopSettings:
    """What to run and how often to checkpoint."""

    agent: AgentType = AgentType.AUTO
    prompt_file: Path = Path("PROMPT.md")
    prompt_text: str | None = None
    checkpoint_interval: int = 5
    iteration_delay_seconds: float = 2.0
    git_checkpoint: bool = True
    fallback_enabled: bool = False


@dataclass(slots=True)
class SafetySettings:
    """Budget of one run."""

    max_iterations: int = 100
    max_runtime_seconds: int = 14_400
    max_cost_usd: float = 50.0
    consecutive_failure_limit: int = 5
    loop_similarity_threshold: float = 0.9
    max_recent_outputs: int = 5

    def to_limits(self) -> SafetyLimits:
        return SafetyLimits(
            max_iterations=self.max_iterations,
            max_runtime_seconds=self.max_runtime_seconds,
            max_cost_usd=self.max_cost_usd,
            consecutive_failure_limit=self.consecutive_failure_limit,
            loop_similarity_threshold=self.loop_similarity_threshold,
            max_recent_outputs=self.max_recent_outputs,
        )


@dataclass(slots=True)
class AdapterSettings:
    """Agent invocation settings shared by all adapters."""

    timeout_seconds: float = 300.0
    max_retries: int = 3
    retry_delays_ms: tuple[int, ...] = (1_000, 3_000, 5_000)
    extra_args: tuple[str, ...] = ()
    command: tuple[str, ...] = ()
    model: str | None = None
    verbose: bool = False


@dataclass(slots=True)
class AcpSettings:
    """Protocol adapter settings."""

    agent_command: str = "gemini"
    permission_mode: PermissionMode = PermissionMode.AUTO_APPROVE
    allowed_tools: tuple[str, ...] = ()


@dataclass(slots=True)
class TelemetrySettings:
    """Where and how much run history is kept."""

    output_preview_length: int = 500
    max_iterations_stored: int = 1_000
    metrics_dir: Path = Path(".agent/metrics")
    cache_dir: Path = Path(".agent/cache")
    max_context_size: int = 8_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    loop: LoopSettings = field(default_factory=LoopSettings)
    safety: SafetySettings = field(default_factory=SafetySettings)
    adapter: AdapterSettings = field(default_factory=AdapterSettings)
    acp: AcpSettings = field(default_factory=AcpSettings)
    telemetry: TelemetrySettings = field(default_factory=TelemetrySettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``AGENT_LOOP_*`` variables with local-development defaults."""

        prompt_text = os.getenv("AGENT_LOOP_PROMPT_TEXT", "").strip()
        model = os.getenv("AGENT_LOOP_MODEL", "").strip()
        return cls(
            loop=LoopSettings(
                agent=_env_enum("AGENT_LOOP_AGENT", AgentType, AgentType.AUTO),
                prompt_file=Path(os.getenv("AGENT_LOOP_PROMPT_FILE", "PROMPT.md")),
                prompt_text=prompt_text or None,
                checkpoint_interval=int(os.getenv("AGENT_LOOP_CHECKPOINT_INTERVAL", "5")),
                iteration_delay_seconds=float(
                    os.getenv("AGENT_LOOP_ITERATION_DELAY_SECONDS", "2.0"),
                ),
                git_checkpoint=_env_bool("AGENT_LOOP_GIT_CHECKPOINT", default=True),
                fallback_enabled=_env_bool("AGENT_LOOP_FALLBACK_ENABLED", default=False),
            ),
            safety=SafetySettings(
                max_iterations=int(os.getenv("AGENT_LOOP_MAX_ITERATIONS", "100")),
                max_runtime_seconds=int(os.getenv("AGENT_LOOP_MAX_RUNTIME_SECONDS", "14400")),
                max_cost_usd=float(os.getenv("AGENT_LOOP_MAX_COST_USD", "50.0")),
                consecutive_failure_limit=int(
                    os.getenv("AGENT_LOOP_CONSECUTIVE_FAILURE_LIMIT", "5"),
                ),
                loop_similarity_threshold=float(
                    os.getenv("AGENT_LOOP_LOOP_SIMILARITY_THRESHOLD", "0.9"),
                ),
                max_recent_outputs=int(os.getenv("AGENT_LOOP_MAX_RECENT_OUTPUTS", "5")),
            ),
            adapter=AdapterSettings(
                timeout_seconds=float(os.getenv("AGENT_LOOP_TIMEOUT_SECONDS", "300")),
                max_retries=int(os.getenv("AGENT_LOOP_MAX_RETRIES", "3")),
                retry_delays_ms=_env_int_tuple(
                    "AGENT_LOOP_RETRY_DELAYS_MS",
                    (1_000, 3_000, 5_000),
                ),
                extra_args=tuple(shlex.split(os.getenv("AGENT_LOOP_EXTRA_ARGS", ""))),
                command=tuple(shlex.split(os.getenv("AGENT_LOOP_AGENT_COMMAND", ""))),
                model=model or None,
                verbose=_env_bool("AGENT_LOOP_VERBOSE", default=False),
            ),
            acp=AcpSettings(
                agent_command=os.getenv("AGENT_LOOP_ACP_AGENT_COMMAND", "gemini"),
                permission_mode=_env_enum(
                    "AGENT_LOOP_ACP_PERMISSION_MODE",
                    PermissionMode,
                    PermissionMode.AUTO_APPROVE,
                ),
                allowed_tools=_env_csv("AGENT_LOOP_ACP_ALLOWED_TOOLS"),
            ),
            telemetry=TelemetrySettings(
                output_preview_length=int(os.getenv("AGENT_LOOP_OUTPUT_PREVIEW_LENGTH", "500")),
                max_iterations_stored=int(
                    os.getenv("AGENT_LOOP_MAX_ITERATIONS_STORED", "1000"),
                ),
                metrics_dir=Path(os.getenv("AGENT_LOOP_METRICS_DIR", ".agent/metrics")),
                cache_dir=Path(os.getenv("AGENT_LOOP_CACHE_DIR", ".agent/cache")),
                max_context_size=int(os.getenv("AGENT_LOOP_MAX_CONTEXT_SIZE", "8000")),
            ),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` naming the first invalid setting."""

        if self.safety.max_iterations <= 0:
            raise ValueError("AGENT_LOOP_MAX_ITERATIONS must be > 0.")
        if self.safety.max_runtime_seconds <= 0:
            raise ValueError("AGENT_LOOP_MAX_RUNTIME_SECONDS must be > 0.")
        if self.safety.max_cost_usd < 0:
            raise ValueError("AGENT_LOOP_MAX_COST_USD must be >= 0.")
        if self.safety.consecutive_failure_limit <= 0:
            raise ValueError("AGENT_LOOP_CONSECUTIVE_FAILURE_LIMIT must be > 0.")
        if not 0.0 <= self.safety.loop_similarity_threshold <= 1.0:
            raise ValueError("AGENT_LOOP_LOOP_SIMILARITY_THRESHOLD must be within [0, 1].")
        if self.safety.max_recent_outputs < 0:
            raise ValueError("AGENT_LOOP_MAX_RECENT_OUTPUTS must be >= 0.")
        if self.loop.checkpoint_interval <= 0:
            raise ValueError("AGENT_LOOP_CHECKPOINT_INTERVAL must be > 0.")
        if self.loop.iteration_delay_seconds < 0:
            raise ValueError("AGENT_LOOP_ITERATION_DELAY_SECONDS must be >= 0.")
        if self.adapter.timeout_seconds <= 0:
            raise ValueError("AGENT_LOOP_TIMEOUT_SECONDS must be > 0.")
        if self.adapter.max_retries < 0:
            raise ValueError("AGENT_LOOP_MAX_RETRIES must be >= 0.")
        if any(delay < 0 for delay in self.adapter.retry_delays_ms):
            raise ValueError("AGENT_LOOP_RETRY_DELAYS_MS must not contain negative values.")
        if self.telemetry.output_preview_length <= 0:
            raise ValueError("AGENT_LOOP_OUTPUT_PREVIEW_LENGTH must be > 0.")
        if self.telemetry.max_iterations_stored <= 0:
            raise ValueError("AGENT_LOOP_MAX_ITERATIONS_STORED must be > 0.")
        if self.telemetry.max_context_size <= 0:
            raise ValueError("AGENT_LOOP_MAX_CONTEXT_SIZE must be > 0.")
        if self.loop.agent is AgentType.ACP and not self.acp.agent_command.strip():
            raise ValueError("AGENT_LOOP_ACP_AGENT_COMMAND must not be empty.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_enum(name: str, enum_type: type[E], default: E) -> E:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return enum_type(value.strip().lower())
    except ValueError as error:
        choices = ", ".join(member.value for member in enum_type)
        raise ValueError(
            f"Invalid value for {name}: {value!r}. Expected one of: {choices}",
        ) from error


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    parts = _env_csv(name)
    if not parts:
        return default
    try:
        return tuple(int(part) for part in parts)
    except ValueError as error:
        raise ValueError(f"Invalid integer list for {name}: {os.getenv(name)!r}") from error
