"""Controllers for agent-loop CLI commands."""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

from agent_loop.adapters import (
    AUTO_DETECT_ORDER,
    AcpOptions,
    AdapterConfig,
    AdapterUnavailableError,
    AgentType,
    ExecuteOptions,
    ToolAdapter,
    create_adapter,
    get_adapter,
)
from agent_loop.adapters.acp.adapter import PermissionPrompt
from agent_loop.adapters.acp.models import PermissionMode
from agent_loop.checkpoint import Checkpointer, GitCli
from agent_loop.config import Settings
from agent_loop.context import ContextManager
from agent_loop.models import OrchestratorState, OrchestratorStatus
from agent_loop.orchestrator import LoopOptions, Orchestrator
from agent_loop.telemetry.cost import CostTracker
from agent_loop.telemetry.iteration_stats import IterationStats

logger = logging.getLogger(__name__)

FALLBACK_ORDER: tuple[AgentType, ...] = (AgentType.CLAUDE, AgentType.Q, AgentType.GEMINI)


@dataclass(slots=True)
class LoopRunCommand:
    """CLI input for one orchestrated run; ``None`` keeps the environment setting."""

    prompt_file: Path | None = None
    prompt_text: str | None = None
    agent: str | None = None
    max_iterations: int | None = None
    max_runtime_seconds: int | None = None
    max_cost_usd: float | None = None
    checkpoint_interval: int | None = None
    git_checkpoint: bool | None = None
    iteration_delay_seconds: float | None = None
    timeout_seconds: float | None = None
    agent_command: str | None = None
    acp_agent_command: str | None = None
    acp_permission_mode: str | None = None
    acp_allowed_tools: tuple[str, ...] = ()
    fallback: bool | None = None
    metrics_dir: Path | None = None
    permission_prompt: PermissionPrompt | None = None


@dataclass(slots=True)
class AdaptersCommand:
    """CLI input for adapter availability listing."""

    acp_agent_command: str | None = None


@dataclass(slots=True)
class LoopRunResult:
    """Lines to print plus whether the run ended without error."""

    lines: list[str]
    success: bool
    state: OrchestratorState | None = None


class LoopCliController:
    """Wires settings into the orchestrator for CLI commands."""

    def run(self, command: LoopRunCommand) -> LoopRunResult:
        try:
            settings = _apply_overrides(Settings.from_env(), command)
            settings.validate()
        except ValueError as error:
            return LoopRunResult(lines=["Configuration error:", str(error)], success=False)

        adapter_config = _adapter_config(settings)
        acp_options = _acp_options(settings, command.permission_prompt)
        try:
            adapter = get_adapter(settings.loop.agent, adapter_config, acp_options)
        except AdapterUnavailableError as error:
            return LoopRunResult(lines=["Agent not available:", str(error)], success=False)

        orchestrator = build_orchestrator(
            settings,
            adapter,
            fallback_adapters=_fallback_adapters(settings, adapter),
        )
        state = orchestrator.run()
        return LoopRunResult(
            lines=["Agent loop summary:", *orchestrator.summary_lines()],
            success=state.status is not OrchestratorStatus.ERROR,
            state=state,
        )

    def list_adapters(self, command: AdaptersCommand) -> list[str]:
        """Availability of every known adapter, in auto-detection order."""

        settings = Settings.from_env()
        if command.acp_agent_command:
            settings.acp.agent_command = command.acp_agent_command
        acp_options = _acp_options(settings, None)
        lines = ["Adapters:"]
        for agent_type in AUTO_DETECT_ORDER:
            adapter = create_adapter(agent_type, AdapterConfig(), acp_options)
            status = "available" if adapter.check_availability() else "not available"
            lines.append(f"- {agent_type.value} ({adapter.name}): {status}")
        return lines


def build_orchestrator(
    settings: Settings,
    adapter: ToolAdapter,
    *,
    fallback_adapters: list[ToolAdapter] | None = None,
    checkpointer: Checkpointer | None = None,
) -> Orchestrator:
    """Orchestrator configured from settings around an already selected adapter."""

    telemetry = settings.telemetry
    context = ContextManager(
        prompt_file=settings.loop.prompt_file,
        prompt_text=settings.loop.prompt_text,
        max_context_size=telemetry.max_context_size,
        cache_dir=telemetry.cache_dir,
    )
    return Orchestrator(
        adapter,
        context,
        limits=settings.safety.to_limits(),
        options=LoopOptions(
            checkpoint_interval=settings.loop.checkpoint_interval,
            iteration_delay_seconds=settings.loop.iteration_delay_seconds,
            max_retries=settings.adapter.max_retries,
            retry_delays_ms=settings.adapter.retry_delays_ms,
            metrics_dir=telemetry.metrics_dir,
            execute_options=ExecuteOptions(
                verbose=settings.adapter.verbose,
                model=settings.adapter.model,
            ),
        ),
        fallback_adapters=fallback_adapters or [],
        checkpointer=checkpointer or _checkpointer(settings),
        cost_tracker=CostTracker(),
        iteration_stats=IterationStats(
            max_iterations_stored=telemetry.max_iterations_stored,
            max_preview_length=telemetry.output_preview_length,
        ),
    )


def _apply_overrides(settings: Settings, command: LoopRunCommand) -> Settings:  # noqa: C901
    if command.prompt_file is not None:
        settings.loop.prompt_file = command.prompt_file
    if command.prompt_text:
        settings.loop.prompt_text = command.prompt_text
    if command.agent:
        try:
            settings.loop.agent = AgentType(command.agent.lower())
        except ValueError as error:
            raise ValueError(f"Unsupported agent: {command.agent!r}") from error
    if command.max_iterations is not None:
        settings.safety.max_iterations = command.max_iterations
    if command.max_runtime_seconds is not None:
        settings.safety.max_runtime_seconds = command.max_runtime_seconds
    if command.max_cost_usd is not None:
        settings.safety.max_cost_usd = command.max_cost_usd
    if command.checkpoint_interval is not None:
        settings.loop.checkpoint_interval = command.checkpoint_interval
    if command.git_checkpoint is not None:
        settings.loop.git_checkpoint = command.git_checkpoint
    if command.iteration_delay_seconds is not None:
        settings.loop.iteration_delay_seconds = command.iteration_delay_seconds
    if command.timeout_seconds is not None:
        settings.adapter.timeout_seconds = command.timeout_seconds
    if command.agent_command:
        settings.adapter.command = tuple(shlex.split(command.agent_command))
    if command.acp_agent_command:
        settings.acp.agent_command = command.acp_agent_command
    if command.acp_permission_mode:
        try:
            settings.acp.permission_mode = PermissionMode(command.acp_permission_mode.lower())
        except ValueError as error:
            raise ValueError(
                f"Unsupported permission mode: {command.acp_permission_mode!r}",
            ) from error
    if command.acp_allowed_tools:
        settings.acp.allowed_tools = command.acp_allowed_tools
    if command.fallback is not None:
        settings.loop.fallback_enabled = command.fallback
    if command.metrics_dir is not None:
        settings.telemetry.metrics_dir = command.metrics_dir
    return settings


def _adapter_config(settings: Settings) -> AdapterConfig:
    return AdapterConfig(
        timeout_seconds=settings.adapter.timeout_seconds,
        args=list(settings.adapter.extra_args),
        command=list(settings.adapter.command) or None,
    )


def _acp_options(settings: Settings, permission_prompt: PermissionPrompt | None) -> AcpOptions:
    return AcpOptions(
        agent_command=settings.acp.agent_command,
        permission_mode=settings.acp.permission_mode,
        allowed_tools=list(settings.acp.allowed_tools),
        permission_prompt=permission_prompt,
    )


def _fallback_adapters(settings: Settings, primary: ToolAdapter) -> list[ToolAdapter]:
    if not settings.loop.fallback_enabled:
        return []
    config = AdapterConfig(timeout_seconds=settings.adapter.timeout_seconds)
    fallbacks: list[ToolAdapter] = []
    for agent_type in FALLBACK_ORDER:
        candidate = create_adapter(agent_type, config)
        if type(candidate) is type(primary):
            continue
        if candidate.check_availability():
            fallbacks.append(candidate)
    logger.info("Fallback adapters: %s", ", ".join(a.name for a in fallbacks) or "none")
    return fallbacks


def _checkpointer(settings: Settings) -> Checkpointer:
    vcs = GitCli()
    enabled = settings.loop.git_checkpoint
    if enabled and not (vcs.available() and vcs.is_repository()):
        logger.info("Not inside a git work tree; checkpoints disabled")
        enabled = False
    return Checkpointer(vcs, interval=settings.loop.checkpoint_interval, enabled=enabled)
