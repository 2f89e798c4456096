"""CLI entrypoint for agent-loop."""

import logging
from pathlib import Path

import rich_click as click

from agent_loop import __version__
from agent_loop.adapters.acp.models import PermissionMode
from agent_loop.adapters.base import AgentType
from agent_loop.controllers import AdaptersCommand, LoopCliController, LoopRunCommand

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="agent-loop")
def agent_loop() -> None:
    """Run an AI coding agent in a loop until the task is done."""


@agent_loop.command("run")
@click.option(
    "--prompt-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Task description file. Defaults to AGENT_LOOP_PROMPT_FILE or PROMPT.md.",
)
@click.option("--prompt", "prompt_text", default=None, help="Task text; wins over the file.")
@click.option(
    "--agent",
    type=click.Choice([agent.value for agent in AgentType], case_sensitive=False),
    default=None,
    help="Agent adapter. `auto` picks the first available one.",
)
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--max-runtime", "max_runtime_seconds", type=click.IntRange(min=1), default=None)
@click.option("--max-cost", "max_cost_usd", type=click.FloatRange(min=0), default=None)
@click.option("--checkpoint-interval", type=click.IntRange(min=1), default=None)
@click.option(
    "--git-checkpoint/--no-git-checkpoint",
    default=None,
    help="Commit the working tree every checkpoint interval.",
)
@click.option(
    "--delay",
    "iteration_delay_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Pause between iterations, in seconds.",
)
@click.option("--timeout", "timeout_seconds", type=click.FloatRange(min=1), default=None)
@click.option(
    "--agent-command",
    default=None,
    help="Replace the agent executable, e.g. `python -m agent_loop.adapters.echo_agent`.",
)
@click.option("--acp-agent", "acp_agent_command", default=None, help="ACP agent command.")
@click.option(
    "--acp-permission-mode",
    type=click.Choice([mode.value for mode in PermissionMode], case_sensitive=False),
    default=None,
    help="How tool permission requests from an ACP agent are answered.",
)
@click.option(
    "--acp-allowed-tool",
    "acp_allowed_tools",
    multiple=True,
    help="Tool allowed in `allowlist` mode. Can be repeated.",
)
@click.option("--fallback/--no-fallback", default=None, help="Try other agents on failure.")
@click.option("--metrics-dir", type=click.Path(path_type=Path), default=None)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
def run(  # noqa: PLR0913
    prompt_file: Path | None,
    prompt_text: str | None,
    agent: str | None,
    max_iterations: int | None,
    max_runtime_seconds: int | None,
    max_cost_usd: float | None,
    checkpoint_interval: int | None,
    git_checkpoint: bool | None,
    iteration_delay_seconds: float | None,
    timeout_seconds: float | None,
    agent_command: str | None,
    acp_agent_command: str | None,
    acp_permission_mode: str | None,
    acp_allowed_tools: tuple[str, ...],
    fallback: bool | None,
    metrics_dir: Path | None,
    log_level: str,
) -> None:
    """Call the agent repeatedly until the prompt is marked complete or a limit is hit."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    result = LOOP_CONTROLLER.run(
        LoopRunCommand(
            prompt_file=prompt_file,
            prompt_text=prompt_text,
            agent=agent,
            max_iterations=max_iterations,
            max_runtime_seconds=max_runtime_seconds,
            max_cost_usd=max_cost_usd,
            checkpoint_interval=checkpoint_interval,
            git_checkpoint=git_checkpoint,
            iteration_delay_seconds=iteration_delay_seconds,
            timeout_seconds=timeout_seconds,
            agent_command=agent_command,
            acp_agent_command=acp_agent_command,
            acp_permission_mode=acp_permission_mode,
            acp_allowed_tools=acp_allowed_tools,
            fallback=fallback,
            metrics_dir=metrics_dir,
            permission_prompt=_confirm_tool,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent loop failed.")


@agent_loop.command("adapters")
@click.option("--acp-agent", "acp_agent_command", default=None, help="ACP agent command.")
def adapters(acp_agent_command: str | None) -> None:
    """Show which agent adapters are available on this machine."""

    _emit_lines(LOOP_CONTROLLER.list_adapters(AdaptersCommand(acp_agent_command=acp_agent_command)))


def _confirm_tool(tool_name: str, details: dict[str, object]) -> bool:
    title = details.get("title") or tool_name or "unnamed tool"
    return click.confirm(f"Allow the agent to run {title}?", default=False)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_loop()
