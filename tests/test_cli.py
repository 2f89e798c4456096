from __future__ import annotations

import json
import shlex
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import ACP_ECHO_AGENT_COMMAND, ECHO_AGENT_COMMAND

from agent_loop import __version__
from agent_loop.main import agent_loop

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("CLI"),
]


@pytest.fixture()
def workdir(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    clean_env.chdir(tmp_path)
    return tmp_path


def _run_args(prompt_file: Path, metrics_dir: Path, *extra: str) -> list[str]:
    return [
        "run",
        "--prompt-file",
        str(prompt_file),
        "--no-git-checkpoint",
        "--delay",
        "0",
        "--max-iterations",
        "3",
        "--metrics-dir",
        str(metrics_dir),
        *extra,
    ]


def test_run_until_agent_marks_prompt_complete(workdir: Path) -> None:
    prompt_file = workdir / "PROMPT.md"
    prompt_file.write_text("Write the changelog\n", "utf-8")
    metrics_dir = workdir / "metrics"

    result = CliRunner().invoke(
        agent_loop,
        _run_args(
            prompt_file,
            metrics_dir,
            "--agent",
            "claude",
            "--agent-command",
            shlex.join(ECHO_AGENT_COMMAND),
        ),
        env={"AGENT_LOOP_EXTRA_ARGS": shlex.join(["--complete-file", str(prompt_file)])},
    )

    assert result.exit_code == 0, result.output
    assert "Agent loop summary:" in result.output
    assert "Status: completed" in result.output
    assert "Total iterations: 1" in result.output
    state = json.loads((metrics_dir / "state.json").read_text("utf-8"))
    assert state["status"] == "completed"
    assert state["primary_tool"] == "claude"


def test_run_with_acp_agent(workdir: Path) -> None:
    prompt_file = workdir / "PROMPT.md"
    prompt_file.write_text("Say hello over ACP\n", "utf-8")
    acp_command = shlex.join([*ACP_ECHO_AGENT_COMMAND, "--complete-file", str(prompt_file)])

    result = CliRunner().invoke(
        agent_loop,
        _run_args(
            prompt_file,
            workdir / "metrics",
            "--agent",
            "acp",
            "--acp-agent",
            acp_command,
            "--acp-permission-mode",
            "deny_all",
        ),
    )

    assert result.exit_code == 0, result.output
    assert "Status: completed" in result.output


def test_iteration_limit_is_not_a_failure(workdir: Path) -> None:
    prompt_file = workdir / "PROMPT.md"
    prompt_file.write_text("Keep going\n", "utf-8")

    result = CliRunner().invoke(
        agent_loop,
        _run_args(
            prompt_file,
            workdir / "metrics",
            "--agent",
            "gemini",
            "--agent-command",
            shlex.join(ECHO_AGENT_COMMAND),
            "--max-iterations",
            "1",
        ),
    )

    assert result.exit_code == 0, result.output
    assert "Status: stopped" in result.output
    assert "Stop reason: safety_limit" in result.output


def test_missing_prompt_file_fails(workdir: Path) -> None:
    result = CliRunner().invoke(
        agent_loop,
        _run_args(
            workdir / "absent.md",
            workdir / "metrics",
            "--agent",
            "claude",
            "--agent-command",
            shlex.join(ECHO_AGENT_COMMAND),
        ),
    )

    assert result.exit_code == 1
    assert "Status: error" in result.output
    assert "Agent loop failed." in result.output


def test_configuration_error_fails_before_running(workdir: Path) -> None:
    result = CliRunner().invoke(
        agent_loop,
        _run_args(workdir / "PROMPT.md", workdir / "metrics"),
        env={"AGENT_LOOP_MAX_RETRIES": "-1"},
    )

    assert result.exit_code == 1
    assert "Configuration error:" in result.output
    assert "AGENT_LOOP_MAX_RETRIES must be >= 0." in result.output


def test_unavailable_agent(workdir: Path) -> None:
    result = CliRunner().invoke(
        agent_loop,
        _run_args(
            workdir / "PROMPT.md",
            workdir / "metrics",
            "--agent",
            "q",
            "--agent-command",
            "agent-loop-missing-binary-xyz",
        ),
    )

    assert result.exit_code == 1
    assert "Agent not available:" in result.output


def test_adapters_lists_every_agent(workdir: Path) -> None:
    result = CliRunner().invoke(
        agent_loop,
        ["adapters", "--acp-agent", shlex.join(ACP_ECHO_AGENT_COMMAND)],
    )

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0] == "Adapters:"
    assert [line.split(" (")[0] for line in lines[1:]] == ["- claude", "- q", "- gemini", "- acp"]
    assert "- acp (acp): available" in lines


def test_version() -> None:
    result = CliRunner().invoke(agent_loop, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output
