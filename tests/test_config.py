from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_loop.adapters.acp.models import PermissionMode
from agent_loop.adapters.base import AgentType
from agent_loop.config import SafetySettings, Settings, TelemetrySettings

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Configuration"),
]


def test_defaults_without_environment(clean_env: pytest.MonkeyPatch) -> None:
    settings = Settings.from_env()

    assert settings.loop.agent is AgentType.AUTO
    assert settings.loop.prompt_file == Path("PROMPT.md")
    assert settings.loop.prompt_text is None
    assert settings.loop.fallback_enabled is False
    assert settings.safety.max_iterations == 100
    assert settings.safety.max_cost_usd == pytest.approx(50.0)
    assert settings.adapter.retry_delays_ms == (1_000, 3_000, 5_000)
    assert settings.adapter.command == ()
    assert settings.acp.permission_mode is PermissionMode.AUTO_APPROVE
    settings.validate()


def test_environment_overrides(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("AGENT_LOOP_AGENT", "Gemini")
    clean_env.setenv("AGENT_LOOP_PROMPT_TEXT", "  Fix the build  ")
    clean_env.setenv("AGENT_LOOP_MAX_ITERATIONS", "7")
    clean_env.setenv("AGENT_LOOP_GIT_CHECKPOINT", "off")
    clean_env.setenv("AGENT_LOOP_RETRY_DELAYS_MS", "10, 20")
    clean_env.setenv("AGENT_LOOP_EXTRA_ARGS", "--model 'fast one'")
    clean_env.setenv("AGENT_LOOP_AGENT_COMMAND", "python -m agent_loop.adapters.echo_agent")
    clean_env.setenv("AGENT_LOOP_ACP_PERMISSION_MODE", "allowlist")
    clean_env.setenv("AGENT_LOOP_ACP_ALLOWED_TOOLS", "read_file, write_file,")
    clean_env.setenv("AGENT_LOOP_METRICS_DIR", "/tmp/loop-metrics")

    settings = Settings.from_env()

    assert settings.loop.agent is AgentType.GEMINI
    assert settings.loop.prompt_text == "Fix the build"
    assert settings.safety.to_limits().max_iterations == 7
    assert settings.loop.git_checkpoint is False
    assert settings.adapter.retry_delays_ms == (10, 20)
    assert settings.adapter.extra_args == ("--model", "fast one")
    assert settings.adapter.command == ("python", "-m", "agent_loop.adapters.echo_agent")
    assert settings.acp.permission_mode is PermissionMode.ALLOWLIST
    assert settings.acp.allowed_tools == ("read_file", "write_file")
    assert settings.telemetry.metrics_dir == Path("/tmp/loop-metrics")


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("AGENT_LOOP_VERBOSE", "maybe", "Invalid boolean value for AGENT_LOOP_VERBOSE"),
        ("AGENT_LOOP_AGENT", "cursor", "Expected one of: claude, q, gemini, acp, auto"),
        ("AGENT_LOOP_RETRY_DELAYS_MS", "1,x", "Invalid integer list"),
    ],
)
def test_invalid_environment_values(
    clean_env: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    clean_env.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(safety=SafetySettings(max_iterations=0)), "MAX_ITERATIONS must be > 0"),
        (Settings(safety=SafetySettings(max_cost_usd=-1)), "MAX_COST_USD must be >= 0"),
        (
            Settings(safety=SafetySettings(loop_similarity_threshold=1.5)),
            r"LOOP_SIMILARITY_THRESHOLD must be within \[0, 1\]",
        ),
        (
            Settings(telemetry=TelemetrySettings(max_context_size=0)),
            "MAX_CONTEXT_SIZE must be > 0",
        ),
    ],
)
def test_validate_rejects_bad_limits(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_acp_agent_requires_command() -> None:
    settings = Settings()
    settings.loop.agent = AgentType.ACP
    settings.acp.agent_command = "  "

    with pytest.raises(ValueError, match="ACP_AGENT_COMMAND"):
        settings.validate()
