from __future__ import annotations

import math
from pathlib import Path

import allure
import pytest
from conftest import ECHO_AGENT_COMMAND

from agent_loop.adapters import (
    AUTO_DETECT_ORDER,
    AdapterConfig,
    AdapterUnavailableError,
    AgentType,
    ClaudeAdapter,
    ExecuteOptions,
    GeminiAdapter,
    QChatAdapter,
    create_adapter,
    get_adapter,
    run_command,
)
from agent_loop.adapters.base import ORCHESTRATION_INSTRUCTIONS, enhance_prompt, estimate_tokens
from agent_loop.models import RetryCode

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Process Adapters"),
]


def _echo_config(*args: str, timeout_seconds: float = 30) -> AdapterConfig:
    return AdapterConfig(
        command=list(ECHO_AGENT_COMMAND),
        args=list(args),
        timeout_seconds=timeout_seconds,
    )


@pytest.mark.parametrize("adapter_type", [ClaudeAdapter, QChatAdapter, GeminiAdapter])
def test_echo_agent_round_trip_through_each_preset(adapter_type) -> None:
    adapter = adapter_type(_echo_config())

    response = adapter.execute("Implement the tokenizer")

    assert adapter.available is True
    assert response.success is True, response.error
    assert "echo: Implement the tokenizer" in response.output
    assert response.metadata["exit_code"] == 0


def test_prompt_is_prefixed_with_instructions_once() -> None:
    adapter = ClaudeAdapter(_echo_config())

    response = adapter.execute("Do it")
    expected_chars = len(ORCHESTRATION_INSTRUCTIONS + "Do it")

    assert f"prompt_chars: {expected_chars}" in response.output
    assert enhance_prompt(enhance_prompt("Do it")) == enhance_prompt("Do it")


def test_instructions_can_be_disabled() -> None:
    adapter = ClaudeAdapter(_echo_config())
    config = adapter.update_config(add_instructions=False)
    assert adapter.get_config() == config
    assert str(adapter) == "claude (available: False)"

    response = adapter.execute("Do it")

    assert "prompt_chars: 5" in response.output


def test_reported_usage_lands_in_response() -> None:
    adapter = ClaudeAdapter(_echo_config("--usage", "120:30"))

    response = adapter.execute("Count tokens")

    assert response.tokens_used == 150
    assert response.metadata["input_tokens"] == 120
    assert response.metadata["output_tokens"] == 30


def test_non_zero_exit_is_a_classified_failure() -> None:
    adapter = ClaudeAdapter(_echo_config("--exit-code", "1", "--stderr", "Quota exceeded"))

    response = adapter.execute("Try")

    assert response.success is False
    assert response.error == "Quota exceeded"
    assert response.retry_code is RetryCode.NONE
    assert "echo: Try" in response.output


def test_timeout_kills_the_child() -> None:
    adapter = ClaudeAdapter(_echo_config("--sleep", "10", timeout_seconds=0.5))

    response = adapter.execute("Slow")

    assert response.success is False
    assert response.retry_code is RetryCode.TIMEOUT_ERROR
    assert response.metadata["duration_seconds"] < 9


def test_missing_executable_is_not_retryable() -> None:
    adapter = ClaudeAdapter(AdapterConfig(command=["agent-loop-missing-binary-xyz"]))

    assert adapter.check_availability() is False
    response = adapter.execute("Anything")

    assert response.success is False
    assert response.retry_code is RetryCode.NONE


def test_execute_with_missing_file(tmp_path: Path) -> None:
    adapter = ClaudeAdapter(_echo_config())

    response = adapter.execute_with_file(tmp_path / "nope.md")

    assert response.success is False
    assert response.retry_code is RetryCode.NONE


def test_execute_with_file_reads_prompt(tmp_path: Path) -> None:
    prompt_file = tmp_path / "PROMPT.md"
    prompt_file.write_text("Write docs\n", "utf-8")

    response = GeminiAdapter(_echo_config()).execute_with_file(prompt_file, ExecuteOptions())

    assert "echo: Write docs" in response.output


def test_cost_estimate_uses_four_chars_per_token() -> None:
    adapter = ClaudeAdapter(AdapterConfig(add_instructions=False))
    prompt = "x" * 4_001

    input_tokens = math.ceil(4_001 / 4)
    expected = input_tokens / 1000 * 0.003 + 2 * input_tokens / 1000 * 0.015
    assert estimate_tokens(prompt) == input_tokens
    assert adapter.estimate_cost(prompt) == pytest.approx(expected)
    assert QChatAdapter().estimate_cost(prompt) == 0.0


def test_run_command_captures_streams() -> None:
    result = run_command(
        [*ECHO_AGENT_COMMAND, "hello", "--stderr", "warn", "--exit-code", "3"],
        timeout_seconds=30,
    )

    assert result.exit_code == 3
    assert result.success is False
    assert "echo: hello" in result.stdout
    assert "warn" in result.stderr


def test_factory_and_availability() -> None:
    assert AUTO_DETECT_ORDER[0] is AgentType.CLAUDE
    assert create_adapter(AgentType.Q).name == "qchat"
    with pytest.raises(ValueError, match="auto_detect_adapter"):
        create_adapter(AgentType.AUTO)

    adapter = get_adapter(AgentType.GEMINI, _echo_config())
    assert adapter.name == "gemini"
    with pytest.raises(AdapterUnavailableError):
        get_adapter(AgentType.CLAUDE, AdapterConfig(command=["agent-loop-missing-binary-xyz"]))
