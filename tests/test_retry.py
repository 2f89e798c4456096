from __future__ import annotations

import allure
import pytest
from conftest import ScriptedAdapter, Step

from agent_loop.models import RetryCode
from agent_loop.retry import (
    TemplateRequest,
    execute_template,
    execute_with_retry,
    render_template,
    retry_delays,
)

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Retries and Failures"),
]


def test_retry_exhaustion_makes_max_retries_plus_one_attempts(sleeps: list[float]) -> None:
    adapter = ScriptedAdapter([Step(error="boom", retry_code=RetryCode.CONNECTION_ERROR)])

    response = execute_with_retry(adapter, "do work", max_retries=2, sleep=sleeps.append)

    assert adapter.calls == 3
    assert response.success is False
    assert response.error == "boom"
    assert sleeps == [1.0, 3.0]


def test_retry_stops_on_first_success(sleeps: list[float]) -> None:
    adapter = ScriptedAdapter(
        [
            Step(error="timed out", retry_code=RetryCode.TIMEOUT_ERROR),
            Step(output="fixed it"),
        ],
    )

    response = execute_with_retry(adapter, "do work", max_retries=3, sleep=sleeps.append)

    assert response.success is True
    assert response.output == "fixed it"
    assert adapter.calls == 2


def test_non_retryable_failure_is_returned_immediately(sleeps: list[float]) -> None:
    adapter = ScriptedAdapter([Step(error="not found", retry_code=RetryCode.NONE)])

    response = execute_with_retry(adapter, "do work", max_retries=5, sleep=sleeps.append)

    assert adapter.calls == 1
    assert response.retry_code is RetryCode.NONE
    assert sleeps == []


@pytest.mark.parametrize(("prompt", "max_retries"), [("   ", 3), ("do work", -1)])
def test_validation_errors_never_reach_the_adapter(prompt: str, max_retries: int) -> None:
    adapter = ScriptedAdapter(["unused"])

    response = execute_with_retry(adapter, prompt, max_retries=max_retries)

    assert response.retry_code is RetryCode.VALIDATION_ERROR
    assert adapter.calls == 0


def test_retry_delays_extend_by_two_seconds() -> None:
    assert retry_delays(5, (1_000, 3_000, 5_000)) == [1_000, 3_000, 5_000, 7_000, 9_000]
    assert retry_delays(2, (1_000, 3_000, 5_000)) == [1_000, 3_000]
    assert retry_delays(2, ()) == [1_000, 3_000]


def test_execute_template_renders_and_tags_metadata(sleeps: list[float]) -> None:
    adapter = ScriptedAdapter(["ok"])
    request = TemplateRequest(
        slash_command="/implement",
        run_id="run-7",
        arguments=["parser"],
        context="Use the existing tokenizer.",
    )

    response = execute_template(adapter, request, sleep=sleeps.append)

    assert adapter.prompts == ["/implement parser\n\nUse the existing tokenizer.\n"]
    assert response.metadata["run_id"] == "run-7"
    assert response.metadata["command"] == "/implement"


@pytest.mark.parametrize(
    "request_",
    [
        TemplateRequest(slash_command="/plan", run_id=" "),
        TemplateRequest(slash_command="plan", run_id="run-1"),
        TemplateRequest(slash_command="/bad command", run_id="run-1"),
    ],
)
def test_execute_template_validation(request_: TemplateRequest) -> None:
    adapter = ScriptedAdapter(["unused"])

    response = execute_template(adapter, request_)

    assert response.retry_code is RetryCode.VALIDATION_ERROR
    assert adapter.calls == 0


def test_render_template_without_context() -> None:
    assert render_template(TemplateRequest(slash_command="/review", run_id="r")) == "/review\n"
