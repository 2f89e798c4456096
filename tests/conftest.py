"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import pytest

from agent_loop.adapters.base import ExecuteOptions, ToolAdapter
from agent_loop.models import RetryCode, ToolResponse, error_response, success_response

ECHO_AGENT_COMMAND = [sys.executable, "-m", "agent_loop.adapters.echo_agent"]
ACP_ECHO_AGENT_COMMAND = [sys.executable, "-m", "agent_loop.adapters.acp.echo_agent"]


@dataclass(slots=True)
class Step:
    """One scripted adapter reply."""

    output: str = ""
    error: str | None = None
    retry_code: RetryCode = RetryCode.EXECUTION_ERROR
    tokens_used: int | None = None
    cost_usd: float | None = None
    metadata: dict[str, object] = field(default_factory=dict)

    def to_response(self) -> ToolResponse:
        if self.error is None:
            return success_response(
                self.output,
                tokens_used=self.tokens_used,
                cost_usd=self.cost_usd,
                metadata=dict(self.metadata),
            )
        return error_response(
            self.error,
            output=self.output,
            retry_code=self.retry_code,
            metadata=dict(self.metadata),
        )


class ScriptedAdapter(ToolAdapter):
    """In-process adapter replaying scripted replies; the last one repeats."""

    def __init__(
        self,
        steps: Iterable[Step | str],
        *,
        name: str = "scripted",
        available: bool = True,
    ) -> None:
        super().__init__(name)
        self.pricing_key = name
        self.steps = [Step(output=step) if isinstance(step, str) else step for step in steps]
        self.prompts: list[str] = []
        self.closed = 0
        self._is_available = available
        self.on_execute: Callable[[int], None] | None = None

    def check_availability(self) -> bool:
        self._set_available(self._is_available)
        return self._is_available

    def execute(self, prompt: str, options: ExecuteOptions | None = None) -> ToolResponse:
        self.prompts.append(prompt)
        if self.on_execute is not None:
            self.on_execute(len(self.prompts))
        index = min(len(self.prompts), len(self.steps)) - 1
        return self.steps[index].to_response()

    def close(self) -> None:
        self.closed += 1

    @property
    def calls(self) -> int:
        return len(self.prompts)


@pytest.fixture()
def sleeps() -> list[float]:
    """Collects delays passed to a `sleeps.append` sleep replacement."""

    return []


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Environment without any AGENT_LOOP_* overrides."""

    for name in list(os.environ):
        if name.startswith("AGENT_LOOP_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch
