"""Adapter interface shared by every agent backend."""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from agent_loop.models import RetryCode, ToolResponse, error_response

logger = logging.getLogger(__name__)

ORCHESTRATION_INSTRUCTIONS = """\
ORCHESTRATION CONTEXT:
You are running inside the agent-loop orchestrator. It will call you repeatedly,
one iteration at a time, until the overall task is complete. Each iteration is a
separate execution in which you should make incremental progress.

The final output must be tested, documented and ready for production.

IMPORTANT INSTRUCTIONS:
1. Implement only ONE small, focused task from this prompt per iteration.
   - Each iteration is independent, so focus on a single atomic change.
   - The orchestrator calls you again for the next task.
   - Mark subtasks complete as you finish them.
   - Commit your changes after each iteration so they can be checkpointed.
2. Keep temporary files under .agent/workspace/ unless the prompt says otherwise.
3. Explore the codebase, plan the change, write tests first, then code, then commit.
4. Record each finished subtask in the prompt file so the next iteration knows it is done.
5. Run independent operations in parallel whenever you can.
6. Remove any temporary scripts or helper files you created before finishing.
---
ORIGINAL PROMPT:

"""

INSTRUCTION_MARKERS: tuple[str, ...] = (
    "ORCHESTRATION CONTEXT:",
    "IMPORTANT INSTRUCTIONS:",
    "Implement only ONE small, focused task",
)

CHARS_PER_TOKEN = 4
OUTPUT_TOKEN_MULTIPLIER = 2


class AdapterUnavailableError(RuntimeError):
    """No adapter for the requested agent could be selected."""


class AgentType(str, Enum):
    """Closed set of supported agent backends."""

    CLAUDE = "claude"
    Q = "q"
    GEMINI = "gemini"
    ACP = "acp"
    AUTO = "auto"


@dataclass(slots=True)
class AdapterConfig:
    """Construction-time settings for one adapter."""

    enabled: bool = True
    timeout_seconds: float = 300
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    command: list[str] | None = None
    add_instructions: bool = True


@dataclass(slots=True)
class ExecuteOptions:
    """Per-call options; unset values fall back to the adapter config."""

    prompt_file: Path | None = None
    verbose: bool = False
    timeout_seconds: float | None = None
    model: str | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    additional_args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""

    return math.ceil(len(text) / CHARS_PER_TOKEN)


def enhance_prompt(prompt: str) -> str:
    """Prefix orchestration instructions unless the prompt already carries them."""

    if any(marker in prompt for marker in INSTRUCTION_MARKERS):
        return prompt
    return ORCHESTRATION_INSTRUCTIONS + prompt


class ToolAdapter(ABC):
    """One agent backend; subclasses form a closed set chosen at construction."""

    pricing_key: str = ""

    def __init__(self, name: str, config: AdapterConfig | None = None) -> None:
        self.name = name
        self.config = config or AdapterConfig()
        self._available: bool | None = None

    @property
    def available(self) -> bool:
        """Result of the last availability check; False until one ran."""

        return bool(self._available)

    def _set_available(self, value: bool) -> None:
        self._available = value

    @abstractmethod
    def check_availability(self) -> bool:
        """Check the backend and cache the result."""

    @abstractmethod
    def execute(self, prompt: str, options: ExecuteOptions | None = None) -> ToolResponse:
        """Run one agent call; failures are returned, not raised."""

    def execute_with_file(
        self,
        prompt_file: Path,
        options: ExecuteOptions | None = None,
    ) -> ToolResponse:
        if not prompt_file.is_file():
            return error_response(
                f"Prompt file {prompt_file} not found",
                retry_code=RetryCode.NONE,
            )
        prompt = prompt_file.read_text("utf-8")
        effective = replace(options or ExecuteOptions(), prompt_file=prompt_file)
        return self.execute(prompt, effective)

    def estimate_cost(self, prompt: str) -> float:  # noqa: ARG002
        return 0.0

    def prepare_prompt(self, prompt: str) -> str:
        if not self.config.add_instructions:
            return prompt
        return enhance_prompt(prompt)

    def ensure_available(self) -> bool:
        return self.available or self.check_availability()

    def get_config(self) -> AdapterConfig:
        return replace(self.config, args=list(self.config.args), env=dict(self.config.env))

    def update_config(self, **changes: object) -> AdapterConfig:
        self.config = replace(self.config, **changes)
        return self.config

    def close(self) -> None:
        """Release long-lived resources; a no-op for one-shot adapters."""

    def __str__(self) -> str:
        return f"{self.name} (available: {self.available})"
