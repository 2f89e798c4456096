"""Retry policy around adapter invocations and slash-command templates."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from agent_loop.models import RETRYABLE_CODES, RetryCode, ToolResponse, error_response

if TYPE_CHECKING:
    from agent_loop.adapters.base import ExecuteOptions, ToolAdapter

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS_MS: tuple[int, ...] = (1_000, 3_000, 5_000)
DELAY_STEP_MS = 2_000

_SLASH_COMMAND = re.compile(r"^/[A-Za-z0-9][\w:\-]*$")


@dataclass(slots=True)
class TemplateRequest:
    """Slash command rendered into a prompt before execution."""

    slash_command: str
    run_id: str
    arguments: list[str] = field(default_factory=list)
    context: str | None = None


def retry_delays(max_retries: int, base_delays_ms: Sequence[int]) -> list[int]:
    """Delays for each retry, extending the base list by ``DELAY_STEP_MS``."""

    delays = list(base_delays_ms) or [DEFAULT_RETRY_DELAYS_MS[0]]
    while len(delays) < max_retries:
        delays.append(delays[-1] + DELAY_STEP_MS)
    return delays[:max_retries]


def is_retryable(response: ToolResponse) -> bool:
    if response.success:
        return False
    return response.retry_code in RETRYABLE_CODES


def execute_with_retry(  # noqa: PLR0913
    adapter: ToolAdapter,
    prompt: str,
    *,
    options: ExecuteOptions | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delays_ms: Sequence[int] = DEFAULT_RETRY_DELAYS_MS,
    sleep: Callable[[float], None] = time.sleep,
) -> ToolResponse:
    """Run the adapter, retrying retryable failures up to ``max_retries`` times.

    A run makes at most ``max_retries + 1`` attempts; when they are exhausted
    the last failed response is returned unchanged.
    """

    if not prompt.strip():
        return error_response("Prompt must not be empty", retry_code=RetryCode.VALIDATION_ERROR)
    if max_retries < 0:
        return error_response(
            f"max_retries must be >= 0, got {max_retries}",
            retry_code=RetryCode.VALIDATION_ERROR,
        )

    delays = retry_delays(max_retries, retry_delays_ms)
    attempt = 0
    while True:
        response = adapter.execute(prompt, options)
        if response.success or not is_retryable(response):
            return response
        if attempt >= max_retries:
            logger.warning(
                "%s failed after %d attempts: %s",
                adapter.name,
                attempt + 1,
                response.error,
            )
            return response

        delay_ms = delays[attempt]
        attempt += 1
        logger.info(
            "Retrying %s in %d ms (attempt %d/%d, %s)",
            adapter.name,
            delay_ms,
            attempt,
            max_retries,
            response.retry_code.value,
        )
        sleep(delay_ms / 1000)


def execute_template(  # noqa: PLR0913
    adapter: ToolAdapter,
    request: TemplateRequest,
    *,
    options: ExecuteOptions | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delays_ms: Sequence[int] = DEFAULT_RETRY_DELAYS_MS,
    sleep: Callable[[float], None] = time.sleep,
) -> ToolResponse:
    """Validate and render a slash-command template, then run it with retry."""

    problem = validate_template_request(request)
    if problem is not None:
        return error_response(problem, retry_code=RetryCode.VALIDATION_ERROR)

    response = execute_with_retry(
        adapter,
        render_template(request),
        options=options,
        max_retries=max_retries,
        retry_delays_ms=retry_delays_ms,
        sleep=sleep,
    )
    metadata = {**response.metadata, "run_id": request.run_id, "command": request.slash_command}
    return replace(response, metadata=metadata)


def validate_template_request(request: TemplateRequest) -> str | None:
    if not request.run_id.strip():
        return "Run id must not be empty"
    command = request.slash_command.strip()
    if not command.startswith("/"):
        return f"Slash command must start with '/': {request.slash_command!r}"
    if not _SLASH_COMMAND.match(command):
        return f"Malformed slash command: {request.slash_command!r}"
    return None


def render_template(request: TemplateRequest) -> str:
    line = " ".join([request.slash_command.strip(), *request.arguments]).strip()
    if request.context:
        return f"{line}\n\n{request.context.strip()}\n"
    return f"{line}\n"
