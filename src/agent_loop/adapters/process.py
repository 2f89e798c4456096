"""Subprocess-based adapters: one agent process per call."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from agent_loop.adapters.base import (
    OUTPUT_TOKEN_MULTIPLIER,
    AdapterConfig,
    ExecuteOptions,
    ToolAdapter,
    estimate_tokens,
)
from agent_loop.failure_classifier import classify_failure
from agent_loop.models import RetryCode, ToolResponse, error_response, success_response
from agent_loop.telemetry.cost import CostTracker
from agent_loop.telemetry.usage import extract_usage

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_TERMINATE_GRACE_SECONDS = 2


@dataclass(slots=True)
class CommandResult:
    """Captured outcome of one finished (or killed) child process."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def run_command(
    argv: Sequence[str],
    *,
    timeout_seconds: float,
    stdin: str | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | os.PathLike[str] | None = None,
) -> CommandResult:
    """Run argv to completion, capturing both streams fully.

    On timeout the child is terminated, then killed, and ``timed_out`` is set.
    ``OSError`` from spawning (missing binary, permissions) propagates.
    """

    merged_env = {**os.environ, **env} if env else None
    start = time.monotonic()
    process = subprocess.Popen(  # noqa: S603
        list(argv),
        stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=merged_env,
        cwd=cwd,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    try:
        stdout, stderr = process.communicate(input=stdin, timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        terminate_process(process)
        stdout, stderr = _drain(process)
        return CommandResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=TIMEOUT_EXIT_CODE,
            timed_out=True,
            duration_seconds=time.monotonic() - start,
        )
    return CommandResult(
        stdout=stdout,
        stderr=stderr,
        exit_code=process.returncode,
        timed_out=False,
        duration_seconds=time.monotonic() - start,
    )


def terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)


def _drain(process: subprocess.Popen[str]) -> tuple[str, str]:
    try:
        stdout, stderr = process.communicate(timeout=_TERMINATE_GRACE_SECONDS)
    except (subprocess.TimeoutExpired, ValueError, OSError):
        return "", ""
    return stdout or "", stderr or ""


class ProcessExecAdapter(ToolAdapter):
    """Runs an agent CLI once per call with the prompt as argument or stdin."""

    def __init__(
        self,
        name: str,
        executable: str,
        config: AdapterConfig | None = None,
        *,
        prompt_via_stdin: bool = False,
        pricing_key: str | None = None,
    ) -> None:
        super().__init__(name, config)
        self.executable = executable
        self.prompt_via_stdin = prompt_via_stdin
        self.pricing_key = pricing_key or name

    def command_head(self) -> list[str]:
        if self.config.command:
            return list(self.config.command)
        return [self.executable]

    def check_availability(self) -> bool:
        head = self.command_head()[0]
        available = self.config.enabled and shutil.which(head) is not None
        self._set_available(available)
        if not available:
            logger.debug("%s executable not found in PATH: %s", self.name, head)
        return available

    def build_args(self, prompt: str, options: ExecuteOptions) -> list[str]:
        args = [*self.config.args, *options.additional_args]
        if not self.prompt_via_stdin:
            args.append(prompt)
        return args

    def execute(self, prompt: str, options: ExecuteOptions | None = None) -> ToolResponse:
        options = options or ExecuteOptions()
        if not self.ensure_available():
            return error_response(
                f"{self.name} CLI is not available",
                retry_code=RetryCode.NONE,
            )

        enhanced = self.prepare_prompt(prompt)
        argv = [*self.command_head(), *self.build_args(enhanced, options)]
        timeout_seconds = options.timeout_seconds or self.config.timeout_seconds
        logger.debug("Executing %s with %d arguments", self.name, len(argv) - 1)

        try:
            result = run_command(
                argv,
                timeout_seconds=timeout_seconds,
                stdin=enhanced if self.prompt_via_stdin else None,
                env={**self.config.env, **options.env},
            )
        except OSError as error:
            message = f"{self.name} failed to start: {error}"
            logger.error(message)
            return error_response(message, retry_code=classify_failure(message).retry_code)

        metadata: dict[str, object] = {
            "exit_code": result.exit_code,
            "duration_seconds": result.duration_seconds,
            "model": options.model,
        }
        if result.timed_out:
            message = f"{self.name} timed out after {timeout_seconds:g}s"
            logger.error(message)
            return error_response(
                message,
                output=result.stdout,
                retry_code=RetryCode.TIMEOUT_ERROR,
                metadata=metadata,
            )
        if result.exit_code != 0:
            message = result.stderr.strip() or f"{self.name} exited with code {result.exit_code}"
            logger.error("%s execution failed: %s", self.name, message)
            return error_response(
                message,
                output=result.stdout,
                retry_code=classify_failure(message).retry_code,
                metadata=metadata,
            )

        usage = extract_usage(stdout=result.stdout, stderr=result.stderr)
        if usage.found:
            metadata.update(usage.to_metadata())
        logger.debug("%s completed in %.2fs", self.name, result.duration_seconds)
        return success_response(
            result.stdout,
            tokens_used=usage.total_tokens,
            cost_usd=usage.cost_usd,
            metadata=metadata,
        )

    def estimate_cost(self, prompt: str) -> float:
        input_tokens = estimate_tokens(prompt)
        return CostTracker.estimate_cost(
            self.pricing_key,
            input_tokens,
            input_tokens * OUTPUT_TOKEN_MULTIPLIER,
        )


class ClaudeAdapter(ProcessExecAdapter):
    """``claude --print`` with the prompt as the last argument."""

    def __init__(self, config: AdapterConfig | None = None) -> None:
        super().__init__("claude", "claude", config)

    def build_args(self, prompt: str, options: ExecuteOptions) -> list[str]:
        args = ["--print"]
        if options.model:
            args += ["--model", options.model]
        if options.system_prompt:
            args += ["--system-prompt", options.system_prompt]
        if options.allowed_tools:
            args += ["--allowedTools", ",".join(options.allowed_tools)]
        if options.disallowed_tools:
            args += ["--disallowedTools", ",".join(options.disallowed_tools)]
        if options.verbose:
            args.append("--verbose")
        args += [*self.config.args, *options.additional_args]
        args.append(prompt)
        return args


class QChatAdapter(ProcessExecAdapter):
    """``q chat`` in non-interactive mode; local and free."""

    def __init__(self, config: AdapterConfig | None = None) -> None:
        super().__init__("qchat", "q", config, pricing_key="qchat")

    def build_args(self, prompt: str, options: ExecuteOptions) -> list[str]:
        args = ["chat", "--no-interactive", "--trust-all-tools"]
        if options.verbose:
            args.append("--verbose")
        args += [*self.config.args, *options.additional_args]
        args += ["--prompt", prompt]
        return args


class GeminiAdapter(ProcessExecAdapter):
    """``gemini`` reading the prompt from stdin."""

    def __init__(self, config: AdapterConfig | None = None) -> None:
        super().__init__("gemini", "gemini", config, prompt_via_stdin=True)

    def build_args(self, prompt: str, options: ExecuteOptions) -> list[str]:  # noqa: ARG002
        args: list[str] = []
        if options.model:
            args += ["--model", options.model]
        if options.verbose:
            args.append("--verbose")
        args += [*self.config.args, *options.additional_args]
        return args
