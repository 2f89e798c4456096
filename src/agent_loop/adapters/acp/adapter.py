"""Adapter that keeps one ACP agent process alive across iterations."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_loop.adapters.acp.client import AcpClient
from agent_loop.adapters.acp.models import (
    METHOD_INITIALIZE,
    METHOD_REQUEST_PERMISSION,
    METHOD_SESSION_CANCEL,
    METHOD_SESSION_NEW,
    METHOD_SESSION_PROMPT,
    METHOD_SESSION_UPDATE,
    PROTOCOL_VERSION,
    AcpProcessExitedError,
    AcpProtocolError,
    AcpRequestTimeoutError,
    AcpSession,
    PermissionMode,
)
from agent_loop.adapters.base import AdapterConfig, ExecuteOptions, ToolAdapter
from agent_loop.failure_classifier import classify_failure
from agent_loop.models import RetryCode, ToolResponse, error_response, success_response

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = "gemini"
HANDSHAKE_TIMEOUT_SECONDS = 30.0
CANCEL_GRACE_SECONDS = 2.0

PermissionPrompt = Callable[[str, dict[str, Any]], bool]


@dataclass(slots=True)
class AcpOptions:
    """Protocol-specific settings for building a :class:`ProtocolAdapter`."""

    agent_command: str = DEFAULT_AGENT_COMMAND
    permission_mode: PermissionMode = PermissionMode.AUTO_APPROVE
    allowed_tools: list[str] = field(default_factory=list)
    permission_prompt: PermissionPrompt | None = None
    cwd: Path | None = None


_LEGACY_UPDATE_METHOD = "update"


class ProtocolAdapter(ToolAdapter):
    """Speaks JSON-RPC to a long-lived agent and answers its permission requests.

    The process is started lazily on the first call and reused afterwards. If
    it exits unexpectedly the adapter reports unavailable until :meth:`restart`.
    """

    pricing_key = "acp"

    def __init__(  # noqa: PLR0913
        self,
        config: AdapterConfig | None = None,
        *,
        agent_command: str = DEFAULT_AGENT_COMMAND,
        permission_mode: PermissionMode = PermissionMode.AUTO_APPROVE,
        allowed_tools: Iterable[str] = (),
        permission_prompt: PermissionPrompt | None = None,
        cwd: Path | None = None,
    ) -> None:
        super().__init__("acp", config)
        self.agent_command = agent_command
        self.permission_mode = permission_mode
        self.permission_prompt = permission_prompt
        self.cwd = cwd
        self._allowed_tools: set[str] = set(allowed_tools)
        self.cancel_grace_seconds = CANCEL_GRACE_SECONDS
        self._client: AcpClient | None = None
        self._session: AcpSession | None = None
        self._crashed = False

    @classmethod
    def from_options(
        cls,
        config: AdapterConfig | None = None,
        options: AcpOptions | None = None,
    ) -> ProtocolAdapter:
        options = options or AcpOptions()
        return cls(
            config,
            agent_command=options.agent_command,
            permission_mode=options.permission_mode,
            allowed_tools=options.allowed_tools,
            permission_prompt=options.permission_prompt,
            cwd=options.cwd,
        )

    @property
    def session(self) -> AcpSession | None:
        return self._session

    @property
    def crashed(self) -> bool:
        return self._crashed

    def build_command(self, options: ExecuteOptions | None = None) -> list[str]:
        options = options or ExecuteOptions()
        command = list(self.config.command) if self.config.command else shlex.split(
            self.agent_command,
        )
        if command and Path(command[0]).name == "gemini":
            command.append("--experimental-acp")
        if options.model:
            command += ["--model", options.model]
        command += [*self.config.args, *options.additional_args]
        return command

    def check_availability(self) -> bool:
        command = self.build_command()
        available = (
            self.config.enabled
            and not self._crashed
            and bool(command)
            and shutil.which(command[0]) is not None
        )
        self._set_available(available)
        if not available:
            logger.debug("ACP agent not available: %s", command[0] if command else "<empty>")
        return available

    def execute(self, prompt: str, options: ExecuteOptions | None = None) -> ToolResponse:
        options = options or ExecuteOptions()
        if self._crashed or not self.ensure_available():
            return error_response(
                f"ACP agent command not available: {self.agent_command}",
                retry_code=RetryCode.NONE,
            )

        client = self._client
        if client is not None and self._session is not None and not client.running:
            self._session.begin_turn()
            return self._crash_response(client.exited_error())

        enhanced = self.prepare_prompt(prompt)
        timeout_seconds = options.timeout_seconds or self.config.timeout_seconds
        started = time.monotonic()
        try:
            session = self._ensure_session(options)
        except OSError as error:
            message = f"ACP agent failed to start: {error}"
            logger.error(message)
            self._shutdown_client()
            return error_response(message, retry_code=classify_failure(message).retry_code)
        except AcpProcessExitedError as error:
            return self._crash_response(error)
        except (AcpProtocolError, TimeoutError) as error:
            logger.error("ACP handshake failed: %s", error)
            self._shutdown_client()
            return error_response(f"ACP handshake failed: {error}")

        session.begin_turn()
        try:
            result = self._require_client().request(
                METHOD_SESSION_PROMPT,
                {
                    "sessionId": session.session_id,
                    "prompt": [{"type": "text", "text": enhanced}],
                },
                timeout_seconds=timeout_seconds,
            )
        except AcpProcessExitedError as error:
            return self._crash_response(error)
        except AcpProtocolError as error:
            session.error = str(error)
            logger.error("ACP execution failed: %s", error)
            return error_response(
                session.error,
                output=session.output,
                retry_code=classify_failure(session.error).retry_code,
                metadata=self._metadata(session, started),
            )
        except AcpRequestTimeoutError as error:
            session.error = str(error)
            response = error_response(
                session.error,
                output=session.output,
                retry_code=RetryCode.TIMEOUT_ERROR,
                metadata=self._metadata(session, started),
            )
            self._cancel_turn(session, error.request_id)
            return response

        session.completed = True
        if isinstance(result, dict):
            session.stop_reason = str(result.get("stopReason") or "") or None
        logger.debug("ACP turn completed in %.2fs", time.monotonic() - started)
        return success_response(session.output, metadata=self._metadata(session, started))

    def estimate_cost(self, prompt: str) -> float:  # noqa: ARG002
        return 0.0

    def check_tool_permission(self, tool_name: str, details: dict[str, Any] | None = None) -> bool:
        """Decide one permission request according to the permission mode."""

        mode = self.permission_mode
        if mode is PermissionMode.AUTO_APPROVE:
            return True
        if mode is PermissionMode.DENY_ALL:
            return False
        if mode is PermissionMode.ALLOWLIST:
            return tool_name in self._allowed_tools
        if self.permission_prompt is None:
            logger.warning("No interactive permission prompt configured; denying %s", tool_name)
            return False
        return bool(self.permission_prompt(tool_name, details or {}))

    def set_permission_mode(self, mode: PermissionMode) -> None:
        self.permission_mode = mode

    def set_allowed_tools(self, tools: Iterable[str]) -> None:
        self._allowed_tools = set(tools)

    def add_allowed_tool(self, tool: str) -> None:
        self._allowed_tools.add(tool)

    def remove_allowed_tool(self, tool: str) -> None:
        self._allowed_tools.discard(tool)

    def get_allowed_tools(self) -> list[str]:
        return sorted(self._allowed_tools)

    def restart(self) -> None:
        """Drop the current process and session so the next call starts fresh."""

        self._shutdown_client()
        self._crashed = False
        self._available = None

    def close(self) -> None:
        self._shutdown_client()

    def _ensure_session(self, options: ExecuteOptions) -> AcpSession:
        client = self._client
        if client is not None and client.running and self._session is not None:
            return self._session

        self._shutdown_client()
        client = AcpClient(
            self.build_command(options),
            cwd=self.cwd,
            env={**self.config.env, **options.env},
            request_timeout_seconds=HANDSHAKE_TIMEOUT_SECONDS,
            on_notification=self._on_notification,
            on_request=self._on_request,
        )
        self._client = client
        client.start()
        client.request(
            METHOD_INITIALIZE,
            {
                "protocolVersion": PROTOCOL_VERSION,
                "clientCapabilities": {"fs": {"readTextFile": False, "writeTextFile": False}},
            },
        )
        result = client.request(
            METHOD_SESSION_NEW,
            {"cwd": str(self.cwd or Path(os.getcwd())), "mcpServers": []},
        )
        session_id = result.get("sessionId") if isinstance(result, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise AcpProtocolError(f"session/new returned no sessionId: {result!r}")
        self._session = AcpSession(session_id=session_id)
        logger.info("ACP session %s started", session_id)
        return self._session

    def _require_client(self) -> AcpClient:
        if self._client is None:
            raise RuntimeError("ACP client not started")
        return self._client

    def _on_notification(self, method: str, params: dict[str, Any]) -> None:
        if method not in (METHOD_SESSION_UPDATE, _LEGACY_UPDATE_METHOD):
            logger.debug("Ignoring ACP notification %s", method)
            return
        session = self._session
        if session is None:
            return
        session_id = params.get("sessionId")
        if session_id is not None and session_id != session.session_id:
            logger.debug("Update for foreign session %s ignored", session_id)
            return
        update = params.get("update", params)
        if isinstance(update, dict):
            session.apply_update(update)

    def _on_request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if method != METHOD_REQUEST_PERMISSION:
            raise AcpProtocolError(f"Method not found: {method}", code=-32601)

        tool_call = params.get("toolCall")
        tool_call = tool_call if isinstance(tool_call, dict) else {}
        tool_name = str(
            tool_call.get("title") or tool_call.get("toolName") or tool_call.get("kind") or "",
        )
        try:
            allowed = self.check_tool_permission(tool_name, tool_call)
        except Exception as error:  # noqa: BLE001
            logger.warning("Permission prompt for %s failed, denying: %r", tool_name, error)
            allowed = False
        logger.info(
            "Permission for %s: %s",
            tool_name or "<unnamed>",
            "allowed" if allowed else "denied",
        )

        option_id = _pick_option(params.get("options"), allow=allowed)
        if option_id is None:
            return {"outcome": {"outcome": "cancelled"}}
        return {"outcome": {"outcome": "selected", "optionId": option_id}}

    def _cancel_turn(self, session: AcpSession, request_id: int) -> None:
        """Cancel a timed-out prompt and wait for its response.

        Updates that arrive meanwhile still belong to the timed-out turn. If
        the agent does not answer within ``cancel_grace_seconds`` the process
        is stopped, so the next call starts a fresh session.
        """

        client = self._client
        if client is None or not client.running:
            return
        try:
            client.notify(METHOD_SESSION_CANCEL, {"sessionId": session.session_id})
            client.wait_for_response(request_id, timeout_seconds=self.cancel_grace_seconds)
        except AcpProcessExitedError as error:
            self._mark_crashed(error)
        except AcpRequestTimeoutError:
            logger.warning("ACP agent ignored cancel; restarting it before the next prompt")
            self._shutdown_client()
        except AcpProtocolError as error:
            logger.debug("Cancelled prompt answered with an error: %s", error)

    def _crash_response(self, error: AcpProcessExitedError) -> ToolResponse:
        session = self._session
        output = session.output if session is not None else ""
        self._mark_crashed(error)
        return error_response(
            str(error),
            output=output,
            retry_code=RetryCode.EXECUTION_ERROR,
            metadata=error.data if isinstance(error.data, dict) else {},
        )

    def _mark_crashed(self, error: AcpProcessExitedError) -> None:
        if self._session is not None:
            self._session.error = str(error)
        logger.error("ACP agent crashed: %s", error)
        self._crashed = True
        self._set_available(False)
        self._shutdown_client(keep_session=True)

    def _shutdown_client(self, *, keep_session: bool = False) -> None:
        if self._client is not None:
            self._client.stop()
            self._client = None
        if not keep_session:
            self._session = None

    @staticmethod
    def _metadata(session: AcpSession, started: float) -> dict[str, Any]:
        return {
            "duration_seconds": time.monotonic() - started,
            "session_id": session.session_id,
            "thoughts": session.thoughts,
            "tool_calls": [tool_call.to_dict() for tool_call in session.tool_calls],
            "tools_used": [tool_call.tool_name for tool_call in session.tool_calls],
            "stop_reason": session.stop_reason,
            "plan": session.plan,
        }


def _pick_option(options: object, *, allow: bool) -> str | None:
    """First option id whose kind matches the decision."""

    if not isinstance(options, list):
        return None
    prefix = "allow" if allow else "reject"
    for option in options:
        if not isinstance(option, dict):
            continue
        kind = str(option.get("kind") or option.get("optionId") or "")
        if kind.startswith(prefix) and option.get("optionId") is not None:
            return str(option["optionId"])
    return None
