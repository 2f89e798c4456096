"""Agent Client Protocol message shapes and per-session state."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

METHOD_INITIALIZE = "initialize"
METHOD_SESSION_NEW = "session/new"
METHOD_SESSION_PROMPT = "session/prompt"
METHOD_SESSION_CANCEL = "session/cancel"
METHOD_SESSION_UPDATE = "session/update"
METHOD_REQUEST_PERMISSION = "session/request_permission"

PROTOCOL_VERSION = 1


class AcpProtocolError(RuntimeError):
    """JSON-RPC error response or malformed traffic from the agent."""

    def __init__(self, message: str, *, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class AcpProcessExitedError(AcpProtocolError):
    """The agent process exited while a request was outstanding."""


class AcpRequestTimeoutError(TimeoutError):
    """No response arrived in time; ``request_id`` names the abandoned request."""

    def __init__(self, message: str, *, request_id: int) -> None:
        super().__init__(message)
        self.request_id = request_id


class UpdateKind(str, Enum):
    """Kinds of ``session/update`` notifications."""

    AGENT_MESSAGE_CHUNK = "agent_message_chunk"
    AGENT_THOUGHT_CHUNK = "agent_thought_chunk"
    TOOL_CALL = "tool_call"
    TOOL_CALL_UPDATE = "tool_call_update"
    PLAN = "plan"


class ToolCallStatus(str, Enum):
    """Tool call lifecycle; transitions only move forward."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, raw: object) -> ToolCallStatus | None:
        if not isinstance(raw, str):
            return None
        value = raw.strip().lower()
        if value == "in_progress":
            return cls.RUNNING
        try:
            return cls(value)
        except ValueError:
            return None


_ALLOWED_TRANSITIONS: dict[ToolCallStatus, frozenset[ToolCallStatus]] = {
    ToolCallStatus.PENDING: frozenset(
        {ToolCallStatus.RUNNING, ToolCallStatus.COMPLETED, ToolCallStatus.FAILED},
    ),
    ToolCallStatus.RUNNING: frozenset({ToolCallStatus.COMPLETED, ToolCallStatus.FAILED}),
    ToolCallStatus.COMPLETED: frozenset(),
    ToolCallStatus.FAILED: frozenset(),
}


class PermissionMode(str, Enum):
    """How unsolicited permission requests from the agent are answered."""

    AUTO_APPROVE = "auto_approve"
    DENY_ALL = "deny_all"
    ALLOWLIST = "allowlist"
    INTERACTIVE = "interactive"


@dataclass(slots=True)
class ToolCall:
    """One tool invocation reported by the agent."""

    tool_call_id: str
    tool_name: str
    status: ToolCallStatus = ToolCallStatus.PENDING
    arguments: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str | None = None

    def advance(self, status: ToolCallStatus) -> bool:
        """Move to ``status`` if allowed; invalid transitions are ignored."""

        if status == self.status:
            return True
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            logger.warning(
                "Ignoring tool call %s transition %s -> %s",
                self.tool_call_id,
                self.status.value,
                status.value,
            )
            return False
        self.status = status
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "status": self.status.value,
            "arguments": self.arguments,
            "result": self.result,
            "error": self.error,
        }


@dataclass(slots=True)
class AcpSession:
    """Per-session accumulation of agent output, thoughts and tool calls."""

    session_id: str
    output: str = ""
    thoughts: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    plan: Any = None
    completed: bool = False
    stop_reason: str | None = None
    error: str | None = None

    def begin_turn(self) -> None:
        self.output = ""
        self.thoughts = ""
        self.tool_calls = []
        self.plan = None
        self.completed = False
        self.stop_reason = None
        self.error = None

    def find_tool_call(self, tool_call_id: str) -> ToolCall | None:
        for tool_call in self.tool_calls:
            if tool_call.tool_call_id == tool_call_id:
                return tool_call
        return None

    def apply_update(self, update: dict[str, Any]) -> None:
        """Fold one ``session/update`` payload into the session."""

        kind = _parse_kind(update.get("sessionUpdate") or update.get("kind"))
        if kind is None:
            logger.debug("Unknown session update kind: %s", update)
            return

        if kind is UpdateKind.AGENT_MESSAGE_CHUNK:
            self.output += _content_text(update.get("content"))
        elif kind is UpdateKind.AGENT_THOUGHT_CHUNK:
            self.thoughts += _content_text(update.get("content"))
        elif kind is UpdateKind.TOOL_CALL:
            self._start_tool_call(update)
        elif kind is UpdateKind.TOOL_CALL_UPDATE:
            self._update_tool_call(update)
        else:
            self.plan = update.get("entries", update.get("content"))

    def _start_tool_call(self, update: dict[str, Any]) -> None:
        tool_call_id = update.get("toolCallId")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            logger.debug("Tool call without id ignored")
            return
        if self.find_tool_call(tool_call_id) is not None:
            self._update_tool_call(update)
            return
        tool_call = ToolCall(
            tool_call_id=tool_call_id,
            tool_name=str(
                update.get("title") or update.get("toolName") or update.get("kind") or "",
            ),
            arguments=_as_dict(update.get("rawInput", update.get("arguments"))),
        )
        self.tool_calls.append(tool_call)
        status = ToolCallStatus.parse(update.get("status"))
        if status is not None:
            tool_call.advance(status)

    def _update_tool_call(self, update: dict[str, Any]) -> None:
        tool_call_id = update.get("toolCallId")
        tool_call = self.find_tool_call(tool_call_id) if isinstance(tool_call_id, str) else None
        if tool_call is None:
            logger.debug("Update for unknown tool call %s ignored", tool_call_id)
            return
        status = ToolCallStatus.parse(update.get("status"))
        if status is not None and not tool_call.advance(status):
            return
        if "rawOutput" in update:
            tool_call.result = update["rawOutput"]
        elif "result" in update:
            tool_call.result = update["result"]
        if update.get("error"):
            tool_call.error = str(update["error"])

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "output": self.output,
            "thoughts": self.thoughts,
            "tool_calls": [tool_call.to_dict() for tool_call in self.tool_calls],
            "completed": self.completed,
            "stop_reason": self.stop_reason,
            "error": self.error,
        }


def _parse_kind(raw: object) -> UpdateKind | None:
    if not isinstance(raw, str):
        return None
    try:
        return UpdateKind(raw)
    except ValueError:
        return None


def _as_dict(value: object) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _content_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        text = content.get("text")
        return text if isinstance(text, str) else ""
    if isinstance(content, list):
        return "".join(_content_text(item) for item in content)
    return ""


def make_request(
    request_id: int,
    method: str,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_result(request_id: object, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error(request_id: object, code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def encode_message(message: dict[str, Any]) -> str:
    """One JSON object per line."""

    return json.dumps(message, ensure_ascii=False, separators=(",", ":")) + "\n"


def decode_message(line: str) -> dict[str, Any]:
    """Parse one line; anything other than a JSON object raises ``AcpProtocolError``."""

    try:
        message = json.loads(line)
    except json.JSONDecodeError as error:
        raise AcpProtocolError(f"Malformed JSON-RPC line: {line[:200]!r}") from error
    if not isinstance(message, dict):
        raise AcpProtocolError(f"Expected JSON object, got {type(message).__name__}")
    return message


def is_response(message: dict[str, Any]) -> bool:
    if "id" not in message or "method" in message:
        return False
    return "result" in message or "error" in message


def is_request(message: dict[str, Any]) -> bool:
    return "method" in message and "id" in message


def is_notification(message: dict[str, Any]) -> bool:
    return "method" in message and "id" not in message


def response_error(message: dict[str, Any]) -> AcpProtocolError | None:
    """Error carried by a response, or None for a success response."""

    error = message.get("error")
    if error is None:
        return None
    if not isinstance(error, dict):
        return AcpProtocolError(str(error))
    return AcpProtocolError(
        str(error.get("message") or "Unknown JSON-RPC error"),
        code=error.get("code") if isinstance(error.get("code"), int) else None,
        data=error.get("data"),
    )
