"""Agent Client Protocol adapter: JSON-RPC over the pipes of a long-lived agent."""

from agent_loop.adapters.acp.adapter import AcpOptions, ProtocolAdapter
from agent_loop.adapters.acp.client import AcpClient
from agent_loop.adapters.acp.models import (
    AcpProcessExitedError,
    AcpProtocolError,
    AcpRequestTimeoutError,
    AcpSession,
    PermissionMode,
    ToolCall,
    ToolCallStatus,
    UpdateKind,
)

__all__ = [
    "AcpClient",
    "AcpOptions",
    "AcpProcessExitedError",
    "AcpProtocolError",
    "AcpRequestTimeoutError",
    "AcpSession",
    "PermissionMode",
    "ProtocolAdapter",
    "ToolCall",
    "ToolCallStatus",
    "UpdateKind",
]
