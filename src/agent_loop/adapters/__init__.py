"""Agent adapters and the factory that picks one of them."""

from __future__ import annotations

import logging

from agent_loop.adapters.acp import AcpOptions, ProtocolAdapter
from agent_loop.adapters.base import (
    AdapterConfig,
    AdapterUnavailableError,
    AgentType,
    ExecuteOptions,
    ToolAdapter,
    estimate_tokens,
)
from agent_loop.adapters.process import (
    ClaudeAdapter,
    CommandResult,
    GeminiAdapter,
    ProcessExecAdapter,
    QChatAdapter,
    run_command,
)

logger = logging.getLogger(__name__)

AUTO_DETECT_ORDER: tuple[AgentType, ...] = (
    AgentType.CLAUDE,
    AgentType.Q,
    AgentType.GEMINI,
    AgentType.ACP,
)


def create_adapter(
    agent_type: AgentType,
    config: AdapterConfig | None = None,
    acp_options: AcpOptions | None = None,
) -> ToolAdapter:
    """Build the adapter for a concrete agent type without probing it."""

    if agent_type is AgentType.CLAUDE:
        return ClaudeAdapter(config)
    if agent_type is AgentType.Q:
        return QChatAdapter(config)
    if agent_type is AgentType.GEMINI:
        return GeminiAdapter(config)
    if agent_type is AgentType.ACP:
        return ProtocolAdapter.from_options(config, acp_options)
    raise ValueError(f"Use auto_detect_adapter for agent type {agent_type.value!r}")


def auto_detect_adapter(
    config: AdapterConfig | None = None,
    acp_options: AcpOptions | None = None,
) -> ToolAdapter | None:
    """First available adapter in ``AUTO_DETECT_ORDER``."""

    for agent_type in AUTO_DETECT_ORDER:
        adapter = create_adapter(agent_type, config, acp_options)
        logger.debug("Checking availability of %s...", adapter.name)
        if adapter.check_availability():
            logger.info("Auto-detected adapter: %s", adapter.name)
            return adapter
    logger.warning("No adapters available")
    return None


def get_adapter(
    agent_type: AgentType,
    config: AdapterConfig | None = None,
    acp_options: AcpOptions | None = None,
) -> ToolAdapter:
    """Available adapter for ``agent_type``; raises ``AdapterUnavailableError`` otherwise."""

    if agent_type is AgentType.AUTO:
        adapter = auto_detect_adapter(config, acp_options)
        if adapter is None:
            raise AdapterUnavailableError("No agent CLI found in PATH")
        return adapter

    adapter = create_adapter(agent_type, config, acp_options)
    if not adapter.check_availability():
        raise AdapterUnavailableError(f"Adapter {adapter.name} is not available")
    return adapter


def get_available_adapters(
    config: AdapterConfig | None = None,
    acp_options: AcpOptions | None = None,
) -> list[ToolAdapter]:
    return [
        adapter
        for adapter in (
            create_adapter(agent_type, config, acp_options) for agent_type in AUTO_DETECT_ORDER
        )
        if adapter.check_availability()
    ]


__all__ = [
    "AUTO_DETECT_ORDER",
    "AcpOptions",
    "AdapterConfig",
    "AdapterUnavailableError",
    "AgentType",
    "ClaudeAdapter",
    "CommandResult",
    "ExecuteOptions",
    "GeminiAdapter",
    "ProcessExecAdapter",
    "ProtocolAdapter",
    "QChatAdapter",
    "ToolAdapter",
    "auto_detect_adapter",
    "create_adapter",
    "estimate_tokens",
    "get_adapter",
    "get_available_adapters",
    "run_command",
]
