"""Bounded-memory telemetry: iteration history, spend and run counters."""

from agent_loop.telemetry.cost import TOOL_COSTS, CostSummary, CostTracker, ToolPricing
from agent_loop.telemetry.iteration_stats import IterationStats, IterationSummary
from agent_loop.telemetry.metrics import MetricsTracker, RunMetrics
from agent_loop.telemetry.snapshots import write_json_atomic
from agent_loop.telemetry.usage import UsageExtraction, extract_usage

__all__ = [
    "TOOL_COSTS",
    "CostSummary",
    "CostTracker",
    "IterationStats",
    "IterationSummary",
    "MetricsTracker",
    "RunMetrics",
    "ToolPricing",
    "UsageExtraction",
    "extract_usage",
    "write_json_atomic",
]
