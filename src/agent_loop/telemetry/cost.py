"""Token cost accounting per agent tool."""

from __future__ import annotations

import logging
import os
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime

from agent_loop.models import utc_now

logger = logging.getLogger(__name__)

PRICING_ENV_VAR = "AGENT_LOOP_TOOL_PRICING"
FREE_TOOL = "qchat"
MAX_USAGE_HISTORY = 1_000


@dataclass(frozen=True, slots=True)
class ToolPricing:
    """Per-tool input/output pricing in USD per 1K tokens."""

    input_per_1k: float
    output_per_1k: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1_000) * self.input_per_1k + (
            output_tokens / 1_000
        ) * self.output_per_1k


TOOL_COSTS: dict[str, ToolPricing] = {
    "claude": ToolPricing(input_per_1k=0.003, output_per_1k=0.015),
    "gemini": ToolPricing(input_per_1k=0.000_25, output_per_1k=0.001),
    "qchat": ToolPricing(input_per_1k=0.0, output_per_1k=0.0),
    "acp": ToolPricing(input_per_1k=0.0, output_per_1k=0.0),
    "gpt-4": ToolPricing(input_per_1k=0.03, output_per_1k=0.06),
}


@dataclass(slots=True)
class CostEntry:
    """One recorded usage."""

    timestamp: datetime
    tool: str
    input_tokens: int
    output_tokens: int
    cost: float


@dataclass(slots=True)
class CostSummary:
    """Aggregate spend across all recorded usages."""

    total_cost: float
    costs_by_tool: dict[str, float]
    usage_count: int
    average_cost: float

    def to_dict(self) -> dict[str, object]:
        return {
            "total_cost": self.total_cost,
            "costs_by_tool": dict(self.costs_by_tool),
            "usage_count": self.usage_count,
            "average_cost": self.average_cost,
        }


def load_pricing(raw: str | None = None) -> dict[str, ToolPricing]:
    """Built-in price table with ``AGENT_LOOP_TOOL_PRICING`` overrides applied."""

    pricing = dict(TOOL_COSTS)
    source = os.getenv(PRICING_ENV_VAR, "") if raw is None else raw
    pricing.update(_parse_pricing_mapping(source))
    return pricing


def lookup_pricing(tool: str, pricing: Mapping[str, ToolPricing]) -> ToolPricing:
    """Exact tool price, then the ``*`` wildcard, then free."""

    direct = pricing.get(tool.strip().lower())
    if direct is not None:
        return direct
    wildcard = pricing.get("*")
    if wildcard is not None:
        return wildcard
    return TOOL_COSTS[FREE_TOOL]


def _parse_pricing_mapping(raw: str) -> dict[str, ToolPricing]:
    """Parse `AGENT_LOOP_TOOL_PRICING` mapping.

    Format:
    - `tool:input_per_1k:output_per_1k`
    - multiple entries separated by `,`
    - `*` as tool name sets the price for unknown tools
    """

    parsed: dict[str, ToolPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 3:
            logger.warning("Ignoring malformed pricing entry: %s", value)
            continue
        tool, input_price, output_price = parts
        try:
            input_per_1k = float(input_price)
            output_per_1k = float(output_price)
        except ValueError:
            logger.warning("Ignoring pricing entry with non-numeric price: %s", value)
            continue
        parsed[tool.lower()] = ToolPricing(
            input_per_1k=input_per_1k,
            output_per_1k=output_per_1k,
        )
    return parsed


class CostTracker:
    """Running spend totals; history is capped while totals keep counting."""

    def __init__(
        self,
        pricing: Mapping[str, ToolPricing] | None = None,
        *,
        max_history: int = MAX_USAGE_HISTORY,
    ) -> None:
        self.pricing: dict[str, ToolPricing] = (
            dict(pricing) if pricing is not None else load_pricing()
        )
        self._total_cost = 0.0
        self._usage_count = 0
        self._costs_by_tool: dict[str, float] = {}
        self._history: deque[CostEntry] = deque(maxlen=max(max_history, 1))

    def add_usage(
        self,
        tool: str,
        input_tokens: int,
        output_tokens: int,
        cost_usd: float | None = None,
    ) -> float:
        """Record usage and return its cost; a reported ``cost_usd`` wins over prices."""

        input_tokens = max(input_tokens, 0)
        output_tokens = max(output_tokens, 0)
        if cost_usd is not None:
            cost = max(cost_usd, 0.0)
        else:
            cost = lookup_pricing(tool, self.pricing).cost(input_tokens, output_tokens)

        self._total_cost += cost
        self._usage_count += 1
        self._costs_by_tool[tool] = self._costs_by_tool.get(tool, 0.0) + cost
        self._history.append(
            CostEntry(
                timestamp=utc_now(),
                tool=tool,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=cost,
            ),
        )
        return cost

    def get_total_cost(self) -> float:
        return self._total_cost

    def get_cost_by_tool(self, tool: str) -> float:
        return self._costs_by_tool.get(tool, 0.0)

    def get_all_costs_by_tool(self) -> dict[str, float]:
        return dict(self._costs_by_tool)

    def get_usage_count(self) -> int:
        return self._usage_count

    def get_average_cost(self) -> float:
        if self._usage_count == 0:
            return 0.0
        return self._total_cost / self._usage_count

    def get_history(self) -> list[CostEntry]:
        return list(self._history)

    def get_recent_usage(self, count: int) -> list[CostEntry]:
        if count <= 0:
            return []
        return list(self._history)[-count:]

    def get_summary(self) -> CostSummary:
        return CostSummary(
            total_cost=self._total_cost,
            costs_by_tool=dict(self._costs_by_tool),
            usage_count=self._usage_count,
            average_cost=self.get_average_cost(),
        )

    def reset(self) -> None:
        self._total_cost = 0.0
        self._usage_count = 0
        self._costs_by_tool.clear()
        self._history.clear()

    @staticmethod
    def estimate_cost(
        tool: str,
        input_tokens: int,
        estimated_output_tokens: int,
        pricing: Mapping[str, ToolPricing] | None = None,
    ) -> float:
        table = pricing if pricing is not None else TOOL_COSTS
        return lookup_pricing(tool, table).cost(input_tokens, estimated_output_tokens)
