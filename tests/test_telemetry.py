from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from agent_loop.telemetry.cost import (
    TOOL_COSTS,
    CostTracker,
    ToolPricing,
    load_pricing,
    lookup_pricing,
)
from agent_loop.telemetry.iteration_stats import IterationStats
from agent_loop.telemetry.metrics import MetricsTracker
from agent_loop.telemetry.redaction import preview, redact_secrets
from agent_loop.telemetry.snapshots import read_json, write_json_atomic

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Telemetry"),
]


def _record(stats: IterationStats, iteration: int, *, success: bool = True, **kwargs) -> None:
    stats.record_iteration(
        iteration=iteration,
        duration_seconds=float(iteration),
        success=success,
        **kwargs,
    )


def test_iteration_history_is_bounded_but_totals_are_not() -> None:
    stats = IterationStats(max_iterations_stored=3)
    for iteration in range(1, 6):
        _record(stats, iteration, success=iteration % 2 == 1, error="" if iteration % 2 else "bad")

    recent = stats.get_recent_iterations(10)
    assert [record.iteration for record in recent] == [3, 4, 5]
    assert (stats.total, stats.successes, stats.failures) == (5, 3, 2)
    assert stats.current_iteration == 5
    assert stats.get_success_rate() == pytest.approx(0.6)
    assert stats.get_average_duration() == pytest.approx(4.0)
    assert stats.get_error_messages() == ["bad"]
    assert stats.get_last_error() == "bad"


def test_output_preview_is_truncated_and_redacted() -> None:
    stats = IterationStats(max_preview_length=20)

    record = stats.record_iteration(
        iteration=1,
        duration_seconds=0.1,
        success=True,
        output="Authorization: Bearer abcdefghijklmnop and a lot more text",
    )

    assert "abcdefghijklmnop" not in record.output_preview
    assert record.output_preview.endswith("...")
    assert len(record.output_preview) == 23


def test_iteration_stats_summary_and_reset() -> None:
    stats = IterationStats()
    assert stats.get_success_rate() == 0.0
    assert stats.get_runtime_seconds() == 0.0
    assert stats.get_recent_iterations(0) == []

    _record(stats, 1, tokens_used=10, cost_usd=0.01, tools_used=["write_file"])
    payload = stats.to_dict()

    assert payload["total"] == 1
    assert payload["started_at"] is not None
    assert payload["iterations"][0]["tools_used"] == ["write_file"]
    json.dumps(payload)

    stats.reset()
    assert stats.to_summary().total == 0
    assert stats.get_last_error() is None


def test_cost_formula_per_thousand_tokens() -> None:
    tracker = CostTracker(TOOL_COSTS)

    cost = tracker.add_usage("claude", 1_000, 1_000)

    assert cost == pytest.approx(0.018)
    assert tracker.get_total_cost() == pytest.approx(0.018)
    assert tracker.get_cost_by_tool("claude") == pytest.approx(0.018)


def test_unknown_tool_is_free_and_reported_cost_wins() -> None:
    tracker = CostTracker(TOOL_COSTS)

    assert tracker.add_usage("mystery", 50_000, 50_000) == 0.0
    assert tracker.add_usage("claude", 1_000_000, 0, cost_usd=0.25) == pytest.approx(0.25)

    summary = tracker.get_summary()
    assert summary.usage_count == 2
    assert summary.costs_by_tool == {"mystery": 0.0, "claude": pytest.approx(0.25)}
    assert summary.average_cost == pytest.approx(0.125)
    assert tracker.get_summary() == summary


def test_cost_history_is_capped_but_total_keeps_counting() -> None:
    tracker = CostTracker({"*": ToolPricing(input_per_1k=1.0, output_per_1k=0.0)}, max_history=2)
    for _ in range(4):
        tracker.add_usage("any", 1_000, 0)

    assert len(tracker.get_history()) == 2
    assert tracker.get_usage_count() == 4
    assert tracker.get_total_cost() == pytest.approx(4.0)
    assert len(tracker.get_recent_usage(1)) == 1

    tracker.reset()
    assert tracker.get_total_cost() == 0.0
    assert tracker.get_all_costs_by_tool() == {}


def test_pricing_overrides_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_LOOP_TOOL_PRICING", "claude:1:2, *:0.5:0.5, broken, x:a:b")

    pricing = load_pricing()

    assert pricing["claude"] == ToolPricing(input_per_1k=1.0, output_per_1k=2.0)
    assert lookup_pricing("unknown", pricing) == ToolPricing(0.5, 0.5)
    assert "x" not in pricing
    assert lookup_pricing("Gemini", TOOL_COSTS) == TOOL_COSTS["gemini"]


def test_estimate_cost_matches_add_usage() -> None:
    estimate = CostTracker.estimate_cost("gemini", 2_000, 4_000)

    assert estimate == pytest.approx(0.0005 + 0.004)


def test_metrics_tracker_counters() -> None:
    metrics = MetricsTracker()
    metrics.record_iteration(success=True)
    metrics.record_iteration(success=False)
    metrics.record_error()
    metrics.record_checkpoint()
    metrics.record_rollback()

    snapshot = metrics.get_metrics()
    snapshot.iterations = 99

    payload = metrics.to_dict()
    assert payload["iterations"] == 2
    assert payload["successful_iterations"] == 1
    assert payload["failed_iterations"] == 1
    assert payload["errors"] == 1
    assert payload["checkpoints"] == 1
    assert payload["rollbacks"] == 1
    assert payload["success_rate"] == pytest.approx(0.5)
    assert metrics.get_elapsed_seconds() >= 0.0

    metrics.reset()
    assert metrics.get_success_rate() == 0.0


@pytest.mark.parametrize(
    ("text", "leaked"),
    [
        ("token sk-abcdef1234567890", "sk-abcdef1234567890"),
        ("ANTHROPIC_API_KEY=supersecretvalue", "supersecretvalue"),
        ("https://x.test/cb?token=abc123&ok=1", "abc123"),
        ("ghp_" + "a" * 20, "a" * 20),
    ],
)
def test_redact_secrets(text: str, leaked: str) -> None:
    assert leaked not in redact_secrets(text)


def test_preview_leaves_short_text_alone() -> None:
    assert preview("plain output", 50) == "plain output"


def test_snapshot_write_is_atomic_and_readable(tmp_path: Path) -> None:
    target = tmp_path / "metrics" / "state.json"

    write_json_atomic(target, {"iteration": 1})
    write_json_atomic(target, {"iteration": 2})

    assert read_json(target) == {"iteration": 2}
    assert [path.name for path in target.parent.iterdir()] == ["state.json"]
