from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from agent_loop.context import (
    MAX_ERROR_HISTORY,
    TRUNCATION_MARKER,
    ContextManager,
    PromptNotFoundError,
)

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Context Manager"),
]


def test_prompt_text_wins_over_file(tmp_path: Path) -> None:
    prompt_file = tmp_path / "PROMPT.md"
    prompt_file.write_text("from file", "utf-8")
    manager = ContextManager(prompt_file=prompt_file, prompt_text="direct text")

    assert manager.get_prompt() == "direct text"

    manager.set_prompt_file(prompt_file)
    assert manager.get_prompt() == "from file"

    manager.set_prompt_text("override")
    assert manager.get_prompt() == "override"


def test_missing_prompt_sources_raise(tmp_path: Path) -> None:
    with pytest.raises(PromptNotFoundError, match="not found"):
        ContextManager(prompt_file=tmp_path / "missing.md").get_prompt()
    with pytest.raises(PromptNotFoundError, match="No prompt"):
        ContextManager().get_prompt()


def test_truncation_keeps_the_full_tail() -> None:
    manager = ContextManager(prompt_text="task", max_context_size=100)
    output = "".join(str(index % 7) for index in range(200))

    manager.update_context(output)
    context = manager.get_context()

    assert context == TRUNCATION_MARKER + output[-100:]


def test_short_output_is_kept_verbatim() -> None:
    manager = ContextManager(prompt_text="task", max_context_size=100)

    manager.update_context("short output")

    assert manager.get_context() == "short output"
    assert manager.get_stats().last_updated is not None


def test_error_history_keeps_last_ten() -> None:
    manager = ContextManager(prompt_text="task")
    for index in range(15):
        manager.add_error_feedback(f"error {index}")

    history = manager.get_error_history()
    assert len(history) == MAX_ERROR_HISTORY
    assert history[0] == "error 5"
    assert manager.get_last_error() == "error 14"

    history.append("mutating the copy")
    assert len(manager.get_error_history()) == MAX_ERROR_HISTORY

    manager.clear_errors()
    assert manager.get_last_error() is None


def test_build_prompt_includes_recent_errors_and_output() -> None:
    manager = ContextManager(prompt_text="Build the parser")
    for index in range(5):
        manager.add_error_feedback(f"error {index}")
    manager.update_context("wrote tokenizer")

    prompt = manager.build_prompt()

    assert prompt.startswith("Build the parser\n\n")
    assert "- error 4" in prompt
    assert "- error 1" not in prompt
    assert "wrote tokenizer" in prompt


@pytest.mark.parametrize(
    ("content", "expected"),
    [
        ("work left\nTASK_COMPLETE\n", True),
        ("- [x] All tasks completed", True),
        ("## COMPLETED", True),
        ("All items have been completed.", True),
        ("task_complete", False),
        ("still working", False),
    ],
)
def test_completion_markers_are_case_sensitive(
    tmp_path: Path,
    content: str,
    expected: bool,
) -> None:
    prompt_file = tmp_path / "PROMPT.md"
    prompt_file.write_text(content, "utf-8")

    assert ContextManager(prompt_file=prompt_file).has_completion_marker() is expected


def test_unreadable_prompt_has_no_completion_marker(tmp_path: Path) -> None:
    assert ContextManager(prompt_file=tmp_path / "absent.md").has_completion_marker() is False


def test_write_prompt_updates_file(tmp_path: Path) -> None:
    prompt_file = tmp_path / "PROMPT.md"
    prompt_file.write_text("old", "utf-8")
    manager = ContextManager(prompt_file=prompt_file)

    manager.write_prompt("new\nTASK_COMPLETE\n")

    assert manager.has_completion_marker() is True


def test_cache_round_trip_and_bad_cache(tmp_path: Path) -> None:
    manager = ContextManager(prompt_text="task", cache_dir=tmp_path)
    manager.update_context("latest output")
    manager.add_error_feedback("boom")
    cache_path = manager.save_to_cache("session")

    payload = json.loads(cache_path.read_text("utf-8"))
    assert set(payload) == {"context", "error_history", "last_updated", "saved_at"}

    restored = ContextManager(prompt_text="task", cache_dir=tmp_path)
    assert restored.load_from_cache("session") is True
    assert restored.get_context() == "latest output"
    assert restored.get_error_history() == ["boom"]

    (tmp_path / "broken.json").write_text("{not json", "utf-8")
    assert restored.load_from_cache("broken") is False
    assert restored.load_from_cache("missing") is False


def test_reset_clears_context_and_errors() -> None:
    manager = ContextManager(prompt_text="task")
    manager.update_context("output")
    manager.add_error_feedback("error")

    manager.reset()

    stats = manager.get_stats()
    assert (stats.context_length, stats.error_count, stats.last_updated) == (0, 0, None)
    assert stats.prompt_length == len("task")
