from __future__ import annotations

import allure

from agent_loop.models import TaskStatus
from agent_loop.tasks import TaskTracker, extract_tasks, mentions_completion

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Task Tracking"),
]

PROMPT = """# Build a parser

- [ ] Write the tokenizer
- [x] Set up the repo
1. Write the tokenizer
2. Add error recovery
Task: Document the grammar
todo: Publish a release
"""


def test_extract_tasks_in_pattern_order_without_duplicates() -> None:
    tasks = extract_tasks(PROMPT)

    assert [task.description for task in tasks] == [
        "Write the tokenizer",
        "Add error recovery",
        "Document the grammar",
        "Publish a release",
    ]
    assert [task.id for task in tasks] == [1, 2, 3, 4]
    assert {task.status for task in tasks} == {TaskStatus.PENDING}


def test_prompt_without_tasks() -> None:
    assert extract_tasks("Just make the tests pass.") == []
    assert TaskTracker.from_prompt("nothing here").start_next(1) is None


def test_completion_words() -> None:
    assert mentions_completion("Tokenizer IMPLEMENTED and tested")
    assert not mentions_completion("still working on it")


def test_tracker_moves_through_tasks() -> None:
    tracker = TaskTracker.from_prompt(PROMPT)

    current = tracker.start_next(1)
    assert current is not None
    assert current.status is TaskStatus.IN_PROGRESS
    assert tracker.check_completion("made progress", iteration=1) is None

    done = tracker.check_completion("tokenizer done", iteration=2)
    assert done is not None
    assert done.status is TaskStatus.COMPLETED
    assert done.completed_at is not None
    assert done.iteration == 2
    assert tracker.current is None

    following = tracker.start_next(3)
    assert following is not None
    assert following.description == "Add error recovery"
    assert [task.description for task in tracker.completed] == ["Write the tokenizer"]
    assert len(tracker.pending) == 2


def test_snapshot_returns_copies() -> None:
    tracker = TaskTracker.from_prompt(PROMPT)
    tracker.start_next(1)

    open_tasks, completed = tracker.snapshot()
    open_tasks[0].status = TaskStatus.FAILED

    assert len(open_tasks) == 4
    assert completed == ()
    assert tracker.current is not None
    assert tracker.current.status is TaskStatus.IN_PROGRESS
