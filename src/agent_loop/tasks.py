"""Task list extraction from the prompt and progress tracking across iterations."""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import replace

from agent_loop.models import Task, TaskStatus, utc_now

logger = logging.getLogger(__name__)

_TASK_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"- \[ \] (.+)"),
    re.compile(r"^\d+\.\s+(.+)", re.MULTILINE),
    re.compile(r"^Task:\s*(.+)", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^TODO:\s*(.+)", re.MULTILINE | re.IGNORECASE),
)
COMPLETION_WORDS: tuple[str, ...] = ("completed", "done", "finished", "implemented", "fixed")


def extract_tasks(prompt: str) -> list[Task]:
    """Pending tasks found in checkboxes, numbered items and ``Task:``/``TODO:`` lines.

    Patterns are applied in a fixed order; a description already seen is not
    added twice.
    """

    tasks: list[Task] = []
    seen: set[str] = set()
    created_at = utc_now()
    for pattern in _TASK_PATTERNS:
        for match in pattern.finditer(prompt):
            description = match.group(1).strip()
            if not description or description in seen:
                continue
            seen.add(description)
            tasks.append(
                Task(
                    id=len(tasks) + 1,
                    description=description,
                    status=TaskStatus.PENDING,
                    created_at=created_at,
                ),
            )
    logger.debug("Extracted %d tasks from prompt", len(tasks))
    return tasks


def mentions_completion(output: str) -> bool:
    lowered = output.lower()
    return any(word in lowered for word in COMPLETION_WORDS)


class TaskTracker:
    """Queue of pending tasks with at most one task in progress."""

    def __init__(self, tasks: list[Task] | None = None) -> None:
        self._queue: deque[Task] = deque(tasks or [])
        self._current: Task | None = None
        self._completed: list[Task] = []

    @classmethod
    def from_prompt(cls, prompt: str) -> TaskTracker:
        return cls(extract_tasks(prompt))

    @property
    def current(self) -> Task | None:
        return self._current

    @property
    def pending(self) -> tuple[Task, ...]:
        return tuple(self._queue)

    @property
    def completed(self) -> tuple[Task, ...]:
        return tuple(self._completed)

    def start_next(self, iteration: int) -> Task | None:
        """Mark the current task (pulling the next one if needed) as in progress."""

        return self.update_current(TaskStatus.IN_PROGRESS, iteration=iteration)

    def update_current(self, status: TaskStatus, *, iteration: int | None = None) -> Task | None:
        if self._current is None and self._queue:
            self._current = self._queue.popleft()
        task = self._current
        if task is None:
            return None

        task.status = status
        if iteration is not None:
            task.iteration = iteration
        if status is TaskStatus.COMPLETED:
            task.completed_at = utc_now()
            self._completed.append(task)
            self._current = None
            logger.info("Task %d completed: %s", task.id, task.description)
        return task

    def check_completion(self, output: str, *, iteration: int | None = None) -> Task | None:
        """Complete the current task when the output reports it done."""

        if self._current is None or not mentions_completion(output):
            return None
        return self.update_current(TaskStatus.COMPLETED, iteration=iteration)

    def snapshot(self) -> tuple[tuple[Task, ...], tuple[Task, ...]]:
        """Copies of (open tasks, completed tasks); open includes the current one."""

        open_tasks = [self._current, *self._queue] if self._current else list(self._queue)
        return (
            tuple(replace(task) for task in open_tasks),
            tuple(replace(task) for task in self._completed),
        )
