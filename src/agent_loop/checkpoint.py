"""Version-control checkpoints taken between iterations."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from agent_loop.adapters.process import CommandResult, run_command

logger = logging.getLogger(__name__)

MESSAGE_TEMPLATE = (
    "[agent-loop checkpoint] Iteration {iteration}\n\nAutomated checkpoint by agent-loop"
)
NOTHING_TO_COMMIT = "nothing to commit"
GIT_TIMEOUT_SECONDS = 60.0


@dataclass(slots=True)
class CheckpointResult:
    """Outcome of one checkpoint attempt."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    message: str = ""


class VersionControl(Protocol):
    """Operations the checkpointer needs from the working-tree VCS."""

    def stage_all(self) -> CommandResult: ...

    def commit(self, message: str) -> CommandResult: ...

    def create_tag(self, name: str, message: str | None = None) -> CommandResult: ...

    def has_uncommitted_changes(self) -> bool: ...

    def reset_to(self, ref: str, *, hard: bool = False) -> CommandResult: ...


class GitCli:
    """``VersionControl`` backed by the ``git`` executable."""

    def __init__(
        self,
        cwd: Path | None = None,
        *,
        timeout_seconds: float = GIT_TIMEOUT_SECONDS,
        executable: str = "git",
    ) -> None:
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds
        self.executable = executable

    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def is_repository(self) -> bool:
        result = self._git("rev-parse", "--is-inside-work-tree")
        return result.success and result.stdout.strip() == "true"

    def stage_all(self) -> CommandResult:
        return self._git("add", "-A")

    def commit(self, message: str) -> CommandResult:
        return self._git("commit", "-m", message)

    def create_tag(self, name: str, message: str | None = None) -> CommandResult:
        if message:
            return self._git("tag", "-a", name, "-m", message)
        return self._git("tag", name)

    def has_uncommitted_changes(self) -> bool:
        result = self._git("status", "--porcelain")
        return result.success and bool(result.stdout.strip())

    def reset_to(self, ref: str, *, hard: bool = False) -> CommandResult:
        return self._git("reset", "--hard" if hard else "--soft", ref)

    def _git(self, *args: str) -> CommandResult:
        return run_command(
            [self.executable, *args],
            timeout_seconds=self.timeout_seconds,
            cwd=self.cwd,
        )


class Checkpointer:
    """Decides when to commit the working tree and with what message.

    Failures are logged and reported in the result; they never stop the loop.
    """

    def __init__(
        self,
        vcs: VersionControl,
        *,
        interval: int = 5,
        enabled: bool = True,
    ) -> None:
        self.vcs = vcs
        self.interval = interval
        self.enabled = enabled

    def should_checkpoint(self, iteration: int) -> bool:
        if not self.enabled or self.interval <= 0 or iteration <= 0:
            return False
        return iteration % self.interval == 0

    @staticmethod
    def build_message(iteration: int) -> str:
        return MESSAGE_TEMPLATE.format(iteration=iteration)

    def checkpoint(self, iteration: int, message: str | None = None) -> CheckpointResult:
        commit_message = message or self.build_message(iteration)
        try:
            staged = self.vcs.stage_all()
            if not staged.success:
                logger.warning("Failed to stage changes: %s", staged.stderr.strip())
            committed = self.vcs.commit(commit_message)
        except OSError as error:
            logger.warning("Failed to create checkpoint: %s", error)
            return CheckpointResult(success=False, stderr=str(error), message=commit_message)

        result = CheckpointResult(
            success=committed.success,
            stdout=committed.stdout,
            stderr=committed.stderr,
            message=commit_message,
        )
        if committed.success:
            logger.info("Created checkpoint for iteration %d", iteration)
        elif NOTHING_TO_COMMIT in committed.stdout or NOTHING_TO_COMMIT in committed.stderr:
            logger.debug("No changes to commit")
            result.success = True
        else:
            logger.warning("Failed to create checkpoint: %s", committed.stderr.strip())
        return result

    def final_checkpoint(self, iteration: int) -> CheckpointResult | None:
        """Commit leftovers at the end of a run; None when the tree is clean."""

        if not self.enabled:
            return None
        try:
            dirty = self.vcs.has_uncommitted_changes()
        except OSError as error:
            logger.warning("Failed to inspect working tree: %s", error)
            return None
        if not dirty:
            return None
        return self.checkpoint(iteration, f"{self.build_message(iteration)} (final)")

    def tag(self, name: str, message: str | None = None) -> CheckpointResult:
        try:
            result = self.vcs.create_tag(name, message)
        except OSError as error:
            logger.warning("Failed to create tag %s: %s", name, error)
            return CheckpointResult(success=False, stderr=str(error), message=name)
        if not result.success:
            logger.warning("Failed to create tag %s: %s", name, result.stderr.strip())
        return CheckpointResult(
            success=result.success,
            stdout=result.stdout,
            stderr=result.stderr,
            message=name,
        )

    def rollback(self, ref: str, *, hard: bool = False) -> CheckpointResult:
        try:
            result = self.vcs.reset_to(ref, hard=hard)
        except OSError as error:
            logger.warning("Failed to roll back to %s: %s", ref, error)
            return CheckpointResult(success=False, stderr=str(error), message=ref)
        if result.success:
            logger.info("Rolled back to %s", ref)
        else:
            logger.warning("Failed to roll back to %s: %s", ref, result.stderr.strip())
        return CheckpointResult(
            success=result.success,
            stdout=result.stdout,
            stderr=result.stderr,
            message=ref,
        )
