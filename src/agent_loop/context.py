"""Prompt source and accumulated execution context for the agent loop."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_loop.models import utc_now

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "[...truncated...]\n"
MAX_ERROR_HISTORY = 10
COMPLETION_MARKERS: tuple[str, ...] = (
    "TASK_COMPLETE",
    "[x] All tasks completed",
    "## COMPLETED",
    "All items have been completed",
)
_PROMPT_ERROR_LIMIT = 3


class PromptNotFoundError(FileNotFoundError):
    """Raised when neither prompt text nor a readable prompt file is available."""


@dataclass(slots=True)
class ContextStats:
    """Size and freshness of the tracked context."""

    prompt_length: int
    context_length: int
    error_count: int
    last_updated: str | None


class ContextManager:
    """Owns the task prompt plus the latest agent output and error history."""

    def __init__(
        self,
        *,
        prompt_file: Path | None = None,
        prompt_text: str | None = None,
        max_context_size: int = 8_000,
        cache_dir: Path = Path(".agent/cache"),
    ) -> None:
        self.prompt_file = prompt_file
        self.prompt_text = prompt_text
        self.max_context_size = max_context_size
        self.cache_dir = cache_dir
        self._context = ""
        self._error_history: list[str] = []
        self._last_updated: datetime | None = None

    def get_prompt(self) -> str:
        """Return direct prompt text, falling back to the prompt file."""

        if self.prompt_text:
            return self.prompt_text
        if self.prompt_file is not None:
            if not self.prompt_file.is_file():
                raise PromptNotFoundError(f"Prompt file not found: {self.prompt_file}")
            return self.prompt_file.read_text("utf-8")
        raise PromptNotFoundError("No prompt text or file specified")

    def set_prompt_text(self, text: str) -> None:
        self.prompt_text = text

    def set_prompt_file(self, path: Path) -> None:
        self.prompt_file = path
        self.prompt_text = None

    def write_prompt(self, content: str) -> None:
        if self.prompt_file is None:
            raise PromptNotFoundError("No prompt file specified")
        self.prompt_file.write_text(content, "utf-8")
        logger.debug("Updated prompt file: %s", self.prompt_file)

    def build_prompt(self) -> str:
        """Prompt for the next agent call, with recent output and errors appended."""

        sections = [self.get_prompt().rstrip("\n")]
        if self._error_history:
            recent = self._error_history[-_PROMPT_ERROR_LIMIT:]
            sections.append(
                "## Errors from previous iterations\n"
                + "\n".join(f"- {error}" for error in recent),
            )
        if self._context:
            sections.append(f"## Output of the previous iteration\n{self._context}")
        return "\n\n".join(sections) + "\n"

    def update_context(self, output: str) -> None:
        """Track the latest output, keeping only its last ``max_context_size`` characters.

        A truncated context is the marker followed by that full tail.
        """

        self._context = output
        self._last_updated = utc_now()
        if len(output) <= self.max_context_size:
            return

        tail = output[-self.max_context_size :] if self.max_context_size > 0 else ""
        self._context = f"{TRUNCATION_MARKER}{tail}"
        logger.debug("Context truncated to %d characters", len(self._context))

    def get_context(self) -> str:
        return self._context

    def add_error_feedback(self, error: str) -> None:
        self._error_history.append(error)
        if len(self._error_history) > MAX_ERROR_HISTORY:
            del self._error_history[: len(self._error_history) - MAX_ERROR_HISTORY]

    def get_error_history(self) -> list[str]:
        return list(self._error_history)

    def get_last_error(self) -> str | None:
        return self._error_history[-1] if self._error_history else None

    def clear_errors(self) -> None:
        self._error_history = []

    def reset(self) -> None:
        self._context = ""
        self._error_history = []
        self._last_updated = None

    def get_stats(self) -> ContextStats:
        try:
            prompt_length = len(self.get_prompt())
        except (OSError, UnicodeDecodeError):
            prompt_length = 0
        return ContextStats(
            prompt_length=prompt_length,
            context_length=len(self._context),
            error_count=len(self._error_history),
            last_updated=self._last_updated.isoformat() if self._last_updated else None,
        )

    def has_completion_marker(self) -> bool:
        """True when the prompt contains one of the literal completion markers."""

        try:
            prompt = self.get_prompt()
        except (OSError, UnicodeDecodeError):
            return False
        return any(marker in prompt for marker in COMPLETION_MARKERS)

    def save_to_cache(self, key: str) -> Path:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        cache_path = self._cache_path(key)
        payload = {
            "context": self._context,
            "error_history": self._error_history,
            "last_updated": self._last_updated.isoformat() if self._last_updated else None,
            "saved_at": utc_now().isoformat(),
        }
        cache_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
        return cache_path

    def load_from_cache(self, key: str) -> bool:
        """Restore context saved under key; missing or malformed cache returns False."""

        cache_path = self._cache_path(key)
        if not cache_path.is_file():
            return False
        try:
            payload = json.loads(cache_path.read_text("utf-8"))
            if not isinstance(payload, dict):
                raise TypeError(f"Expected JSON object in {cache_path}")
            context = payload.get("context") or ""
            errors = payload.get("error_history") or []
            if not isinstance(context, str) or not isinstance(errors, list):
                raise TypeError(f"Unexpected cache layout in {cache_path}")
            last_updated = payload.get("last_updated")
            parsed_updated = datetime.fromisoformat(last_updated) if last_updated else None
        except (OSError, ValueError, TypeError) as error:
            logger.warning("Failed to load cache %s: %s", cache_path, error)
            return False

        self._context = context
        self._error_history = [str(item) for item in errors][-MAX_ERROR_HISTORY:]
        self._last_updated = parsed_updated
        return True

    def _cache_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"
