"""Redaction helpers for agent output kept in telemetry previews."""

from __future__ import annotations

import re
from collections.abc import Callable

ELLIPSIS = "..."

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-_]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(r"\b(ghp|gho|github_pat)_[A-Za-z0-9_]{16,}\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b(agent_loop|openai|anthropic|gemini|google|aws)[a-z0-9_]*_?"
            r"(api_|secret_)?(key|token)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)


def redact_secrets(text: str) -> str:
    """Mask API keys and bearer tokens that agents tend to echo back."""

    redacted = text
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def preview(text: str, max_chars: int) -> str:
    """Redacted prefix of ``text``; ``...`` is appended when it was cut."""

    redacted = redact_secrets(text)
    if len(redacted) <= max_chars:
        return redacted
    return redacted[: max(max_chars, 0)] + ELLIPSIS
