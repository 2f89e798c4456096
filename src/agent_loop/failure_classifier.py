"""Deterministic failure classification for the adapter retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from agent_loop.models import RETRYABLE_CODES, RetryCode

FAILURE_CLASSIFIER_VERSION = 1

_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "not found",
    "enoent",
    "no such file or directory",
    "not available",
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "authentication",
)
_CONNECTION_PATTERNS: tuple[str, ...] = (
    "connection",
    "econnrefused",
    "econnreset",
    "network error",
    "too many requests",
    "rate limit",
    "429",
    "temporarily unavailable",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
)
_PROCESS_PATTERNS: tuple[str, ...] = (
    "process",
    "exit code",
    "exited with code",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    retry_code: RetryCode
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.retry_code in RETRYABLE_CODES

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "retry_code": self.retry_code.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


_RULES: tuple[tuple[str, tuple[str, ...], RetryCode], ...] = (
    ("not_found", _NOT_FOUND_PATTERNS, RetryCode.NONE),
    ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, RetryCode.NONE),
    ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, RetryCode.NONE),
    ("connection", _CONNECTION_PATTERNS, RetryCode.CONNECTION_ERROR),
    ("timeout", _TIMEOUT_PATTERNS, RetryCode.TIMEOUT_ERROR),
    ("process", _PROCESS_PATTERNS, RetryCode.EXECUTION_ERROR),
)


def classify_failure(message: str) -> FailureClassification:
    """Classify a raw error message; unknown failures default to retryable."""

    haystack = message.lower()
    for rule, patterns, retry_code in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                retry_code=retry_code,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return FailureClassification(
        retry_code=RetryCode.EXECUTION_ERROR,
        matched_rule="fallback_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
