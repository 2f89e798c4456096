"""Usage extraction helpers for agent output streams."""

from __future__ import annotations

import re
from dataclasses import dataclass

USAGE_PARSER_VERSION = "v1"

_JSON_INPUT_TOKENS = re.compile(r'"(?:prompt|input)_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_OUTPUT_TOKENS = re.compile(r'"(?:completion|output)_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_TOTAL_TOKENS = re.compile(r'"total_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_COST_USD = re.compile(r'"(?:total_)?cost_usd"\s*:\s*([\d.]+)', re.IGNORECASE)

_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_TOTAL_TOKENS = re.compile(r"(?:total[_ ]tokens?|tokens used)\s*[:=]\s*([\d,]+)", re.IGNORECASE)


@dataclass(slots=True)
class UsageExtraction:
    """Best-effort token usage extraction result."""

    input_tokens: int | None
    output_tokens: int | None
    total_tokens: int | None
    cost_usd: float | None
    usage_status: str
    usage_source: str
    parser_version: str = USAGE_PARSER_VERSION

    @property
    def found(self) -> bool:
        return self.usage_status != "unknown"

    def to_metadata(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "usage_status": self.usage_status,
            "usage_source": self.usage_source,
            "usage_parser_version": self.parser_version,
        }
        if self.input_tokens is not None:
            payload["input_tokens"] = self.input_tokens
        if self.output_tokens is not None:
            payload["output_tokens"] = self.output_tokens
        if self.total_tokens is not None:
            payload["total_tokens"] = self.total_tokens
        if self.cost_usd is not None:
            payload["cost_usd"] = self.cost_usd
        return payload


def extract_usage(*, stdout: str, stderr: str = "") -> UsageExtraction:
    """Extract token usage from structured or textual agent output."""

    for source_name, text in (("agent_stdout", stdout), ("agent_stderr", stderr)):
        found = _extract_from(text, source_name, structured=True)
        if found is not None:
            return found
    for source_name, text in (("agent_stderr", stderr), ("agent_stdout", stdout)):
        found = _extract_from(text, source_name, structured=False)
        if found is not None:
            return found

    return UsageExtraction(
        input_tokens=None,
        output_tokens=None,
        total_tokens=None,
        cost_usd=None,
        usage_status="unknown",
        usage_source="none",
    )


def _extract_from(text: str, source_name: str, *, structured: bool) -> UsageExtraction | None:
    if structured:
        input_tokens = _extract_int(_JSON_INPUT_TOKENS, text)
        output_tokens = _extract_int(_JSON_OUTPUT_TOKENS, text)
        total = _extract_int(_JSON_TOTAL_TOKENS, text)
        cost = _extract_float(_JSON_COST_USD, text)
    else:
        input_tokens = _extract_int(_INPUT_TOKENS, text)
        output_tokens = _extract_int(_OUTPUT_TOKENS, text)
        total = _extract_int(_TOTAL_TOKENS, text)
        cost = None

    if input_tokens is None and output_tokens is None and total is None:
        return None

    total_was_reported = total is not None
    if total is None:
        total = sum(value for value in (input_tokens, output_tokens) if value is not None)
    return UsageExtraction(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total,
        cost_usd=cost,
        usage_status="reported" if total_was_reported else "estimated",
        usage_source=source_name,
    )


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)


def _extract_float(pattern: re.Pattern[str], text: str) -> float | None:
    match = pattern.search(text)
    if match is None:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None
