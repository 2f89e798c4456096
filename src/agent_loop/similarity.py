"""Fuzzy string similarity helpers used by loop detection."""

from __future__ import annotations

from difflib import SequenceMatcher


def similarity_ratio(a: str, b: str) -> float:
    """Case-insensitive similarity in [0, 1]; empty input never matches."""

    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return SequenceMatcher(None, a.lower(), b.lower(), autojunk=False).ratio()


def is_similar(a: str, b: str, threshold: float = 0.9) -> bool:
    return similarity_ratio(a, b) >= threshold


def token_sort_ratio(a: str, b: str) -> float:
    """Similarity that ignores word order."""

    if not a or not b:
        return 0.0
    return similarity_ratio(_sorted_tokens(a), _sorted_tokens(b))


def find_best_match(target: str, candidates: list[str]) -> tuple[str, float] | None:
    """Return the most similar candidate and its score, first one on ties."""

    best: tuple[str, float] | None = None
    for candidate in candidates:
        score = similarity_ratio(target, candidate)
        if best is None or score > best[1]:
            best = (candidate, score)
    return best


def find_similar_index(target: str, candidates: list[str], threshold: float = 0.9) -> int:
    """Index of the first candidate at or above threshold, -1 if none."""

    for index, candidate in enumerate(candidates):
        if similarity_ratio(target, candidate) >= threshold:
            return index
    return -1


def _sorted_tokens(text: str) -> str:
    return " ".join(sorted(text.lower().split()))
