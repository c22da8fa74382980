"""Run outcome to process exit status."""

from __future__ import annotations

from typing import Iterable

ERROR_CATEGORIES = {
    "session_failed": "partial",
    "merge_conflict": "conflict",
    "missing_dependency": "system",
    "state_error": "system",
    "invalid_flag": "invalid",
    "interrupted": "interrupted",
}

EXIT_CODES = {
    "ok": 0,
    "partial": 1,
    "conflict": 2,
    "system": 3,
    "invalid": 4,
    "interrupted": 5,
    "unknown": 1,
}


def classify_error(kind: str) -> str:
    return ERROR_CATEGORIES.get(kind, "unknown")


def exit_code_for(category: str) -> int:
    return EXIT_CODES.get(category, EXIT_CODES["unknown"])


def aggregate_exit_code(codes: Iterable[int]) -> int:
    """Worst (highest) code wins; no codes means success."""

    return max(codes, default=0)


__all__ = ["EXIT_CODES", "aggregate_exit_code", "classify_error", "exit_code_for"]
