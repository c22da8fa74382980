"""Run-level cost budget."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass(slots=True)
class CostBudget:
    """Optional ceilings on repositories started, runtime and questions asked.

    A ceiling of ``None`` means unlimited for that dimension.
    """

    max_repos: int | None = None
    max_runtime_minutes: float | None = None
    max_questions: int | None = None
    clock: Callable[[], float] = time.monotonic
    repos_started: int = 0
    questions_asked: int = 0
    started_at: float = field(default=0.0)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    def reset(self) -> None:
        self.repos_started = 0
        self.questions_asked = 0
        self.started_at = self.clock()

    def increment_repos_processed(self) -> None:
        self.repos_started += 1

    def increment_questions_asked(self) -> None:
        self.questions_asked += 1

    def elapsed_minutes(self) -> float:
        return (self.clock() - self.started_at) / 60.0

    def check_budget(self) -> bool:
        if self.max_repos is not None and self.repos_started >= self.max_repos:
            return False
        if self.max_runtime_minutes is not None and self.elapsed_minutes() >= self.max_runtime_minutes:
            return False
        if self.max_questions is not None and self.questions_asked >= self.max_questions:
            return False
        return True

    def exhausted_reason(self) -> str | None:
        if self.max_repos is not None and self.repos_started >= self.max_repos:
            return "max_repos"
        if self.max_runtime_minutes is not None and self.elapsed_minutes() >= self.max_runtime_minutes:
            return "max_runtime"
        if self.max_questions is not None and self.questions_asked >= self.max_questions:
            return "max_questions"
        return None

    def snapshot(self) -> dict[str, object]:
        return {
            "repos_started": self.repos_started,
            "questions_asked": self.questions_asked,
            "elapsed_minutes": round(self.elapsed_minutes(), 2),
            "max_repos": self.max_repos,
            "max_runtime_minutes": self.max_runtime_minutes,
            "max_questions": self.max_questions,
        }


__all__ = ["CostBudget"]
