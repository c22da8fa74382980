"""Question models shared by every session."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

Priority = Literal["critical", "high", "normal", "low"]
Status = Literal["pending", "answered", "skipped", "snoozed"]

PRIORITY_ORDER: dict[str, int] = {"critical": 0, "high": 1, "normal": 2, "low": 3}
TERMINAL_STATUSES = {"answered", "skipped"}


def new_question_id() -> str:
    return f"q-{uuid.uuid4().hex[:12]}"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class QuestionOption(BaseModel):
    label: str
    description: str = ""


class QuestionPrompt(BaseModel):
    prompt: str
    options: list[QuestionOption] = Field(default_factory=list)
    recommended: str | None = None


class PatchSummary(BaseModel):
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0


class SuiteResult(BaseModel):
    ok: bool | None = None
    duration_seconds: float | None = None


class QuestionContext(BaseModel):
    patch_summary: PatchSummary = Field(default_factory=PatchSummary)
    tests: SuiteResult = Field(default_factory=SuiteResult)
    risk_level: Literal["low", "medium", "high"] = "low"
    wait_reason: str | None = None
    excerpt: str = ""


class Question(BaseModel):
    """A request for human input raised on behalf of one session."""

    id: str = Field(default_factory=new_question_id)
    session_id: str
    repo: str
    priority: Priority = "normal"
    status: Status = "pending"
    context: QuestionContext = Field(default_factory=QuestionContext)
    questions: list[QuestionPrompt] = Field(default_factory=list)
    answer: str | None = None
    snooze_until: str | None = None
    created_at: str = Field(default_factory=_utcnow_iso)
    routed_at: str | None = None

    def is_actionable(self, now: datetime | None = None) -> bool:
        """Pending, or snoozed with the snooze already over."""

        if self.status == "pending":
            return True
        if self.status == "snoozed" and self.snooze_until:
            until = datetime.fromisoformat(self.snooze_until)
            if until.tzinfo is None:
                until = until.replace(tzinfo=timezone.utc)
            return until <= (now or datetime.now(timezone.utc))
        return False


__all__ = [
    "PRIORITY_ORDER",
    "PatchSummary",
    "Question",
    "QuestionContext",
    "QuestionOption",
    "QuestionPrompt",
    "TERMINAL_STATUSES",
    "SuiteResult",
    "new_question_id",
]
