"""Lock-protected question queue shared by all sessions."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from ..state.locking import DirectoryLock, read_json, write_json_atomic
from .models import PRIORITY_ORDER, TERMINAL_STATUSES, Question

logger = logging.getLogger(__name__)

QUESTIONS_FILENAME = "review-questions.json"


class QuestionQueueError(RuntimeError):
    """Raised for invalid queue operations."""


class QuestionNotFoundError(QuestionQueueError):
    """Raised when a question id is not in the queue."""


def sort_for_presentation(questions: list[Question]) -> list[Question]:
    """Critical first; arrival order within a tier."""

    return sorted(questions, key=lambda question: PRIORITY_ORDER.get(question.priority, 99))


class QuestionQueue:
    """One ordered document; every mutation is a locked read-modify-write."""

    def __init__(self, review_dir: Path, *, lock_timeout: float = 30.0) -> None:
        self.review_dir = Path(review_dir)
        self.path = self.review_dir / QUESTIONS_FILENAME
        self._lock_timeout = lock_timeout

    def _lock(self) -> DirectoryLock:
        return DirectoryLock(
            self.review_dir / "questions.lock.d",
            self.review_dir / "questions.lock.info",
            timeout=self._lock_timeout,
        )

    def load(self) -> list[Question]:
        try:
            payload = read_json(self.path, default={"questions": []})
        except json.JSONDecodeError as exc:
            raise QuestionQueueError(f"Question queue at {self.path} is corrupt: {exc}") from exc
        raw = payload.get("questions", []) if isinstance(payload, dict) else []
        questions: list[Question] = []
        for entry in raw:
            try:
                questions.append(Question.model_validate(entry))
            except ValidationError as exc:
                logger.warning("Skipping malformed question", extra={"error": str(exc)})
        return questions

    def save(self, questions: list[Question]) -> None:
        with self._lock():
            self._write(questions)

    def _write(self, questions: list[Question]) -> None:
        write_json_atomic(
            self.path, {"questions": [question.model_dump(mode="json") for question in questions]}
        )

    def _mutate(self, mutator: Callable[[list[Question]], Question]) -> Question:
        with self._lock():
            questions = self.load()
            result = mutator(questions)
            self._write(questions)
            return result

    def enqueue(self, question: Question) -> Question:
        def _append(questions: list[Question]) -> Question:
            questions.append(question)
            return question

        stored = self._mutate(_append)
        logger.info(
            "Question enqueued",
            extra={
                "question_id": question.id,
                "session_id": question.session_id,
                "repo": question.repo,
                "priority": question.priority,
            },
        )
        return stored

    def get(self, question_id: str) -> Question:
        for question in self.load():
            if question.id == question_id:
                return question
        raise QuestionNotFoundError(f"Question {question_id} not found")

    def _transition(self, question_id: str, apply: Callable[[Question], None]) -> Question:
        def _update(questions: list[Question]) -> Question:
            for question in questions:
                if question.id == question_id:
                    if question.status in TERMINAL_STATUSES:
                        raise QuestionQueueError(
                            f"Question {question_id} is already {question.status}"
                        )
                    apply(question)
                    return question
            raise QuestionNotFoundError(f"Question {question_id} not found")

        return self._mutate(_update)

    def mark_answered(self, question_id: str, answer: str) -> Question:
        def _apply(question: Question) -> None:
            question.status = "answered"
            question.answer = answer
            question.snooze_until = None

        return self._transition(question_id, _apply)

    def mark_skipped(self, question_id: str) -> Question:
        def _apply(question: Question) -> None:
            question.status = "skipped"
            question.snooze_until = None

        return self._transition(question_id, _apply)

    def mark_snoozed(self, question_id: str, until: datetime) -> Question:
        if until.tzinfo is None:
            until = until.replace(tzinfo=timezone.utc)

        def _apply(question: Question) -> None:
            question.status = "snoozed"
            question.snooze_until = until.isoformat()

        return self._transition(question_id, _apply)

    def mark_routed(self, question_id: str) -> Question:
        def _update(questions: list[Question]) -> Question:
            for question in questions:
                if question.id == question_id:
                    question.routed_at = datetime.now(timezone.utc).isoformat()
                    return question
            raise QuestionNotFoundError(f"Question {question_id} not found")

        return self._mutate(_update)

    def pending(self, now: datetime | None = None) -> list[Question]:
        return sort_for_presentation([q for q in self.load() if q.is_actionable(now)])

    def filter(self, status: str | None = None) -> list[Question]:
        questions = self.load()
        if status is None:
            return questions
        return [question for question in questions if question.status == status]

    def pending_for_session(self, session_id: str) -> Question | None:
        for question in self.load():
            if question.session_id == session_id and question.status in {"pending", "snoozed"}:
                return question
        return None

    def stats(self) -> dict[str, int]:
        counts = {"total": 0, "pending": 0, "answered": 0, "skipped": 0, "snoozed": 0}
        for question in self.load():
            counts["total"] += 1
            counts[question.status] = counts.get(question.status, 0) + 1
        return counts


__all__ = [
    "QUESTIONS_FILENAME",
    "QuestionNotFoundError",
    "QuestionQueue",
    "QuestionQueueError",
    "sort_for_presentation",
]
