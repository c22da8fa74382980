"""Cross-session question queue and answer routing."""

from .models import (
    PatchSummary,
    Question,
    QuestionContext,
    QuestionOption,
    QuestionPrompt,
    SuiteResult,
)
from .queue import QuestionNotFoundError, QuestionQueue, QuestionQueueError, sort_for_presentation
from .router import QuestionRouter, build_question, priority_for

__all__ = [
    "PatchSummary",
    "Question",
    "QuestionContext",
    "QuestionNotFoundError",
    "QuestionOption",
    "QuestionPrompt",
    "QuestionQueue",
    "QuestionQueueError",
    "QuestionRouter",
    "SuiteResult",
    "build_question",
    "priority_for",
    "sort_for_presentation",
]
