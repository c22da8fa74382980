"""Tool registration for the review-fleet MCP surface."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from fastmcp import Context, FastMCP

from ..config import ReviewSettings
from ..questions import Question, QuestionNotFoundError, QuestionQueue, QuestionQueueError
from ..state import CheckpointError, CheckpointStore, ReviewStateStore, RunLock, StateStoreError

logger = logging.getLogger(__name__)

QUESTION_STATUSES = {"pending", "answered", "skipped", "snoozed"}


@dataclass(slots=True)
class ToolHandles:
    list_questions: Any
    answer_question: Any
    skip_question: Any
    snooze_question: Any
    question_stats: Any
    review_status: Any


def _question_summary(question: Question) -> dict[str, Any]:
    return {
        "id": question.id,
        "session_id": question.session_id,
        "repo": question.repo,
        "priority": question.priority,
        "status": question.status,
        "risk_level": question.context.risk_level,
        "wait_reason": question.context.wait_reason,
        "prompts": [prompt.prompt for prompt in question.questions],
        "options": [
            [option.label for option in prompt.options] for prompt in question.questions
        ],
        "snooze_until": question.snooze_until,
        "created_at": question.created_at,
    }


def review_status_payload(
    settings: ReviewSettings,
    *,
    state_store: ReviewStateStore,
    checkpoints: CheckpointStore,
    queue: QuestionQueue,
) -> dict[str, Any]:
    """Snapshot of the run lock, checkpoint, question queue and recent runs."""

    lock = RunLock(settings.state_dir)
    holder = lock.holder()
    try:
        checkpoint = checkpoints.load()
        checkpoint_payload = checkpoint.to_dict() if checkpoint else None
        checkpoint_error = None
    except CheckpointError as exc:
        checkpoint_payload = None
        checkpoint_error = str(exc)

    try:
        state = state_store.load()
        runs = state.get("runs", {})
        recent_runs = [{"run_id": run_id, **summary} for run_id, summary in list(runs.items())[-5:]]
        repos_tracked = len(state.get("repos", {}))
        state_error = None
    except StateStoreError as exc:
        recent_runs = []
        repos_tracked = 0
        state_error = str(exc)

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "mode": settings.mode,
        "config_hash": settings.config_hash(),
        "run_lock": {
            "held": lock.lock_dir.exists(),
            "stale": lock.is_stale(),
            "holder": holder.to_dict() if holder else None,
        },
        "checkpoint": checkpoint_payload,
        "checkpoint_error": checkpoint_error,
        "questions": queue.stats(),
        "repos_tracked": repos_tracked,
        "recent_runs": recent_runs,
        "state_error": state_error,
    }


def register_tools(
    server: FastMCP,
    *,
    queue: QuestionQueue,
    state_store: ReviewStateStore,
    checkpoints: CheckpointStore,
    settings: ReviewSettings,
) -> ToolHandles:
    """Register the question-answering and status tools on the server."""

    def _list_questions(
        status: str | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List queued questions; without a status only actionable ones are returned."""

        if status is not None and status not in QUESTION_STATUSES:
            raise ValueError(
                f"Unknown status '{status}'. Expected one of {sorted(QUESTION_STATUSES)}"
            )
        questions = queue.pending() if status is None else queue.filter(status)
        _emit_log(context, "debug", "Listing questions", extra={"status": status, "count": len(questions)})
        return [_question_summary(question) for question in questions]

    def _lookup(question_id: str) -> Question:
        try:
            return queue.get(question_id)
        except QuestionNotFoundError as exc:
            raise ValueError(str(exc)) from exc

    def _answer_question(
        question_id: str,
        answer: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Record an answer; the running review delivers it to the waiting session."""

        if not answer.strip():
            raise ValueError("Answer must not be empty")
        _lookup(question_id)
        try:
            question = queue.mark_answered(question_id, answer)
        except QuestionQueueError as exc:
            raise ValueError(str(exc)) from exc
        _emit_log(
            context,
            "info",
            "Answered question",
            extra={"question_id": question_id, "session_id": question.session_id},
        )
        return _question_summary(question)

    def _skip_question(question_id: str, context: Context | None = None) -> dict[str, Any]:
        _lookup(question_id)
        try:
            question = queue.mark_skipped(question_id)
        except QuestionQueueError as exc:
            raise ValueError(str(exc)) from exc
        _emit_log(context, "info", "Skipped question", extra={"question_id": question_id})
        return _question_summary(question)

    def _snooze_question(
        question_id: str,
        minutes: int = 30,
        context: Context | None = None,
    ) -> dict[str, Any]:
        if minutes <= 0:
            raise ValueError("minutes must be positive")
        _lookup(question_id)
        until = datetime.now(timezone.utc) + timedelta(minutes=minutes)
        try:
            question = queue.mark_snoozed(question_id, until)
        except QuestionQueueError as exc:
            raise ValueError(str(exc)) from exc
        _emit_log(
            context,
            "info",
            "Snoozed question",
            extra={"question_id": question_id, "until": question.snooze_until},
        )
        return _question_summary(question)

    def _question_stats(context: Context | None = None) -> dict[str, int]:
        return queue.stats()

    def _review_status(context: Context | None = None) -> dict[str, Any]:
        payload = review_status_payload(
            settings, state_store=state_store, checkpoints=checkpoints, queue=queue
        )
        _emit_log(context, "debug", "Review status requested", extra={"mode": settings.mode})
        return payload

    tool_list = server.tool(
        name="list_questions",
        description=(
            "List questions raised by review sessions. Without a status, returns pending "
            "and expired-snooze questions ordered by priority and age."
        ),
    )(_list_questions)

    tool_answer = server.tool(
        name="answer_question",
        description="Answer a pending question; the answer is typed into the waiting session.",
    )(_answer_question)

    tool_skip = server.tool(
        name="skip_question",
        description="Skip a question; the review of that repository is ended as skipped.",
    )(_skip_question)

    tool_snooze = server.tool(
        name="snooze_question",
        description="Hide a question for the given number of minutes.",
    )(_snooze_question)

    tool_stats = server.tool(
        name="question_stats",
        description="Count questions by status.",
    )(_question_stats)

    tool_status = server.tool(
        name="review_status",
        description="Report the run lock holder, checkpoint progress and recent review runs.",
    )(_review_status)

    return ToolHandles(
        list_questions=tool_list,
        answer_question=tool_answer,
        skip_question=tool_skip,
        snooze_question=tool_snooze,
        question_stats=tool_stats,
        review_status=tool_status,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when one is attached."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["QUESTION_STATUSES", "ToolHandles", "register_tools", "review_status_payload"]
