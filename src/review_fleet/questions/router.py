"""Turn waiting sessions into questions and answers back into input."""

from __future__ import annotations

import logging
from typing import Callable

from ..session.driver import SessionDriver, SessionNotFoundError
from ..session.monitor import WaitInfo, WaitReason
from .models import PatchSummary, Question, QuestionContext, QuestionOption, QuestionPrompt
from .queue import QuestionQueue

logger = logging.getLogger(__name__)

RISK_PRIORITY = {"high": "critical", "medium": "high", "low": "normal"}

ROUTABLE_REASONS = {
    WaitReason.ASK_USER_QUESTION,
    WaitReason.AGENT_QUESTION_TEXT,
    WaitReason.EXTERNAL_PROMPT,
}


def priority_for(wait_info: WaitInfo) -> str:
    if wait_info.reason is WaitReason.EXTERNAL_PROMPT:
        return RISK_PRIORITY.get(wait_info.risk_level, "normal")
    if wait_info.reason is WaitReason.UNKNOWN:
        return "low"
    return "normal"


def build_question(
    session_id: str,
    repo: str,
    wait_info: WaitInfo,
    *,
    patch_summary: PatchSummary | None = None,
) -> Question:
    """Normalize a wait-info record into a queue entry."""

    if wait_info.reason is WaitReason.ASK_USER_QUESTION and wait_info.questions:
        prompts = []
        for entry in wait_info.questions:
            options = [
                QuestionOption(
                    label=str(option.get("label", "")),
                    description=str(option.get("description", "")),
                )
                if isinstance(option, dict)
                else QuestionOption(label=str(option))
                for option in entry.get("options") or []
            ]
            prompts.append(
                QuestionPrompt(
                    prompt=str(entry.get("question") or entry.get("header") or ""),
                    options=options,
                    recommended=options[0].label if options else None,
                )
            )
    else:
        prompts = [
            QuestionPrompt(
                prompt=wait_info.context,
                options=[QuestionOption(label=option) for option in wait_info.options],
            )
        ]

    return Question(
        session_id=session_id,
        repo=repo,
        priority=priority_for(wait_info),
        context=QuestionContext(
            patch_summary=patch_summary or PatchSummary(),
            risk_level=wait_info.risk_level,
            wait_reason=wait_info.reason.value,
            excerpt=wait_info.context[-2000:],
        ),
        questions=prompts,
    )


class QuestionRouter:
    """Bridge between the shared queue and the sessions that asked."""

    def __init__(
        self,
        queue: QuestionQueue,
        driver: SessionDriver,
        *,
        on_question: Callable[[Question], None] | None = None,
    ) -> None:
        self.queue = queue
        self.driver = driver
        self._on_question = on_question

    def raise_question(
        self,
        session_id: str,
        repo: str,
        wait_info: WaitInfo,
        *,
        patch_summary: PatchSummary | None = None,
    ) -> Question | None:
        """Enqueue a question unless this session already has one open."""

        if wait_info.reason not in ROUTABLE_REASONS:
            return None
        if self.queue.pending_for_session(session_id) is not None:
            return None
        question = self.queue.enqueue(
            build_question(session_id, repo, wait_info, patch_summary=patch_summary)
        )
        if self._on_question is not None:
            self._on_question(question)
        return question

    async def route_answer(self, question: Question) -> bool:
        """Send a stored answer to its session; False when the session is gone."""

        if question.status != "answered" or question.answer is None:
            return False
        try:
            await self.driver.send_input(question.session_id, question.answer)
        except SessionNotFoundError:
            logger.warning(
                "Answer target session is gone",
                extra={"question_id": question.id, "session_id": question.session_id},
            )
            return False
        self.queue.mark_routed(question.id)
        logger.info(
            "Routed answer",
            extra={"question_id": question.id, "session_id": question.session_id, "repo": question.repo},
        )
        return True

    def unrouted_answers(self, session_ids: set[str]) -> list[Question]:
        return [
            question
            for question in self.queue.filter("answered")
            if question.routed_at is None and question.session_id in session_ids
        ]


__all__ = ["QuestionRouter", "RISK_PRIORITY", "build_question", "priority_for"]
