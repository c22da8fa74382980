"""Ownership of live sessions and their per-session detection state."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Sequence

from ..patterns import DetectionPatterns, default_patterns
from .driver import SessionDriver, SessionNotFoundError
from .monitor import (
    Observation,
    SessionHistory,
    SessionState,
    WaitInfo,
    apply_hysteresis,
    detect_raw_state,
    detect_wait_reason,
    output_velocity,
)

logger = logging.getLogger(__name__)

COMPACT_COMMAND = "/compact"


class StallAction(str, Enum):
    NUDGE = "nudge"
    COMPACT = "compact"
    RESTART = "restart"


@dataclass(slots=True)
class SupervisedSession:
    session_id: str
    repo: str
    worktree_path: Path
    prompt: str
    started_at: float
    items: list[Any] = field(default_factory=list)
    history: SessionHistory = field(default_factory=SessionHistory)
    last_size: int = 0
    last_sample_at: float | None = None
    last_output_at: float = 0.0
    wait_info: WaitInfo | None = None
    question_id: str | None = None
    answered_tool_use_id: str | None = None
    # Output size when the last answer was routed; no new question until it grows.
    answered_at_size: int | None = None
    last_state: SessionState | None = None
    restarts: int = 0
    last_output: str = ""

    @property
    def parked(self) -> bool:
        return self.question_id is not None


@dataclass(slots=True)
class PollResult:
    session_id: str
    raw: SessionState
    effective: SessionState
    wait_info: WaitInfo | None = None


class SessionSupervisor:
    """Map of active sessions keyed by session id.

    Detection history lives on each record, so ending a session drops it.
    """

    def __init__(
        self,
        driver: SessionDriver,
        *,
        patterns: DetectionPatterns | None = None,
        stall_threshold: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.driver = driver
        self.patterns = patterns or default_patterns()
        self.stall_threshold = stall_threshold
        self._clock = clock
        self._sessions: dict[str, SupervisedSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def sessions(self) -> dict[str, SupervisedSession]:
        return dict(self._sessions)

    def get(self, session_id: str) -> SupervisedSession:
        try:
            return self._sessions[session_id]
        except KeyError as exc:
            raise SessionNotFoundError(f"Session {session_id} is not supervised") from exc

    def by_repo(self, repo: str) -> SupervisedSession | None:
        for record in self._sessions.values():
            if record.repo == repo:
                return record
        return None

    async def start(
        self,
        repo: str,
        worktree_path: Path,
        prompt: str,
        items: Sequence[Any] = (),
    ) -> SupervisedSession:
        session_id = await self.driver.start(worktree_path, prompt)
        now = self._clock()
        record = SupervisedSession(
            session_id=session_id,
            repo=repo,
            worktree_path=Path(worktree_path),
            prompt=prompt,
            started_at=now,
            items=list(items),
            last_output_at=now,
        )
        self._sessions[session_id] = record
        logger.info("Session started", extra={"session_id": session_id, "repo": repo})
        return record

    async def observe(self, session_id: str) -> Observation:
        record = self.get(session_id)
        raw = await self.driver.get_raw_state(session_id)
        now = self._clock()
        velocity = output_velocity(record.last_size, record.last_sample_at, raw.output_size, now)
        if raw.output_size > record.last_size:
            record.last_output_at = now
        record.last_size = raw.output_size
        record.last_sample_at = now
        record.last_output = raw.output
        return Observation(
            output=raw.output,
            alive=raw.alive,
            driver_state=raw.driver_state,
            idle_seconds=now - record.last_output_at,
            velocity=velocity,
        )

    async def poll(self, session_id: str) -> PollResult:
        record = self.get(session_id)
        observation = await self.observe(session_id)
        raw = detect_raw_state(observation, self.patterns, stall_threshold=self.stall_threshold)
        previous = record.history.effective
        effective = apply_hysteresis(record.history, raw)
        if record.answered_at_size is not None and record.last_size > record.answered_at_size:
            record.answered_at_size = None
        if effective is SessionState.WAITING:
            if record.wait_info is None and record.answered_at_size is None:
                record.wait_info = detect_wait_reason(observation.output, self.patterns)
        elif effective is not SessionState.STALLED:
            record.wait_info = None
        if effective is not previous:
            logger.info(
                "Session state changed",
                extra={
                    "session_id": session_id,
                    "repo": record.repo,
                    "from": previous.value,
                    "to": effective.value,
                },
            )
        return PollResult(
            session_id=session_id,
            raw=raw,
            effective=effective,
            wait_info=record.wait_info,
        )

    async def poll_all(self) -> list[PollResult]:
        """Poll every session concurrently so a slow driver call delays nobody else."""

        session_ids = list(self._sessions)
        results = await asyncio.gather(
            *(self.poll(session_id) for session_id in session_ids), return_exceptions=True
        )
        polled: list[PollResult] = []
        for session_id, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "Polling session failed",
                    extra={"session_id": session_id, "error": str(result)},
                )
                polled.append(PollResult(session_id, SessionState.UNKNOWN, SessionState.UNKNOWN))
                continue
            polled.append(result)
        return polled

    async def handle_stalled_session(self, session_id: str) -> tuple[StallAction, str]:
        """Escalate recovery; returns the action and the (possibly new) session id."""

        record = self.get(session_id)
        record.history.stall_attempts += 1
        attempt = record.history.stall_attempts
        # The next escalation needs a fresh run of stalled samples.
        record.history.samples.clear()
        record.history.effective = SessionState.UNKNOWN

        if attempt <= 2:
            action = StallAction.NUDGE
            await self._send_quietly(session_id, "")
        elif attempt <= 4:
            action = StallAction.COMPACT
            await self._send_quietly(session_id, COMPACT_COMMAND)
        else:
            action = StallAction.RESTART
            session_id = await self.restart(session_id)
            self.get(session_id).history.stall_attempts = 0

        logger.warning(
            "Stalled session recovery",
            extra={
                "session_id": session_id,
                "repo": record.repo,
                "attempt": attempt,
                "action": action.value,
            },
        )
        return action, session_id

    async def _send_quietly(self, session_id: str, text: str) -> None:
        try:
            await self.driver.send_input(session_id, text)
        except SessionNotFoundError:
            logger.warning("Stall recovery target is gone", extra={"session_id": session_id})

    async def restart(self, session_id: str) -> str:
        """Stop a session and start a fresh one on the same worktree and prompt."""

        record = self._sessions.pop(session_id)
        await self.driver.stop(session_id)
        new_id = await self.driver.start(record.worktree_path, record.prompt)
        now = self._clock()
        restarted = SupervisedSession(
            session_id=new_id,
            repo=record.repo,
            worktree_path=record.worktree_path,
            prompt=record.prompt,
            started_at=record.started_at,
            items=record.items,
            last_output_at=now,
            restarts=record.restarts + 1,
        )
        self._sessions[new_id] = restarted
        logger.info(
            "Session restarted",
            extra={"old_session_id": session_id, "session_id": new_id, "repo": record.repo},
        )
        return new_id

    def answer_routed(self, session_id: str) -> None:
        """Unpark a session whose question was answered.

        The prompt that was answered stays in the output until the agent reacts,
        so detection restarts from scratch and waits for new output.
        """

        record = self.get(session_id)
        if record.wait_info is not None:
            record.answered_tool_use_id = record.wait_info.tool_use_id
        record.answered_at_size = record.last_size
        record.question_id = None
        record.wait_info = None
        record.history.samples.clear()
        record.history.effective = SessionState.UNKNOWN

    async def send_input(self, session_id: str, text: str) -> None:
        self.get(session_id)
        await self.driver.send_input(session_id, text)

    async def interrupt(self, session_id: str) -> None:
        await self.driver.interrupt(session_id)

    async def end(self, session_id: str, *, stop: bool = True) -> SupervisedSession | None:
        """Forget a session, optionally stopping it first."""

        record = self._sessions.pop(session_id, None)
        if stop:
            await self.driver.stop(session_id)
        return record

    async def end_all(self, *, interrupt_only: bool = False) -> None:
        for session_id in list(self._sessions):
            if interrupt_only:
                try:
                    await self.driver.interrupt(session_id)
                except SessionNotFoundError:
                    pass
                self._sessions.pop(session_id, None)
            else:
                await self.end(session_id)


__all__ = ["COMPACT_COMMAND", "PollResult", "SessionSupervisor", "StallAction", "SupervisedSession"]
