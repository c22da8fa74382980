"""Crash-safe review state persistence."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from .locking import DirectoryLock, LockInfo, read_json, write_json_atomic

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_VERSION = 2
STATE_FILENAME = "review-state.json"


class StateStoreError(RuntimeError):
    """Raised when the review state document is unreadable."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def empty_state() -> dict[str, Any]:
    return {"version": STATE_VERSION, "repos": {}, "items": {}, "runs": {}}


class ReviewStateStore:
    """Long-lived record of per-item, per-repository and per-run review outcomes.

    Every mutation is a read-modify-write under the state lock and lands on disk
    through an atomic rename.
    """

    def __init__(
        self,
        review_dir: Path,
        *,
        lock_timeout: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.review_dir = Path(review_dir)
        self.state_file = self.review_dir / STATE_FILENAME
        self._lock_timeout = lock_timeout
        self._clock = clock or _now

    def state_lock(self) -> DirectoryLock:
        return DirectoryLock(
            self.review_dir / "state.lock.d",
            self.review_dir / "state.lock.info",
            timeout=self._lock_timeout,
        )

    def with_state_lock(self, operation: Callable[[], T], *, run_id: str | None = None) -> T:
        """Run ``operation`` while holding the state lock."""

        lock = self.state_lock()
        lock.acquire(LockInfo(pid=os.getpid(), run_id=run_id))
        try:
            return operation()
        finally:
            lock.release()

    def load(self) -> dict[str, Any]:
        try:
            state = read_json(self.state_file)
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Review state at {self.state_file} is corrupt: {exc}") from exc
        if state is None:
            return empty_state()
        if not isinstance(state, dict):
            raise StateStoreError(f"Review state at {self.state_file} is not an object")
        for section in ("repos", "items", "runs"):
            state.setdefault(section, {})
        state.setdefault("version", STATE_VERSION)
        return state

    def init_state(self) -> dict[str, Any]:
        """Create the state file when missing; existing content is left alone."""

        def _init() -> dict[str, Any]:
            if self.state_file.exists():
                return self.load()
            state = empty_state()
            write_json_atomic(self.state_file, state)
            return state

        return self.with_state_lock(_init)

    def update(self, mutator: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        def _apply() -> dict[str, Any]:
            state = self.load()
            mutator(state)
            write_json_atomic(self.state_file, state)
            return state

        return self.with_state_lock(_apply)

    def record_item_outcome(
        self,
        repo: str,
        kind: str,
        number: int,
        outcome: str,
        note: str = "",
        *,
        run_id: str | None = None,
    ) -> dict[str, Any]:
        key = f"{repo}#{kind}-{number}"
        record = {
            "type": kind,
            "outcome": outcome,
            "note": note,
            "recorded_at": self._clock().isoformat(),
        }
        if run_id:
            record["run_id"] = run_id

        def _mutate(state: dict[str, Any]) -> None:
            state["items"][key] = record

        self.update(_mutate)
        logger.debug("Recorded item outcome", extra={"item": key, "outcome": outcome})
        return record

    def record_repo_outcome(
        self,
        repo: str,
        outcome: str,
        duration_seconds: float,
        *,
        items_processed: int = 0,
        questions: int = 0,
        run_id: str | None = None,
    ) -> dict[str, Any]:
        record = {
            "outcome": outcome,
            "duration_seconds": round(float(duration_seconds), 3),
            "items_processed": items_processed,
            "questions": questions,
            "last_review": self._clock().isoformat(),
        }
        if run_id:
            record["run_id"] = run_id

        def _mutate(state: dict[str, Any]) -> None:
            state["repos"][repo] = record

        self.update(_mutate)
        logger.info(
            "Recorded repository outcome",
            extra={"repo": repo, "outcome": outcome, "duration_seconds": record["duration_seconds"]},
        )
        return record

    def record_review_run(self, run_id: str, summary: dict[str, Any]) -> None:
        def _mutate(state: dict[str, Any]) -> None:
            state["runs"][run_id] = {**summary, "recorded_at": self._clock().isoformat()}

        self.update(_mutate)

    def is_recently_reviewed(self, repo: str, days: int, *, now: datetime | None = None) -> bool:
        record = self.load()["repos"].get(repo)
        if not record or not record.get("last_review"):
            return False
        try:
            last = datetime.fromisoformat(record["last_review"])
        except (TypeError, ValueError):
            return False
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return (now or self._clock()) - last < timedelta(days=days)


__all__ = ["STATE_VERSION", "ReviewStateStore", "StateStoreError", "empty_state"]
