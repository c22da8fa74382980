"""Per-run checkpoints for resuming interrupted reviews."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .locking import read_json, write_json_atomic
from .store import ReviewStateStore

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1
CHECKPOINT_FILENAME = "review-checkpoint.json"


class CheckpointError(RuntimeError):
    """Raised when a checkpoint document is malformed."""


@dataclass(slots=True)
class Checkpoint:
    run_id: str
    mode: str
    config_hash: str
    completed_repos: list[str] = field(default_factory=list)
    pending_repos: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    version: int = CHECKPOINT_VERSION

    @property
    def repos_total(self) -> int:
        return len(self.completed_repos) + len(self.pending_repos)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "run_id": self.run_id,
            "mode": self.mode,
            "config_hash": self.config_hash,
            "repos_total": self.repos_total,
            "repos_completed": len(self.completed_repos),
            "repos_pending": len(self.pending_repos),
            "completed_repos": list(self.completed_repos),
            "pending_repos": list(self.pending_repos),
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "Checkpoint":
        if not isinstance(payload, dict):
            raise CheckpointError("Checkpoint must be a JSON object")
        try:
            completed = payload.get("completed_repos") or []
            pending = payload.get("pending_repos") or []
            if not isinstance(completed, list) or not isinstance(pending, list):
                raise CheckpointError("Checkpoint repository lists must be arrays")
            return cls(
                run_id=str(payload["run_id"]),
                mode=str(payload.get("mode", "plan")),
                config_hash=str(payload.get("config_hash", "")),
                completed_repos=[str(repo) for repo in completed],
                pending_repos=[str(repo) for repo in pending],
                timestamp=str(payload.get("timestamp", "")),
                version=int(payload.get("version", CHECKPOINT_VERSION)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CheckpointError(f"Malformed checkpoint: {exc}") from exc


class CheckpointStore:
    """Lock-protected persistence of the active run's checkpoint."""

    def __init__(self, store: ReviewStateStore) -> None:
        self._store = store
        self.path = store.review_dir / CHECKPOINT_FILENAME

    def save(self, checkpoint: Checkpoint) -> None:
        checkpoint.timestamp = datetime.now(timezone.utc).isoformat()
        payload = checkpoint.to_dict()
        self._store.with_state_lock(
            lambda: write_json_atomic(self.path, payload), run_id=checkpoint.run_id
        )

    def load(self) -> Checkpoint | None:
        """Return the stored checkpoint, ``None`` when absent.

        Raises :class:`CheckpointError` when the file exists but is unusable.
        """

        try:
            payload = read_json(self.path)
        except json.JSONDecodeError as exc:
            raise CheckpointError(f"Checkpoint at {self.path} is not valid JSON: {exc}") from exc
        if payload is None:
            return None
        return Checkpoint.from_dict(payload)

    def clear(self) -> None:
        self._store.with_state_lock(lambda: self.path.unlink(missing_ok=True))

    def archive(self, label: str) -> Path | None:
        """Move the checkpoint aside so it is kept for diagnosis but never resumed."""

        safe_label = "".join(ch if ch.isalnum() or ch in "-._" else "_" for ch in label) or "unknown"
        target = self.path.with_name(f"review-checkpoint.{safe_label}.stale.json")

        def _move() -> Path | None:
            if not self.path.exists():
                return None
            os.replace(self.path, target)
            return target

        return self._store.with_state_lock(_move)

    def resume_or_reset(self, config_hash: str) -> Checkpoint | None:
        """Return a resumable checkpoint matching ``config_hash``.

        A corrupt checkpoint, or one written under a different configuration,
        is archived and the caller starts fresh.
        """

        try:
            checkpoint = self.load()
        except CheckpointError as exc:
            archived = self.archive(f"corrupt-{datetime.now(timezone.utc):%Y%m%dT%H%M%S}")
            logger.warning(
                "Discarding unreadable checkpoint",
                extra={"error": str(exc), "archived_to": str(archived) if archived else None},
            )
            return None

        if checkpoint is None:
            return None

        if checkpoint.config_hash != config_hash:
            archived = self.archive(checkpoint.run_id)
            logger.warning(
                "Checkpoint configuration changed; starting a fresh run",
                extra={
                    "run_id": checkpoint.run_id,
                    "checkpoint_hash": checkpoint.config_hash,
                    "current_hash": config_hash,
                    "archived_to": str(archived) if archived else None,
                },
            )
            return None

        logger.info(
            "Resuming interrupted run",
            extra={
                "run_id": checkpoint.run_id,
                "completed": len(checkpoint.completed_repos),
                "pending": len(checkpoint.pending_repos),
            },
        )
        return checkpoint


__all__ = ["CHECKPOINT_VERSION", "Checkpoint", "CheckpointError", "CheckpointStore"]
