"""Per-repository digest cache reused across runs."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from ..state.locking import atomic_write, read_json, write_json_atomic
from .git import GitError, commit_subjects, head_sha
from .worktree import repo_slug

logger = logging.getLogger(__name__)

DIGEST_VERSION = 1
DIGEST_RELATIVE_PATH = Path(".review") / "repo-digest.md"
DELTA_HEADING = "## Changes Since Last Review"


class DigestError(RuntimeError):
    """Raised when a digest cannot be written."""


@dataclass(slots=True)
class DigestCacheEntry:
    repo: str
    summary: str
    last_commit: str
    last_review_at: str
    digest_version: int = DIGEST_VERSION


def strip_delta(summary: str) -> str:
    """Drop a previously appended delta section so it never accumulates."""

    head, _, _ = summary.partition(f"\n{DELTA_HEADING}")
    return head.rstrip() + "\n"


def compose_digest(summary: str, subjects: list[str]) -> str:
    lines = [summary.rstrip(), "", DELTA_HEADING, ""]
    lines.extend(f"- {subject}" for subject in subjects)
    if not subjects:
        lines.append("- (no new commits on this branch)")
    return "\n".join(lines) + "\n"


class DigestCache:
    """Store digests as ``<owner_repo>.md`` plus a ``.meta.json`` sidecar."""

    def __init__(self, cache_dir: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self.cache_dir = Path(cache_dir)
        self.archive_dir = self.cache_dir / "archive"
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def summary_path(self, repo: str) -> Path:
        return self.cache_dir / f"{repo_slug(repo)}.md"

    def meta_path(self, repo: str) -> Path:
        return self.cache_dir / f"{repo_slug(repo)}.meta.json"

    def get(self, repo: str) -> DigestCacheEntry | None:
        summary_path = self.summary_path(repo)
        if not summary_path.is_file():
            return None
        try:
            meta = read_json(self.meta_path(repo), default={}) or {}
        except json.JSONDecodeError:
            logger.warning("Digest metadata is corrupt", extra={"repo": repo})
            meta = {}
        return DigestCacheEntry(
            repo=repo,
            summary=summary_path.read_text(encoding="utf-8"),
            last_commit=str(meta.get("last_commit", "")),
            last_review_at=str(meta.get("last_review_at", "")),
            digest_version=int(meta.get("digest_version", DIGEST_VERSION)),
        )

    def apply_cached_digest(self, repo: str, worktree_path: Path) -> Path | None:
        """Seed a worktree with the cached digest plus the commits made since."""

        entry = self.get(repo)
        if entry is None:
            return None

        worktree_path = Path(worktree_path)
        content = entry.summary
        try:
            current = head_sha(worktree_path)
            if entry.last_commit and current != entry.last_commit:
                subjects = commit_subjects(worktree_path, entry.last_commit, current)
                content = compose_digest(strip_delta(entry.summary), subjects)
        except GitError as exc:
            self.invalidate_cache(repo, f"cannot diff against cached commit: {exc}")
            return None

        target = worktree_path / DIGEST_RELATIVE_PATH
        with atomic_write(target) as handle:
            handle.write(content)
        logger.info(
            "Applied cached digest",
            extra={"repo": repo, "cached_commit": entry.last_commit, "path": str(target)},
        )
        return target

    def update_cache(self, repo: str, worktree_path: Path) -> DigestCacheEntry | None:
        """Copy the worktree's digest and HEAD back into the cache."""

        worktree_path = Path(worktree_path)
        source = worktree_path / DIGEST_RELATIVE_PATH
        if not source.is_file():
            logger.debug("No digest written by session", extra={"repo": repo})
            return None
        try:
            commit = head_sha(worktree_path)
        except GitError as exc:
            raise DigestError(f"Cannot read HEAD for {repo}: {exc}") from exc

        entry = DigestCacheEntry(
            repo=repo,
            summary=strip_delta(source.read_text(encoding="utf-8")),
            last_commit=commit,
            last_review_at=self._clock().isoformat(),
        )
        with atomic_write(self.summary_path(repo)) as handle:
            handle.write(entry.summary)
        write_json_atomic(
            self.meta_path(repo),
            {
                "last_commit": entry.last_commit,
                "last_review_at": entry.last_review_at,
                "digest_version": entry.digest_version,
                "repo": repo,
            },
        )
        logger.info("Updated digest cache", extra={"repo": repo, "commit": commit})
        return entry

    def invalidate_cache(self, repo: str, reason: str, *, archive: bool = True) -> bool:
        summary_path = self.summary_path(repo)
        meta_path = self.meta_path(repo)
        existed = summary_path.exists() or meta_path.exists()
        if archive and summary_path.exists():
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            stamp = self._clock().strftime("%Y%m%dT%H%M%S")
            os.replace(summary_path, self.archive_dir / f"{repo_slug(repo)}-{stamp}.md")
        summary_path.unlink(missing_ok=True)
        meta_path.unlink(missing_ok=True)
        if existed:
            logger.info("Invalidated digest cache", extra={"repo": repo, "reason": reason})
        return existed


__all__ = [
    "DELTA_HEADING",
    "DIGEST_RELATIVE_PATH",
    "DIGEST_VERSION",
    "DigestCache",
    "DigestCacheEntry",
    "DigestError",
    "compose_digest",
    "strip_delta",
]
