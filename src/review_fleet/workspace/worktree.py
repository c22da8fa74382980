"""Per-run isolated worktrees, one per repository."""

from __future__ import annotations

import json
import logging
import re
import shutil
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ..state.locking import DirectoryLock, read_json, write_json_atomic
from .git import GitError, has_uncommitted_changes, head_sha, is_git_repo, resolve_commit, run_git

logger = logging.getLogger(__name__)

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
BRANCH_PREFIX = "review-fleet/review"


class WorktreeError(RuntimeError):
    """Base class for worktree failures."""


class NotARepositoryError(WorktreeError):
    """Raised when a path is not a git working tree."""


class DirtyRepositoryError(WorktreeError):
    """Raised when a source repository has uncommitted changes."""


class UnsafePathError(WorktreeError):
    """Raised when a path escapes the run's own directory."""


def validate_run_id(run_id: str) -> str:
    if not run_id or not RUN_ID_PATTERN.match(run_id) or run_id in {".", ".."}:
        raise ValueError(f"Invalid run id: {run_id!r}")
    return run_id


def repo_slug(repo: str, sep: str = "_") -> str:
    owner, _, name = repo.partition("/")
    if not owner or not name or ".." in repo or "\\" in repo or "/" in name:
        raise ValueError(f"Repository '{repo}' must look like owner/name")
    return f"{owner}{sep}{name}"


def is_inside(path: Path, base: Path) -> bool:
    """True when ``path`` resolves strictly below ``base``."""

    try:
        resolved = Path(path).resolve()
        root = Path(base).resolve()
    except (OSError, RuntimeError):
        return False
    return resolved != root and resolved.is_relative_to(root)


@dataclass(slots=True)
class WorktreeInfo:
    repo: str
    worktree_path: str
    branch: str
    base_ref: str
    created_at: str
    source_path: str | None = None

    @property
    def path(self) -> Path:
        return Path(self.worktree_path)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("repo")
        return payload

    @classmethod
    def from_dict(cls, repo: str, payload: dict[str, Any]) -> "WorktreeInfo":
        return cls(
            repo=repo,
            worktree_path=str(payload["worktree_path"]),
            branch=str(payload.get("branch", "")),
            base_ref=str(payload.get("base_ref", "")),
            created_at=str(payload.get("created_at", "")),
            source_path=payload.get("source_path"),
        )


class WorktreeManager:
    """Create, look up and tear down the worktrees of a single run.

    Layout: ``<review_dir>/worktrees/<run_id>/<owner_repo>`` with the run's
    mapping in ``mapping.json`` beside them.
    """

    def __init__(self, review_dir: Path, run_id: str, *, lock_timeout: float = 30.0) -> None:
        self.run_id = validate_run_id(run_id)
        self.base_dir = Path(review_dir) / "worktrees"
        self.run_dir = self.base_dir / run_id
        self.mapping_file = self.run_dir / "mapping.json"
        self._lock_timeout = lock_timeout

    def branch_name(self, repo: str) -> str:
        return f"{BRANCH_PREFIX}/{self.run_id}/{repo_slug(repo, '-')}"

    def worktree_path(self, repo: str) -> Path:
        return self.run_dir / repo_slug(repo)

    def ensure_clean_or_fail(self, repo_path: Path) -> None:
        repo_path = Path(repo_path)
        if not is_git_repo(repo_path):
            raise NotARepositoryError(f"{repo_path} is not a git repository")
        if has_uncommitted_changes(repo_path):
            raise DirtyRepositoryError(
                f"{repo_path} has uncommitted changes; commit or stash before reviewing"
            )

    def prepare_worktree(self, repo: str, repo_path: Path, pinned_ref: str | None = None) -> Path | None:
        """Create the worktree for ``repo``; returns ``None`` for non-repositories."""

        repo_path = Path(repo_path)
        if not is_git_repo(repo_path):
            logger.warning(
                "Skipping repository that is not a git working tree",
                extra={"repo": repo, "path": str(repo_path)},
            )
            return None

        self.ensure_clean_or_fail(repo_path)

        try:
            start_point = resolve_commit(repo_path, pinned_ref) if pinned_ref else head_sha(repo_path)
        except GitError as exc:
            raise WorktreeError(str(exc)) from exc
        base_ref = pinned_ref or start_point

        path = self.worktree_path(repo)
        branch = self.branch_name(repo)
        self.run_dir.mkdir(parents=True, exist_ok=True)

        if path.exists():
            run_git(["worktree", "remove", "--force", str(path)], cwd=repo_path)
            if path.exists() and is_inside(path, self.run_dir):
                shutil.rmtree(path)
        run_git(["worktree", "prune"], cwd=repo_path)
        run_git(["branch", "-D", branch], cwd=repo_path)

        result = run_git(["worktree", "add", "-b", branch, str(path), start_point], cwd=repo_path)
        if not result.ok:
            raise WorktreeError(f"Failed to create worktree for {repo}: {result.stderr.strip()}")

        info = WorktreeInfo(
            repo=repo,
            worktree_path=str(path),
            branch=branch,
            base_ref=base_ref,
            created_at=datetime.now(timezone.utc).isoformat(),
            source_path=str(repo_path.resolve()),
        )
        self._update_mapping(lambda mapping: mapping.__setitem__(repo, info.to_dict()))
        logger.info(
            "Prepared worktree",
            extra={"repo": repo, "path": str(path), "branch": branch, "base_ref": base_ref},
        )
        return path

    def _mapping_lock(self) -> DirectoryLock:
        return DirectoryLock(
            self.run_dir / "mapping.lock.d",
            self.run_dir / "mapping.lock.info",
            timeout=self._lock_timeout,
        )

    def _read_mapping(self) -> dict[str, Any]:
        try:
            payload = read_json(self.mapping_file, default={})
        except json.JSONDecodeError:
            logger.warning("Worktree mapping is corrupt", extra={"mapping": str(self.mapping_file)})
            return {}
        return payload if isinstance(payload, dict) else {}

    def _update_mapping(self, mutator: Callable[[dict[str, Any]], None]) -> None:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        with self._mapping_lock():
            mapping = self._read_mapping()
            mutator(mapping)
            write_json_atomic(self.mapping_file, mapping)

    def list_worktrees(self) -> dict[str, WorktreeInfo]:
        entries: dict[str, WorktreeInfo] = {}
        for repo, payload in self._read_mapping().items():
            if not isinstance(payload, dict) or "worktree_path" not in payload:
                continue
            entries[repo] = WorktreeInfo.from_dict(repo, payload)
        return entries

    def get_worktree(self, repo: str) -> WorktreeInfo | None:
        return self.list_worktrees().get(repo)

    def get_worktree_path(self, repo: str) -> Path | None:
        info = self.get_worktree(repo)
        return info.path if info else None

    def get_worktree_mapping(self, item: str) -> tuple[str, Path] | None:
        """Resolve a work item key (``owner/repo#kind-n``) or pipe line to its worktree."""

        repo = item.split("|", 1)[0].split("#", 1)[0].strip()
        path = self.get_worktree_path(repo) if repo else None
        return (repo, path) if path else None

    def worktree_exists(self, repo: str) -> bool:
        path = self.get_worktree_path(repo)
        return bool(path and path.is_dir())

    def remove_worktree(self, repo: str) -> bool:
        info = self.get_worktree(repo)
        if info is None:
            return False
        removed = self._remove_entry(info)
        self._update_mapping(lambda mapping: mapping.pop(repo, None))
        return removed

    def _remove_entry(self, info: WorktreeInfo) -> bool:
        path = info.path
        if not is_inside(path, self.run_dir):
            logger.error(
                "Refusing to remove worktree outside the run directory",
                extra={"repo": info.repo, "path": str(path), "run_dir": str(self.run_dir)},
            )
            return False
        source = Path(info.source_path) if info.source_path else None
        if source is not None and source.is_dir():
            run_git(["worktree", "remove", "--force", str(path)], cwd=source)
            run_git(["worktree", "prune"], cwd=source)
        if path.is_symlink():
            path.unlink()
        elif path.exists():
            shutil.rmtree(path)
        logger.info("Removed worktree", extra={"repo": info.repo, "path": str(path)})
        return True

    def cleanup_run(self) -> None:
        """Remove every worktree recorded for this run, then the run directory itself.

        Entries whose paths resolve outside the run directory are left untouched.
        """

        if self.run_dir.is_symlink() or (
            self.run_dir.exists() and not is_inside(self.run_dir, self.base_dir)
        ):
            raise UnsafePathError(f"Run directory {self.run_dir} escapes {self.base_dir}")

        for info in self.list_worktrees().values():
            try:
                self._remove_entry(info)
            except OSError as exc:
                logger.warning(
                    "Failed to remove worktree",
                    extra={"repo": info.repo, "path": info.worktree_path, "error": str(exc)},
                )

        if self.run_dir.exists():
            shutil.rmtree(self.run_dir)
        logger.info("Cleaned up run worktrees", extra={"run_id": self.run_id})


def cleanup_run(review_dir: Path, run_id: str) -> None:
    WorktreeManager(review_dir, run_id).cleanup_run()


__all__ = [
    "DirtyRepositoryError",
    "NotARepositoryError",
    "UnsafePathError",
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
    "cleanup_run",
    "is_inside",
    "repo_slug",
    "validate_run_id",
]
