"""Thin git subprocess helpers."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from ..session.utils import sanitize_environment

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    """Raised when git is missing or a required git command fails."""


@dataclass(slots=True)
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_git(args: Sequence[str], cwd: Path, timeout: float = 60.0) -> GitResult:
    """Run a git command; timeouts come back as returncode -1."""

    cmd = ("git", *args)
    try:
        completed = subprocess.run(
            cmd,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=sanitize_environment({"GIT_TERMINAL_PROMPT": "0"}),
        )
    except FileNotFoundError as exc:
        raise GitError("git executable not found on PATH") from exc
    except subprocess.TimeoutExpired:
        logger.warning("git command timed out", extra={"args": list(args), "cwd": str(cwd)})
        return GitResult(args=cmd, returncode=-1, stdout="", stderr=f"timed out after {timeout}s")
    return GitResult(
        args=cmd,
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )


def is_git_repo(path: Path) -> bool:
    path = Path(path)
    if not path.is_dir():
        return False
    result = run_git(["rev-parse", "--is-inside-work-tree"], cwd=path)
    return result.ok and result.stdout.strip() == "true"


def head_sha(path: Path) -> str:
    result = run_git(["rev-parse", "HEAD"], cwd=path)
    if not result.ok:
        raise GitError(f"Cannot resolve HEAD in {path}: {result.stderr.strip()}")
    return result.stdout.strip()


def resolve_commit(path: Path, ref: str) -> str:
    result = run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd=path)
    if not result.ok or not result.stdout.strip():
        raise GitError(f"Unknown ref {ref!r} in {path}")
    return result.stdout.strip()


def has_uncommitted_changes(path: Path) -> bool:
    """True when the tree has staged, unstaged or untracked changes."""

    result = run_git(["status", "--porcelain", "--untracked-files=all"], cwd=path)
    if not result.ok:
        raise GitError(f"git status failed in {path}: {result.stderr.strip()}")
    return bool(result.stdout.strip())


def commit_subjects(path: Path, base: str, head: str = "HEAD") -> list[str]:
    """Subjects of commits in ``base..head``, oldest first."""

    result = run_git(["log", "--reverse", "--format=%s", f"{base}..{head}"], cwd=path)
    if not result.ok:
        raise GitError(f"git log {base}..{head} failed in {path}: {result.stderr.strip()}")
    return [line for line in result.stdout.splitlines() if line.strip()]


_SHORTSTAT = re.compile(
    r"(?:(\d+) files? changed)?(?:, )?(?:(\d+) insertions?\(\+\))?(?:, )?(?:(\d+) deletions?\(-\))?"
)


def diff_stats(path: Path, base: str) -> tuple[int, int, int]:
    """Files changed, insertions and deletions of the working tree against ``base``."""

    result = run_git(["diff", "--shortstat", base], cwd=path)
    if not result.ok:
        raise GitError(f"git diff failed in {path}: {result.stderr.strip()}")
    match = _SHORTSTAT.search(result.stdout.strip())
    if not match:
        return 0, 0, 0
    files, insertions, deletions = (int(group) if group else 0 for group in match.groups())
    return files, insertions, deletions


__all__ = [
    "GitError",
    "GitResult",
    "commit_subjects",
    "diff_stats",
    "has_uncommitted_changes",
    "head_sha",
    "is_git_repo",
    "resolve_commit",
    "run_git",
]
