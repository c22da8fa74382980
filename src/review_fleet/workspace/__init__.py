"""Isolated worktrees and the digest cache."""

from .digest import DigestCache, DigestCacheEntry, DigestError
from .git import GitError
from .worktree import (
    DirtyRepositoryError,
    NotARepositoryError,
    UnsafePathError,
    WorktreeError,
    WorktreeInfo,
    WorktreeManager,
    cleanup_run,
)

__all__ = [
    "DigestCache",
    "DigestCacheEntry",
    "DigestError",
    "DirtyRepositoryError",
    "GitError",
    "NotARepositoryError",
    "UnsafePathError",
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
    "cleanup_run",
]
