from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

import pytest

from review_fleet.config import ReviewSettings

GIT = shutil.which("git")

requires_git = pytest.mark.skipif(GIT is None, reason="git executable not available")


def _git(path: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=path, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def init_repo(path: Path, *, files: dict[str, str] | None = None) -> Path:
    """Create a git repository with one commit."""

    path.mkdir(parents=True, exist_ok=True)
    _git(path, "init", "-q", "-b", "main")
    _git(path, "config", "user.email", "review@example.com")
    _git(path, "config", "user.name", "Review Bot")
    _git(path, "config", "commit.gpgsign", "false")
    for name, content in (files or {"README.md": "hello\n"}).items():
        target = path / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    _git(path, "add", "-A")
    _git(path, "commit", "-q", "-m", "initial")
    return path


def commit_file(path: Path, name: str, content: str, message: str) -> str:
    (path / name).write_text(content, encoding="utf-8")
    _git(path, "add", name)
    _git(path, "commit", "-q", "-m", message)
    return _git(path, "rev-parse", "HEAD")


@pytest.fixture
def make_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    for name in list(os.environ):
        if name.startswith("REVIEW_FLEET_"):
            monkeypatch.delenv(name, raising=False)

    def _factory(**overrides) -> ReviewSettings:
        values = {
            "state_dir": tmp_path / "state",
            "projects_dir": tmp_path / "projects",
            "poll_interval_seconds": 0.01,
            "stall_threshold_seconds": 60.0,
            "pattern_paths": (tmp_path / "no-patterns",),
        }
        values.update(overrides)
        return ReviewSettings(**values)

    return _factory
