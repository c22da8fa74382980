"""Directory-based mutual exclusion and atomic JSON writes.

A lock is held by whoever created its marker directory; ``mkdir`` is atomic on
every platform we run on. Holder metadata lives in a sibling info file that is
diagnostic only. Lock locations are plain ``Path`` objects and are never passed
through a shell.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Seconds a lock directory may exist without an info file before it counts as abandoned.
MISSING_INFO_GRACE = 5.0


class LockError(RuntimeError):
    """Base class for locking failures."""


class LockHeldError(LockError):
    """Raised when another live holder owns the lock."""


class LockTimeoutError(LockHeldError):
    """Raised when a lock could not be acquired before the timeout."""


@contextmanager
def atomic_write(path: Path, encoding: str = "utf-8") -> Iterator[Any]:
    """Write through a temp file in the same directory, then rename over ``path``."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.tmp.")
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def write_json_atomic(path: Path, content: Any) -> None:
    """Serialize ``content`` and atomically replace ``path`` with it."""

    # Serialize first so an unserializable payload never touches the disk.
    text = json.dumps(content, indent=2, sort_keys=False, default=str)
    with atomic_write(path) as handle:
        handle.write(text)
        handle.write("\n")


def read_json(path: Path, default: Any = None) -> Any:
    """Read a JSON document, returning ``default`` when missing or empty."""

    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    if not text.strip():
        return default
    return json.loads(text)


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OverflowError:
        return False
    return True


@dataclass(slots=True)
class LockInfo:
    """Diagnostic metadata describing the current lock holder."""

    pid: int = field(default_factory=os.getpid)
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    run_id: str | None = None
    mode: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "LockInfo":
        return cls(
            pid=int(payload["pid"]),
            started_at=str(payload.get("started_at", "")),
            run_id=payload.get("run_id"),
            mode=payload.get("mode"),
        )


class DirectoryLock:
    """Process-safe lock implemented as atomic creation of a marker directory."""

    def __init__(
        self,
        lock_dir: Path,
        info_path: Path | None = None,
        *,
        timeout: float = 30.0,
        poll_interval: float = 0.05,
    ) -> None:
        self.lock_dir = Path(lock_dir)
        self.info_path = Path(info_path) if info_path else self.lock_dir.with_suffix(".info")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def holder(self) -> LockInfo | None:
        """Return the recorded holder, or ``None`` if missing or unreadable."""

        try:
            payload = read_json(self.info_path)
            return LockInfo.from_dict(payload) if isinstance(payload, dict) else None
        except (ValueError, KeyError, TypeError):
            return None

    def is_stale(self) -> bool:
        if not self.lock_dir.exists():
            return False
        if not self.info_path.exists():
            try:
                age = time.time() - self.lock_dir.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > MISSING_INFO_GRACE
        info = self.holder()
        if info is None:
            return True
        return not pid_alive(info.pid)

    def break_if_stale(self) -> bool:
        """Remove an abandoned lock; returns True when something was removed."""

        if not self.is_stale():
            return False
        logger.warning(
            "Removing stale lock",
            extra={"lock_dir": str(self.lock_dir), "holder": self._holder_dict()},
        )
        self._remove()
        return True

    def try_acquire(self, info: LockInfo | None = None) -> bool:
        self.lock_dir.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                self.lock_dir.mkdir()
            except FileExistsError:
                if self.break_if_stale():
                    continue
                return False
            write_json_atomic(self.info_path, (info or LockInfo()).to_dict())
            self._held = True
            return True
        return False

    def acquire(self, info: LockInfo | None = None, timeout: float | None = None) -> None:
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        while not self.try_acquire(info):
            if time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"Timed out waiting for lock {self.lock_dir} (holder: {self._holder_dict()})"
                )
            time.sleep(self.poll_interval)

    async def acquire_async(self, info: LockInfo | None = None, timeout: float | None = None) -> None:
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        while not self.try_acquire(info):
            if time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"Timed out waiting for lock {self.lock_dir} (holder: {self._holder_dict()})"
                )
            await asyncio.sleep(self.poll_interval)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        self._remove()

    def _remove(self) -> None:
        self.info_path.unlink(missing_ok=True)
        try:
            self.lock_dir.rmdir()
        except FileNotFoundError:
            pass

    def _holder_dict(self) -> dict[str, Any] | None:
        info = self.holder()
        return info.to_dict() if info else None

    def __enter__(self) -> "DirectoryLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    async def __aenter__(self) -> "DirectoryLock":
        await self.acquire_async()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


def with_lock(lock: DirectoryLock, operation: Callable[[], T], info: LockInfo | None = None) -> T:
    """Run ``operation`` while holding ``lock``, releasing on every exit path."""

    lock.acquire(info)
    try:
        return operation()
    finally:
        lock.release()


class RunLock:
    """Single-run guard: a second run fails fast instead of waiting."""

    def __init__(self, state_dir: Path) -> None:
        state_dir = Path(state_dir)
        self._lock = DirectoryLock(state_dir / "review.lock.d", state_dir / "review.lock.info")

    @property
    def lock_dir(self) -> Path:
        return self._lock.lock_dir

    @property
    def info_path(self) -> Path:
        return self._lock.info_path

    @property
    def held(self) -> bool:
        return self._lock.held

    def holder(self) -> LockInfo | None:
        return self._lock.holder()

    def is_stale(self) -> bool:
        return self._lock.is_stale()

    def acquire(self, run_id: str, mode: str) -> LockInfo:
        info = LockInfo(run_id=run_id, mode=mode)
        if not self._lock.try_acquire(info):
            holder = self._lock.holder()
            raise LockHeldError(
                "Another review run is active"
                + (f" (run_id={holder.run_id}, pid={holder.pid})" if holder else "")
            )
        logger.info("Acquired run lock", extra={"run_id": run_id, "mode": mode})
        return info

    def relabel(self, run_id: str, mode: str) -> None:
        """Record a different run id for the held lock, e.g. after resuming."""

        if not self._lock.held:
            raise LockError("Run lock is not held")
        write_json_atomic(self.info_path, LockInfo(run_id=run_id, mode=mode).to_dict())

    def release(self) -> None:
        self._lock.release()


__all__ = [
    "DirectoryLock",
    "LockError",
    "LockHeldError",
    "LockInfo",
    "LockTimeoutError",
    "RunLock",
    "atomic_write",
    "pid_alive",
    "read_json",
    "with_lock",
    "write_json_atomic",
]
