"""Locked, atomically written review state."""

from .checkpoint import Checkpoint, CheckpointError, CheckpointStore
from .locking import (
    DirectoryLock,
    LockError,
    LockHeldError,
    LockInfo,
    LockTimeoutError,
    RunLock,
    read_json,
    with_lock,
    write_json_atomic,
)
from .store import ReviewStateStore, StateStoreError

__all__ = [
    "Checkpoint",
    "CheckpointError",
    "CheckpointStore",
    "DirectoryLock",
    "LockError",
    "LockHeldError",
    "LockInfo",
    "LockTimeoutError",
    "ReviewStateStore",
    "RunLock",
    "StateStoreError",
    "read_json",
    "with_lock",
    "write_json_atomic",
]
