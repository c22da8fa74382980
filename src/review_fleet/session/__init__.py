"""Agent session drivers, detection and supervision."""

from .driver import (
    DriverCapabilities,
    DriverUnavailableError,
    FakeSessionDriver,
    RawState,
    SessionDriver,
    SessionDriverError,
    SessionNotFoundError,
    SubprocessDriver,
    TmuxDriver,
    create_driver,
)
from .monitor import SessionState, WaitInfo, WaitReason
from .supervisor import PollResult, SessionSupervisor, StallAction, SupervisedSession

__all__ = [
    "DriverCapabilities",
    "DriverUnavailableError",
    "FakeSessionDriver",
    "PollResult",
    "RawState",
    "SessionDriver",
    "SessionDriverError",
    "SessionNotFoundError",
    "SessionState",
    "SessionSupervisor",
    "StallAction",
    "SubprocessDriver",
    "SupervisedSession",
    "TmuxDriver",
    "WaitInfo",
    "WaitReason",
    "create_driver",
]
