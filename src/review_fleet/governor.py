"""Adaptive parallelism under GitHub and model rate limits."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Callable

logger = logging.getLogger(__name__)

GITHUB_CRITICAL_REMAINING = 500
GITHUB_LOW_REMAINING = 1000


class RateLimitGovernor:
    """Decide how many sessions may run given recent rate-limit signals."""

    def __init__(
        self,
        target_parallel: int = 4,
        *,
        error_threshold: int = 5,
        error_window_seconds: float = 300.0,
        backoff_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if target_parallel < 1:
            raise ValueError("target_parallel must be >= 1")
        self.target_parallel = target_parallel
        self.error_threshold = error_threshold
        self.error_window_seconds = error_window_seconds
        self.backoff_seconds = backoff_seconds
        self._clock = clock
        self.github_remaining: int | None = None
        self._backoff_until: float | None = None
        self._errors: deque[float] = deque()

    def update_github_remaining(self, remaining: int) -> None:
        self.github_remaining = remaining
        if remaining < GITHUB_CRITICAL_REMAINING:
            logger.warning("GitHub API quota nearly exhausted", extra={"remaining": remaining})

    def record_model_rate_limit(self) -> None:
        self._backoff_until = self._clock() + self.backoff_seconds
        logger.warning("Model rate limit hit; backing off", extra={"seconds": self.backoff_seconds})

    def record_error(self) -> None:
        self._errors.append(self._clock())
        self._prune()

    def _prune(self) -> None:
        horizon = self._clock() - self.error_window_seconds
        while self._errors and self._errors[0] < horizon:
            self._errors.popleft()

    def in_backoff(self) -> bool:
        return self._backoff_until is not None and self._clock() < self._backoff_until

    def circuit_open(self) -> bool:
        self._prune()
        return len(self._errors) >= self.error_threshold

    def effective_parallel(self) -> int:
        if self.circuit_open():
            return 0
        if self.in_backoff():
            return 1
        if self.github_remaining is not None:
            if self.github_remaining < GITHUB_CRITICAL_REMAINING:
                return 1
            if self.github_remaining < GITHUB_LOW_REMAINING:
                return max(1, self.target_parallel // 2)
        return self.target_parallel

    def can_start(self, active_count: int) -> bool:
        if self.circuit_open():
            return False
        if self.in_backoff() and active_count >= 1:
            return False
        return active_count < self.effective_parallel()

    def status(self) -> dict[str, Any]:
        return {
            "target_parallel": self.target_parallel,
            "effective_parallel": self.effective_parallel(),
            "github_remaining": self.github_remaining,
            "model_backoff_until": self._backoff_until if self.in_backoff() else None,
            "recent_errors": len(self._errors),
            "circuit_open": self.circuit_open(),
        }


__all__ = ["RateLimitGovernor"]
