"""Per-target circuit breaker used by the retry engine."""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Optional

from pydantic import BaseModel

from ..constants import (
    DEFAULT_BREAKER_FAILURE_THRESHOLD,
    DEFAULT_BREAKER_FAILURE_WINDOW,
    DEFAULT_BREAKER_RESET_TIMEOUT,
    DEFAULT_BREAKER_SUCCESS_THRESHOLD,
)

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BreakerStats(BaseModel):
    target: str
    state: CircuitState
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    times_opened: int = 0
    times_closed: int = 0
    retry_at: Optional[float] = None


class CircuitBreaker:
    """Stops calling a target that keeps failing.

    ``failure_threshold`` failures within ``failure_window`` seconds open the
    circuit and every call is rejected until ``reset_timeout`` has passed.
    The circuit then goes half open: ``success_threshold`` successful calls
    close it again, a single failure reopens it.
    """

    def __init__(
        self,
        target: str,
        *,
        failure_threshold: int = DEFAULT_BREAKER_FAILURE_THRESHOLD,
        failure_window: float = DEFAULT_BREAKER_FAILURE_WINDOW,
        reset_timeout: float = DEFAULT_BREAKER_RESET_TIMEOUT,
        success_threshold: int = DEFAULT_BREAKER_SUCCESS_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target = target
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self._clock = clock
        self._failures: Deque[float] = deque()
        self._trial_successes = 0
        self._state = CircuitState.CLOSED
        self._retry_at: Optional[float] = None
        self._stats = BreakerStats(target=target, state=self._state)

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._retry_at is not None
            and self._clock() >= self._retry_at
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def retry_at(self) -> Optional[float]:
        return self._retry_at

    def allow(self) -> bool:
        """Return ``False`` when the call must be rejected."""
        self._stats.total_calls += 1
        if self.state is CircuitState.OPEN:
            self._stats.rejected_calls += 1
            logger.warning(f"Circuit for {self.target} is open, rejecting call")
            return False
        return True

    def record_success(self) -> None:
        self._stats.successful_calls += 1
        if self._state is CircuitState.HALF_OPEN:
            self._trial_successes += 1
            if self._trial_successes >= self.success_threshold:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._stats.failed_calls += 1
        now = self._clock()
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return
        self._failures.append(now)
        while self._failures and self._failures[0] <= now - self.failure_window:
            self._failures.popleft()
        if self._state is CircuitState.CLOSED and len(self._failures) >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    def open(self) -> None:
        self._transition(CircuitState.OPEN)

    def close(self) -> None:
        self._transition(CircuitState.CLOSED)

    def reset(self) -> None:
        self._failures.clear()
        self._trial_successes = 0
        self._state = CircuitState.CLOSED
        self._retry_at = None
        self._stats = BreakerStats(target=self.target, state=self._state)

    def stats(self) -> BreakerStats:
        return self._stats.model_copy(update={"state": self.state, "retry_at": self._retry_at})

    def _transition(self, state: CircuitState) -> None:
        if state is self._state:
            return
        self._state = state
        self._trial_successes = 0
        if state is CircuitState.OPEN:
            self._retry_at = self._clock() + self.reset_timeout
            self._stats.times_opened += 1
            logger.error(
                f"Circuit for {self.target} opened; next trial in {self.reset_timeout}s"
            )
        elif state is CircuitState.HALF_OPEN:
            self._retry_at = None
            logger.info(f"Circuit for {self.target} half open")
        else:
            self._retry_at = None
            self._failures.clear()
            self._stats.times_closed += 1
            logger.info(f"Circuit for {self.target} closed")
