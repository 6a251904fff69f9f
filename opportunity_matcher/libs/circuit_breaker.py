"""
Per-provider circuit breaker for the embedding chain.

After ``failure_threshold`` consecutive transient failures a provider is
tripped and the chain skips it for ``reset_timeout`` seconds. Once that
cool-down has passed a single trial call is admitted; concurrent callers keep
skipping the provider until the trial call settles it one way or the other.
"""

import asyncio
import enum
import time
from typing import Any, Callable, Dict, Optional

from opportunity_matcher.log.logging import logger


class CircuitState(enum.Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Tracks the health of one embedding provider."""

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            name: Provider name, used in logs and status output
            failure_threshold: Consecutive failures that trip the breaker
            reset_timeout: Seconds a tripped provider is skipped before a trial call
            clock: Monotonic time source, injectable for tests
        """
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.reset_timeout = reset_timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.times_opened = 0
        self.last_error: Optional[str] = None
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._clock = clock
        self._lock = asyncio.Lock()

    def retry_after(self) -> float:
        """Seconds until a tripped provider may be tried again; 0 when not open."""
        if self.state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.reset_timeout - self._clock())

    def _move_to(self, state: CircuitState, **context: Any) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        if state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self.times_opened += 1
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(
            "Embedding provider circuit changed",
            provider=self.name,
            previous=previous.value,
            state=state.value,
            **context,
        )

    async def is_allowed(self) -> bool:
        """
        Decide whether the next call may go to this provider.

        Returns:
            True for a closed circuit or for the one admitted trial call
        """
        async with self._lock:
            if self.state == CircuitState.CLOSED:
                return True
            if self._trial_in_flight:
                return False
            if self.state == CircuitState.OPEN and self.retry_after() > 0:
                return False
            self._move_to(CircuitState.HALF_OPEN)
            self._trial_in_flight = True
            return True

    async def record_success(self) -> None:
        async with self._lock:
            self._trial_in_flight = False
            self.failure_count = 0
            self.last_error = None
            self._move_to(CircuitState.CLOSED)

    async def record_failure(self, error: Optional[str] = None) -> None:
        async with self._lock:
            self._trial_in_flight = False
            self.failure_count += 1
            self.last_error = error
            if self.state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN, reason="trial call failed", error=error)
            elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
                self._move_to(CircuitState.OPEN, failures=self.failure_count, error=error)
            elif self.state == CircuitState.OPEN:
                self._opened_at = self._clock()

    async def release(self) -> None:
        """
        End a call that says nothing about availability, e.g. a rejected request.

        A trial slot is freed without changing state or counters.
        """
        async with self._lock:
            self._trial_in_flight = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
            "retry_after": round(self.retry_after(), 3),
            "times_opened": self.times_opened,
            "last_error": self.last_error,
        }
