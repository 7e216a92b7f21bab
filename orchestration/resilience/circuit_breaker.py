"""Per-agent circuit breakers for retried operations."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from orchestration.config import settings

logger = logging.getLogger(__name__)

GLOBAL_CIRCUIT = "global"


class CircuitBreakerOpenError(Exception):
    """Raised instead of calling an operation whose agent circuit is open."""

    def __init__(self, agent_type: str, failure_count: int, retry_after: float):
        self.agent_type = agent_type
        self.failure_count = failure_count
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker open for '{agent_type}' after {failure_count} failures, "
            f"retry after {retry_after:.1f}s"
        )


@dataclass
class CircuitBreakerState:
    """Failure tally for one agent type.

    Failures older than the window are forgotten; an open circuit closes
    again once the window has passed since it opened.
    """

    agent_type: str
    threshold: int = 10
    window_seconds: float = 300.0

    failure_count: int = 0
    is_open: bool = False
    last_failure_time: float | None = None
    opened_at: float | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record_failure(self, now: float | None = None) -> bool:
        """Count a failure. Returns True when this failure opened the circuit."""
        now = time.time() if now is None else now
        if self.last_failure_time is not None and now - self.last_failure_time > self.window_seconds:
            self.failure_count = 0

        self.failure_count += 1
        self.last_failure_time = now

        if not self.is_open and self.failure_count >= self.threshold:
            self.is_open = True
            self.opened_at = now
            logger.warning(
                f"Circuit '{self.agent_type}' opened after {self.failure_count} failures",
                extra={"agent_type": self.agent_type},
            )
            return True
        return False

    def check_expired(self, now: float | None = None) -> bool:
        """True when the circuit was open and the window has passed."""
        now = time.time() if now is None else now
        return self.is_open and self.opened_at is not None and now - self.opened_at >= self.window_seconds

    def time_until_close(self, now: float | None = None) -> float:
        if not self.is_open or self.opened_at is None:
            return 0.0
        now = time.time() if now is None else now
        return max(0.0, self.window_seconds - (now - self.opened_at))

    def get_status(self) -> dict[str, Any]:
        return {
            "agent_type": self.agent_type,
            "is_open": self.is_open,
            "failure_count": self.failure_count,
            "threshold": self.threshold,
            "window_seconds": self.window_seconds,
            "last_failure_time": self.last_failure_time,
            "time_until_close": self.time_until_close() if self.is_open else None,
        }


class CircuitBreakerRegistry:
    """Tracks circuit state per agent type."""

    def __init__(self, window_seconds: float | None = None) -> None:
        self.window_seconds = window_seconds if window_seconds is not None else settings.circuit_breaker_window_seconds
        self._breakers: dict[str, CircuitBreakerState] = {}

    def get(self, agent_type: str) -> CircuitBreakerState | None:
        """Current state, or None when nothing is tracked.

        An open circuit whose window has passed is dropped here.
        """
        state = self._breakers.get(agent_type)
        if state is not None and state.check_expired():
            logger.info(f"Circuit '{agent_type}' closed after cool-down", extra={"agent_type": agent_type})
            del self._breakers[agent_type]
            return None
        return state

    def ensure_closed(self, agent_type: str) -> None:
        """Raise CircuitBreakerOpenError when ``agent_type`` is tripped."""
        state = self.get(agent_type)
        if state is not None and state.is_open:
            raise CircuitBreakerOpenError(agent_type, state.failure_count, state.time_until_close())

    def record_failure(self, agent_type: str, threshold: int) -> CircuitBreakerState:
        state = self.get(agent_type)
        if state is None:
            state = CircuitBreakerState(agent_type=agent_type, threshold=threshold, window_seconds=self.window_seconds)
            self._breakers[agent_type] = state
        state.threshold = threshold
        state.record_failure()
        return state

    def record_success(self, agent_type: str) -> None:
        """A success closes the tally for a circuit that has not tripped."""
        state = self._breakers.get(agent_type)
        if state is not None and not state.is_open:
            del self._breakers[agent_type]

    def reset(self, agent_type: str) -> bool:
        """Forget everything about ``agent_type``. Returns whether state existed."""
        existed = self._breakers.pop(agent_type, None) is not None
        if existed:
            logger.info(f"Circuit '{agent_type}' manually reset", extra={"agent_type": agent_type})
        return existed

    def reset_all(self) -> None:
        self._breakers.clear()

    def list_all(self) -> list[CircuitBreakerState]:
        states = []
        for name in list(self._breakers):
            state = self.get(name)
            if state is not None:
                states.append(state)
        return states
