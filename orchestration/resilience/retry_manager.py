"""Retry manager - backoff strategies, attempt history and circuit breaking.

``max_attempts`` counts retries: an operation is called at most
``max_attempts + 1`` times. Failures are classified with
:func:`classify_error`; only the configured retryable types are retried.
"""

import asyncio
import dataclasses
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from orchestration.config import settings
from orchestration.resilience.circuit_breaker import (
    GLOBAL_CIRCUIT,
    CircuitBreakerRegistry,
    CircuitBreakerState,
)
from orchestration.resilience.error_handler import ErrorContext
from orchestration.resilience.errors import ErrorType, classify_error, error_message

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.1


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIBONACCI = "fibonacci"


@dataclass
class RetryConfig:
    """Retry behaviour for one operation."""
    max_attempts: int = field(default_factory=lambda: settings.retry_max_attempts)
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_ms: int = field(default_factory=lambda: settings.retry_base_delay_ms)
    max_delay_ms: int = field(default_factory=lambda: settings.retry_max_delay_ms)
    retryable_errors: list[ErrorType] = field(
        default_factory=lambda: [ErrorType.TRANSIENT, ErrorType.RETRIABLE]
    )
    circuit_breaker_threshold: int = field(default_factory=lambda: settings.circuit_breaker_threshold)
    timeout_ms: int | None = None  # Per-attempt timeout, off by default

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts cannot be negative")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("Delays cannot be negative")
        if self.circuit_breaker_threshold < 1:
            raise ValueError("circuit_breaker_threshold must be at least 1")


# Recommended settings per error type
DEFAULT_RETRY_CONFIGS: dict[ErrorType, dict[str, Any]] = {
    ErrorType.TRANSIENT: {
        "max_attempts": 5,
        "strategy": BackoffStrategy.EXPONENTIAL,
        "base_delay_ms": 1000,
        "max_delay_ms": 16000,
    },
    ErrorType.RETRIABLE: {
        "max_attempts": 3,
        "strategy": BackoffStrategy.LINEAR,
        "base_delay_ms": 2000,
        "max_delay_ms": 10000,
    },
    ErrorType.FATAL: {
        "max_attempts": 0,
        "strategy": BackoffStrategy.FIXED,
        "base_delay_ms": 0,
        "max_delay_ms": 0,
    },
    ErrorType.CONFLICT: {
        "max_attempts": 0,
        "strategy": BackoffStrategy.FIXED,
        "base_delay_ms": 0,
        "max_delay_ms": 0,
    },
}


def get_recommended_config(error_type: ErrorType) -> RetryConfig:
    return RetryConfig(**DEFAULT_RETRY_CONFIGS[error_type])


def _fibonacci(n: int) -> int:
    """n-th Fibonacci number with fib(1) = fib(2) = 1."""
    a, b = 1, 1
    for _ in range(n - 1):
        a, b = b, a + b
    return a


def get_backoff_delay(
    attempt: int,
    strategy: BackoffStrategy | None = None,
    config: RetryConfig | None = None,
) -> float:
    """Milliseconds to wait before retry number ``attempt`` (1-based).

    ``strategy`` overrides ``config.strategy``. The strategy's delay is
    clamped to ``max_delay_ms``; up to 10% jitter is added on top.
    """
    config = config or RetryConfig()
    if strategy is None:
        strategy = config.strategy
    attempt = max(attempt, 1)
    base = config.base_delay_ms

    if strategy == BackoffStrategy.FIXED:
        delay = base
    elif strategy == BackoffStrategy.LINEAR:
        delay = base * attempt
    elif strategy == BackoffStrategy.EXPONENTIAL:
        delay = base * 2 ** (attempt - 1)
    else:
        delay = base * _fibonacci(attempt)

    delay = min(delay, config.max_delay_ms)
    return delay + random.uniform(0, delay * JITTER_RATIO)


@dataclass
class RetryAttempt:
    attempt_number: int
    timestamp: datetime
    success: bool
    error: str | None = None
    error_type: ErrorType | None = None
    delay_ms: float = 0.0


@dataclass
class RetryHistory:
    """Every attempt made for one operation ID."""
    operation_id: str
    agent_type: str | None
    phase: str | int | None
    attempts: list[RetryAttempt] = field(default_factory=list)
    final_success: bool = False
    total_duration_ms: float = 0.0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "agent_type": self.agent_type,
            "phase": self.phase,
            "total_attempts": self.total_attempts,
            "final_success": self.final_success,
            "total_duration_ms": round(self.total_duration_ms, 2),
            "attempts": [
                {
                    "attempt_number": a.attempt_number,
                    "timestamp": a.timestamp.isoformat(),
                    "success": a.success,
                    "error": a.error,
                    "error_type": a.error_type.value if a.error_type else None,
                    "delay_ms": round(a.delay_ms, 2),
                }
                for a in self.attempts
            ],
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class RetryManager:
    """Runs async operations with classified retries and per-agent circuits."""

    def __init__(
        self,
        default_config: RetryConfig | None = None,
        circuit_breakers: CircuitBreakerRegistry | None = None,
    ):
        self.default_config = default_config or RetryConfig()
        self.circuit_breakers = circuit_breakers or CircuitBreakerRegistry()
        self._histories: dict[str, RetryHistory] = {}

    def _resolve_config(self, config: RetryConfig | Mapping[str, Any] | None) -> RetryConfig:
        if config is None:
            return self.default_config
        if isinstance(config, RetryConfig):
            return config
        return dataclasses.replace(self.default_config, **dict(config))

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: str,
        context: ErrorContext | Mapping[str, Any] | None = None,
        config: RetryConfig | Mapping[str, Any] | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or retrying stops.

        Raises:
            CircuitBreakerOpenError: The agent's circuit is open; the
                operation was not called.
            Exception: The operation's own last error, unchanged.
        """
        cfg = self._resolve_config(config)
        ctx = ErrorContext.coerce(context)
        circuit = ctx.agent_type or GLOBAL_CIRCUIT
        log_extra = {"operation_id": operation_id, "agent_type": circuit}

        self.circuit_breakers.ensure_closed(circuit)

        history = self._histories.get(operation_id)
        if history is None:
            history = RetryHistory(operation_id=operation_id, agent_type=ctx.agent_type, phase=ctx.phase)
            self._histories[operation_id] = history

        started = time.monotonic()
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await self._run_attempt(operation, operation_id, cfg)
            except asyncio.CancelledError:
                raise  # Don't retry cancelled operations
            except Exception as e:
                classification = classify_error(e)
                breaker = self.circuit_breakers.record_failure(circuit, cfg.circuit_breaker_threshold)

                will_retry = (
                    classification.error_type in cfg.retryable_errors
                    and attempt <= cfg.max_attempts
                    and not breaker.is_open
                )
                delay_ms = get_backoff_delay(attempt, config=cfg) if will_retry else 0.0

                history.attempts.append(RetryAttempt(
                    attempt_number=attempt,
                    timestamp=datetime.now(timezone.utc),
                    success=False,
                    error=error_message(e),
                    error_type=classification.error_type,
                    delay_ms=delay_ms,
                ))

                if not will_retry:
                    self._finish(history, started, success=False)
                    logger.error(
                        f"Operation {operation_id} failed after {attempt} attempts "
                        f"({classification.error_type.value}): {error_message(e)}",
                        extra={**log_extra, "attempt": attempt},
                    )
                    raise

                logger.warning(
                    f"Operation {operation_id} attempt {attempt} failed ({classification.error_type.value}), "
                    f"retrying in {delay_ms:.0f}ms",
                    extra={**log_extra, "attempt": attempt},
                )
                await asyncio.sleep(delay_ms / 1000)
                continue

            history.attempts.append(RetryAttempt(
                attempt_number=attempt,
                timestamp=datetime.now(timezone.utc),
                success=True,
            ))
            self._finish(history, started, success=True)
            self.circuit_breakers.record_success(circuit)
            if attempt > 1:
                logger.info(f"Operation {operation_id} succeeded on attempt {attempt}", extra=log_extra)
            return result

    async def _run_attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: str,
        config: RetryConfig,
    ) -> T:
        if config.timeout_ms is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=config.timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Operation {operation_id} timed out after {config.timeout_ms}ms") from e

    @staticmethod
    def _finish(history: RetryHistory, started: float, success: bool) -> None:
        history.final_success = success
        history.total_duration_ms += (time.monotonic() - started) * 1000
        history.completed_at = datetime.now(timezone.utc)

    # =========================================================================
    # History and statistics
    # =========================================================================

    def get_retry_history(self, operation_id: str) -> RetryHistory | None:
        return self._histories.get(operation_id)

    def get_all_retry_histories(self) -> list[RetryHistory]:
        return list(self._histories.values())

    def clear_history(self, operation_id: str | None = None) -> None:
        """Forget one operation's history, or all of it."""
        if operation_id is None:
            self._histories.clear()
        else:
            self._histories.pop(operation_id, None)

    def get_statistics(self) -> dict[str, Any]:
        histories = list(self._histories.values())
        total = len(histories)
        successful = sum(1 for h in histories if h.final_success)
        return {
            "total_operations": total,
            "successful_operations": successful,
            "failed_operations": total - successful,
            "average_attempts": (sum(h.total_attempts for h in histories) / total) if total else 0.0,
            "average_duration_ms": (sum(h.total_duration_ms for h in histories) / total) if total else 0.0,
            "open_circuit_breakers": sum(1 for s in self.circuit_breakers.list_all() if s.is_open),
        }

    # =========================================================================
    # Circuit breakers
    # =========================================================================

    def get_circuit_breaker_state(self, agent_type: str) -> CircuitBreakerState | None:
        return self.circuit_breakers.get(agent_type)

    def get_all_circuit_breaker_states(self) -> list[CircuitBreakerState]:
        return self.circuit_breakers.list_all()

    def reset_circuit_breaker(self, agent_type: str) -> bool:
        """Remove all tracked state for ``agent_type``."""
        return self.circuit_breakers.reset(agent_type)
