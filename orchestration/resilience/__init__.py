"""Resilience patterns - error classification, checkpoints, retries, circuit breakers."""

from orchestration.resilience.circuit_breaker import (
    CircuitBreakerOpenError,
    CircuitBreakerRegistry,
    CircuitBreakerState,
)
from orchestration.resilience.error_handler import (
    Checkpoint,
    ErrorContext,
    ErrorHandler,
    ErrorLog,
    RecoveryResult,
)
from orchestration.resilience.errors import (
    AgentError,
    ErrorCategory,
    ErrorClassification,
    ErrorType,
    RecoveryAction,
    classify_error,
)
from orchestration.resilience.retry_manager import (
    DEFAULT_RETRY_CONFIGS,
    BackoffStrategy,
    RetryConfig,
    RetryManager,
    get_backoff_delay,
    get_recommended_config,
)

__all__ = [
    "AgentError",
    "BackoffStrategy",
    "Checkpoint",
    "CircuitBreakerOpenError",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "DEFAULT_RETRY_CONFIGS",
    "ErrorCategory",
    "ErrorClassification",
    "ErrorContext",
    "ErrorHandler",
    "ErrorLog",
    "ErrorType",
    "RecoveryAction",
    "RecoveryResult",
    "RetryConfig",
    "RetryManager",
    "classify_error",
    "get_backoff_delay",
    "get_recommended_config",
]
