"""Error taxonomy and classification for agent operations.

Errors are sorted into four types that decide recovery:

- TRANSIENT: environmental hiccups (timeouts, rate limits) - retry with backoff
- RETRIABLE: may succeed after a change in state (locks, missing prerequisites)
- FATAL: will fail again until someone fixes it (permissions, bad config, syntax)
- CONFLICT: needs a human decision (security, policy, data integrity)
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    TRANSIENT = "transient"
    RETRIABLE = "retriable"
    FATAL = "fatal"
    CONFLICT = "conflict"


class ErrorCategory(str, Enum):
    # Transient
    NETWORK_TIMEOUT = "network_timeout"
    RATE_LIMIT = "rate_limit"
    CONNECTION_RESET = "connection_reset"
    SERVICE_UNAVAILABLE = "service_unavailable"
    # Retriable
    RESOURCE_LOCKED = "resource_locked"
    DEPENDENCY_MISSING = "dependency_missing"
    VALIDATION_ERROR = "validation_error"
    TEMPORARY_FAILURE = "temporary_failure"
    # Fatal
    PERMISSION_DENIED = "permission_denied"
    INVALID_CONFIGURATION = "invalid_configuration"
    RESOURCE_NOT_FOUND = "resource_not_found"
    SYNTAX_ERROR = "syntax_error"
    OUT_OF_MEMORY = "out_of_memory"
    # Conflict
    SECURITY_VULNERABILITY = "security_vulnerability"
    BUSINESS_RULE_VIOLATION = "business_rule_violation"
    POLICY_VIOLATION = "policy_violation"
    DATA_INTEGRITY_ISSUE = "data_integrity_issue"
    # Fallback
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    SKIP = "skip"
    ROLLBACK = "rollback"
    ALTERNATIVE_PATH = "alternative_path"
    PAUSE_WORKFLOW = "pause_workflow"
    FAIL_IMMEDIATELY = "fail_immediately"
    CIRCUIT_BREAK = "circuit_break"


RECOVERY_ACTIONS = {
    ErrorType.TRANSIENT: RecoveryAction.RETRY_WITH_BACKOFF,
    ErrorType.RETRIABLE: RecoveryAction.RETRY_WITH_BACKOFF,
    ErrorType.FATAL: RecoveryAction.FAIL_IMMEDIATELY,
    ErrorType.CONFLICT: RecoveryAction.PAUSE_WORKFLOW,
}

RETRYABLE_TYPES = frozenset({ErrorType.TRANSIENT, ErrorType.RETRIABLE})

# Checked top to bottom; the first match wins
CLASSIFICATION_RULES: list[tuple[re.Pattern[str], ErrorType, ErrorCategory, ErrorSeverity]] = [
    # Conflicts need a human, so they win over everything else
    (re.compile(r"security|vulnerabilit|\bcve\b|\bcve-\d|exploit"),
     ErrorType.CONFLICT, ErrorCategory.SECURITY_VULNERABILITY, ErrorSeverity.CRITICAL),
    (re.compile(r"business rule"),
     ErrorType.CONFLICT, ErrorCategory.BUSINESS_RULE_VIOLATION, ErrorSeverity.HIGH),
    (re.compile(r"policy|compliance"),
     ErrorType.CONFLICT, ErrorCategory.POLICY_VIOLATION, ErrorSeverity.HIGH),
    (re.compile(r"integrity|constraint violation|\bconflict"),
     ErrorType.CONFLICT, ErrorCategory.DATA_INTEGRITY_ISSUE, ErrorSeverity.HIGH),
    # Fatal
    (re.compile(r"permission denied|eacces|unauthori[sz]ed|forbidden|\b40[13]\b"),
     ErrorType.FATAL, ErrorCategory.PERMISSION_DENIED, ErrorSeverity.HIGH),
    (re.compile(r"invalid config|configuration error|misconfigur|einval"),
     ErrorType.FATAL, ErrorCategory.INVALID_CONFIGURATION, ErrorSeverity.HIGH),
    (re.compile(r"enoent|no such file|file not found|\b404\b"),
     ErrorType.FATAL, ErrorCategory.RESOURCE_NOT_FOUND, ErrorSeverity.MEDIUM),
    (re.compile(r"syntax error|parse error|malformed"),
     ErrorType.FATAL, ErrorCategory.SYNTAX_ERROR, ErrorSeverity.MEDIUM),
    (re.compile(r"out of memory|enomem|heap|memory limit"),
     ErrorType.FATAL, ErrorCategory.OUT_OF_MEMORY, ErrorSeverity.CRITICAL),
    # Transient
    (re.compile(r"timeout|timed out|etimedout|econnreset"),
     ErrorType.TRANSIENT, ErrorCategory.NETWORK_TIMEOUT, ErrorSeverity.LOW),
    (re.compile(r"rate limit|too many requests|\b429\b"),
     ErrorType.TRANSIENT, ErrorCategory.RATE_LIMIT, ErrorSeverity.LOW),
    (re.compile(r"connection reset|connection refused|econnrefused|enotfound|network"),
     ErrorType.TRANSIENT, ErrorCategory.CONNECTION_RESET, ErrorSeverity.LOW),
    (re.compile(r"service unavailable|bad gateway|gateway timeout|\b50[234]\b"),
     ErrorType.TRANSIENT, ErrorCategory.SERVICE_UNAVAILABLE, ErrorSeverity.MEDIUM),
    # Retriable
    (re.compile(r"locked|ebusy|resource busy"),
     ErrorType.RETRIABLE, ErrorCategory.RESOURCE_LOCKED, ErrorSeverity.LOW),
    (re.compile(r"dependency|prerequisite|not found"),
     ErrorType.RETRIABLE, ErrorCategory.DEPENDENCY_MISSING, ErrorSeverity.MEDIUM),
    (re.compile(r"validation failed|invalid input"),
     ErrorType.RETRIABLE, ErrorCategory.VALIDATION_ERROR, ErrorSeverity.LOW),
    (re.compile(r"temporar|try again"),
     ErrorType.RETRIABLE, ErrorCategory.TEMPORARY_FAILURE, ErrorSeverity.LOW),
]

# Fallback for built-in exceptions whose message matched nothing
EXCEPTION_TYPES: list[tuple[type[BaseException], ErrorType, ErrorCategory, ErrorSeverity]] = [
    (TimeoutError, ErrorType.TRANSIENT, ErrorCategory.NETWORK_TIMEOUT, ErrorSeverity.LOW),
    (ConnectionError, ErrorType.TRANSIENT, ErrorCategory.CONNECTION_RESET, ErrorSeverity.LOW),
    (PermissionError, ErrorType.FATAL, ErrorCategory.PERMISSION_DENIED, ErrorSeverity.HIGH),
    (FileNotFoundError, ErrorType.FATAL, ErrorCategory.RESOURCE_NOT_FOUND, ErrorSeverity.MEDIUM),
    (MemoryError, ErrorType.FATAL, ErrorCategory.OUT_OF_MEMORY, ErrorSeverity.CRITICAL),
    (SyntaxError, ErrorType.FATAL, ErrorCategory.SYNTAX_ERROR, ErrorSeverity.MEDIUM),
]

SEVERITY_BY_TYPE = {
    ErrorType.TRANSIENT: ErrorSeverity.LOW,
    ErrorType.RETRIABLE: ErrorSeverity.MEDIUM,
    ErrorType.FATAL: ErrorSeverity.HIGH,
    ErrorType.CONFLICT: ErrorSeverity.CRITICAL,
}


class AgentError(Exception):
    """An error raised by (or on behalf of) an agent, already classified."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        agent_type: str | None = None,
        task_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.category = category
        self.agent_type = agent_type
        self.task_id = task_id
        self.metadata = metadata or {}
        self.timestamp = datetime.now(timezone.utc)

    @property
    def retryable(self) -> bool:
        return self.error_type in RETRYABLE_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "error_type": self.error_type.value,
            "category": self.category.value,
            "agent_type": self.agent_type,
            "task_id": self.task_id,
            "retryable": self.retryable,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ErrorClassification:
    """How an error should be treated."""
    error_type: ErrorType
    category: ErrorCategory
    severity: ErrorSeverity
    recovery_action: RecoveryAction
    retryable: bool
    requires_human_intervention: bool
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.error_type.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "recovery_action": self.recovery_action.value,
            "retryable": self.retryable,
            "requires_human_intervention": self.requires_human_intervention,
            "message": self.message,
            "context": self.context,
        }


def _classification(
    error_type: ErrorType,
    category: ErrorCategory,
    severity: ErrorSeverity,
    message: str,
) -> ErrorClassification:
    return ErrorClassification(
        error_type=error_type,
        category=category,
        severity=severity,
        recovery_action=RECOVERY_ACTIONS[error_type],
        retryable=error_type in RETRYABLE_TYPES,
        requires_human_intervention=error_type in (ErrorType.FATAL, ErrorType.CONFLICT),
        message=message,
    )


def error_message(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error
    return str(error) or type(error).__name__


def classify_error(error: BaseException | str) -> ErrorClassification:
    """Classify an exception or error message.

    Pre-classified AgentErrors keep their type. Otherwise the message is
    matched against CLASSIFICATION_RULES, then built-in exception types are
    consulted. Anything unrecognised is RETRIABLE/UNKNOWN.
    """
    message = error_message(error)

    if isinstance(error, AgentError):
        return _classification(error.error_type, error.category, SEVERITY_BY_TYPE[error.error_type], message)

    lowered = message.lower()
    for pattern, error_type, category, severity in CLASSIFICATION_RULES:
        if pattern.search(lowered):
            return _classification(error_type, category, severity, message)

    if isinstance(error, BaseException):
        for exc_type, error_type, category, severity in EXCEPTION_TYPES:
            if isinstance(error, exc_type):
                return _classification(error_type, category, severity, message)

    return _classification(ErrorType.RETRIABLE, ErrorCategory.UNKNOWN, ErrorSeverity.MEDIUM, message)
