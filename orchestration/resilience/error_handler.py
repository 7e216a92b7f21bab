"""Error handling, checkpoints and error logs for orchestration runs."""

import copy
import logging
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping

from orchestration.config import settings
from orchestration.resilience.errors import (
    AgentError,
    ErrorCategory,
    ErrorClassification,
    ErrorSeverity,
    ErrorType,
    RecoveryAction,
    classify_error,
    error_message,
)

logger = logging.getLogger(__name__)


@dataclass
class ErrorContext:
    """Where an error happened. Every field is optional."""
    operation_id: str = "unknown"
    agent_type: str | None = None
    phase: str | int | None = None
    task_id: str | None = None
    attempt_number: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    additional_data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, context: "ErrorContext | Mapping[str, Any] | None") -> "ErrorContext":
        """Accept an ErrorContext, a plain mapping of its fields, or None."""
        if context is None:
            return cls()
        if isinstance(context, ErrorContext):
            return context
        known = {name for name in cls.__dataclass_fields__}
        fields = {k: v for k, v in context.items() if k in known}
        extra = {k: v for k, v in context.items() if k not in known}
        if extra:
            fields["additional_data"] = {**fields.get("additional_data", {}), **extra}
        return cls(**fields)


@dataclass
class RecoveryResult:
    """Outcome of handling an error: which action the caller should take."""
    success: bool
    action: RecoveryAction
    message: str
    error: ErrorClassification | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Checkpoint:
    """Deep snapshot of orchestrator state."""
    id: str
    state: Any
    description: str
    automatic: bool = True
    trigger: str | None = None
    phase: str | int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ErrorLog:
    """Serializable record of one error."""
    timestamp: datetime
    phase: str | int | None
    agent: str | None
    operation_id: str
    task_id: str | None
    error: str
    error_type: ErrorType
    category: ErrorCategory
    severity: ErrorSeverity
    stack: str | None = None
    additional_data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase,
            "agent": self.agent,
            "operation_id": self.operation_id,
            "task_id": self.task_id,
            "error": self.error,
            "error_type": self.error_type.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "stack": self.stack,
            "additional_data": self.additional_data,
        }


SEVERITY_LOG_LEVELS = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


class ErrorHandler:
    """Classifies agent errors and keeps a bounded ring of state checkpoints."""

    def __init__(self, max_checkpoints: int | None = None):
        if max_checkpoints is None:
            max_checkpoints = settings.max_checkpoints
        if max_checkpoints < 1:
            raise ValueError("max_checkpoints must be at least 1")
        self.max_checkpoints = max_checkpoints
        self._checkpoints: dict[str, Checkpoint] = {}
        self._sequence = 0

    # =========================================================================
    # Classification and recovery
    # =========================================================================

    def classify_error(self, error: BaseException | str) -> ErrorClassification:
        return classify_error(error)

    def handle_agent_error(
        self,
        error: BaseException | str,
        context: ErrorContext | Mapping[str, Any] | None = None,
    ) -> RecoveryResult:
        """Classify ``error`` and decide the recovery action.

        Nothing is recovered here; the result tells the caller what to do.
        """
        ctx = ErrorContext.coerce(context)
        classification = self.classify_error(error)
        classification.context = {
            "operation_id": ctx.operation_id,
            "agent_type": ctx.agent_type,
            "phase": ctx.phase,
            "task_id": ctx.task_id,
            "attempt_number": ctx.attempt_number,
        }

        self.log_error(error, ctx)

        action = classification.recovery_action
        messages = {
            RecoveryAction.RETRY_WITH_BACKOFF: f"{classification.error_type.value} error, retry with backoff",
            RecoveryAction.FAIL_IMMEDIATELY: "Fatal error, not retrying",
            RecoveryAction.PAUSE_WORKFLOW: "Conflict detected, workflow paused for human review",
        }

        return RecoveryResult(
            success=False,
            action=action,
            message=messages.get(action, f"Recovery action: {action.value}"),
            error=classification,
            metadata={
                "retryable": classification.retryable,
                "requires_human_intervention": classification.requires_human_intervention,
                "last_checkpoint": self._latest().id if self._checkpoints else None,
            },
        )

    def create_agent_error(
        self,
        message: str,
        error_type: ErrorType,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        agent_type: str | None = None,
        task_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AgentError:
        """Build a pre-classified AgentError (retryable unless FATAL or CONFLICT)."""
        return AgentError(
            message,
            error_type=error_type,
            category=category,
            agent_type=agent_type,
            task_id=task_id,
            metadata=metadata,
        )

    # =========================================================================
    # Checkpoints
    # =========================================================================

    def create_checkpoint(
        self,
        state: Any,
        description: str,
        automatic: bool = True,
        trigger: str | None = None,
        phase: str | int | None = None,
    ) -> Checkpoint:
        """Store a deep copy of ``state``; evicts the oldest checkpoint when full."""
        self._sequence += 1
        checkpoint = Checkpoint(
            id=f"checkpoint-{self._sequence}",
            state=copy.deepcopy(state),
            description=description,
            automatic=automatic,
            trigger=trigger,
            phase=phase,
        )
        self._checkpoints[checkpoint.id] = checkpoint

        while len(self._checkpoints) > self.max_checkpoints:
            oldest = next(iter(self._checkpoints))
            del self._checkpoints[oldest]
            logger.debug(f"Evicted checkpoint {oldest}")

        logger.info(f"Created checkpoint {checkpoint.id}: {description}")
        return checkpoint

    @contextmanager
    def checkpoint_scope(self, state: Any, description: str, phase: str | int | None = None) -> Iterator[Checkpoint]:
        """Take an automatic checkpoint before a risky block.

        Errors inside the block are logged and re-raised; rolling back is
        left to the caller, who receives the checkpoint.
        """
        checkpoint = self.create_checkpoint(state, description, automatic=True, trigger=description, phase=phase)
        try:
            yield checkpoint
        except Exception as e:
            self.log_error(e, ErrorContext(operation_id=description, phase=phase))
            raise

    def rollback(self, checkpoint_id: str) -> Any | None:
        """Deep copy of the state stored under ``checkpoint_id``, or None."""
        checkpoint = self._checkpoints.get(checkpoint_id)
        if checkpoint is None:
            logger.warning(f"Rollback requested for unknown checkpoint {checkpoint_id}")
            return None
        logger.info(f"Rolling back to {checkpoint_id}")
        return copy.deepcopy(checkpoint.state)

    def rollback_to_last_checkpoint(self) -> Checkpoint | None:
        """The most recently created checkpoint, or None."""
        if not self._checkpoints:
            return None
        return self._latest()

    def _latest(self) -> Checkpoint:
        return next(reversed(self._checkpoints.values()))

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        return self._checkpoints.get(checkpoint_id)

    def get_checkpoints(self) -> list[Checkpoint]:
        """Newest first."""
        return list(reversed(self._checkpoints.values()))

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        return self._checkpoints.pop(checkpoint_id, None) is not None

    def clear_checkpoints(self) -> None:
        self._checkpoints.clear()

    def get_statistics(self) -> dict[str, Any]:
        checkpoints = list(self._checkpoints.values())
        return {
            "total_checkpoints": len(checkpoints),
            "max_checkpoints": self.max_checkpoints,
            "automatic_checkpoints": sum(1 for c in checkpoints if c.automatic),
            "oldest_checkpoint": checkpoints[0].timestamp.isoformat() if checkpoints else None,
            "newest_checkpoint": checkpoints[-1].timestamp.isoformat() if checkpoints else None,
        }

    # =========================================================================
    # Error logs
    # =========================================================================

    def to_error_log(
        self,
        error: BaseException | str,
        context: ErrorContext | Mapping[str, Any] | None = None,
    ) -> ErrorLog:
        """Build a log record. Works with partial or missing context."""
        ctx = ErrorContext.coerce(context)
        classification = classify_error(error)

        stack = None
        if isinstance(error, BaseException) and error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        return ErrorLog(
            timestamp=ctx.timestamp,
            phase=ctx.phase,
            agent=ctx.agent_type,
            operation_id=ctx.operation_id,
            task_id=ctx.task_id,
            error=error_message(error),
            error_type=classification.error_type,
            category=classification.category,
            severity=classification.severity,
            stack=stack,
            additional_data=dict(ctx.additional_data),
        )

    def log_error(
        self,
        error: BaseException | str,
        context: ErrorContext | Mapping[str, Any] | None = None,
    ) -> ErrorLog:
        """Log an error at a level matching its severity."""
        entry = self.to_error_log(error, context)
        extra = {"operation_id": entry.operation_id, "error_type": entry.error_type.value}
        if entry.agent:
            extra["agent_type"] = entry.agent
        if entry.task_id:
            extra["task_id"] = entry.task_id

        logger.log(
            SEVERITY_LOG_LEVELS[entry.severity],
            f"{entry.error_type.value}/{entry.category.value} error in {entry.operation_id}: {entry.error}",
            extra=extra,
        )
        if entry.stack:
            logger.debug(f"Stack trace for {entry.operation_id}:\n{entry.stack}")
        return entry
