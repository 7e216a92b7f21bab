"""Planning Engine - one entry point from goal text to an executable plan.

Wires the goal parser, plan generator and optimizer together, and routes
task errors through the error handler into plan adaptations.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from orchestration.planning.models import (
    AdaptationTrigger,
    ExecutionContext,
    ExecutionPlan,
    OptimizationStrategy,
    PlanAdaptation,
    PlanValidationResult,
    StrategyParameters,
    StrategyType,
    Task,
)
from orchestration.planning.optimizer import ExecutionOptimizer
from orchestration.planning.plan_generator import PlanGenerator
from orchestration.resilience.error_handler import ErrorContext, ErrorHandler, RecoveryResult
from orchestration.resilience.errors import ErrorType

logger = logging.getLogger(__name__)


@dataclass
class PlanningResult:
    plan: ExecutionPlan
    validation: PlanValidationResult
    execution_order: list[list[Task]]


class PlanningEngine:
    """Goal in, validated and ordered plan out."""

    def __init__(
        self,
        generator: PlanGenerator | None = None,
        optimizer: ExecutionOptimizer | None = None,
        error_handler: ErrorHandler | None = None,
    ):
        self.generator = generator or PlanGenerator()
        self.optimizer = optimizer or ExecutionOptimizer()
        self.error_handler = error_handler or ErrorHandler()

    def create_plan(
        self,
        goal: str,
        strategy: StrategyType | None = None,
        max_parallel_tasks: int | None = None,
    ) -> PlanningResult:
        plan = self.generator.generate_plan(goal)
        if strategy is not None:
            plan = self.optimizer.optimize_plan(
                plan,
                OptimizationStrategy(
                    strategy=strategy,
                    parameters=StrategyParameters(max_parallel_tasks=max_parallel_tasks),
                ),
            )

        validation = self.generator.validate_plan(plan)
        order = self.optimizer.get_execution_order(plan, max_parallel_tasks) if validation.is_valid else []

        logger.info(
            f"Planned '{goal}': {len(plan.tasks)} tasks in {len(order)} waves, valid={validation.is_valid}",
            extra={"plan_id": plan.id},
        )
        return PlanningResult(plan=plan, validation=validation, execution_order=order)

    def handle_task_error(
        self,
        plan: ExecutionPlan,
        error: BaseException | str,
        context: ExecutionContext | None = None,
        error_context: ErrorContext | Mapping[str, Any] | None = None,
    ) -> tuple[RecoveryResult, ExecutionPlan, PlanAdaptation]:
        """Classify a task error and adapt the plan to it.

        Conflicts block everything downstream of the task; other errors go
        through task-failure adaptation. The plan is checkpointed first.
        """
        context = context or ExecutionContext(plan_id=plan.id)
        ctx = ErrorContext.coerce(error_context)
        if ctx.task_id is None:
            ctx.task_id = context.current_task

        recovery = self.error_handler.handle_agent_error(error, ctx)
        checkpoint = self.error_handler.create_checkpoint(
            plan,
            f"Before adapting plan {plan.id}",
            automatic=True,
            trigger="task_error",
        )
        recovery.metadata["checkpoint_id"] = checkpoint.id

        if recovery.error is not None and recovery.error.error_type == ErrorType.CONFLICT:
            trigger = AdaptationTrigger.CONFLICT_DETECTED
            if ctx.task_id and context.current_task is None:
                context = context.model_copy(update={"current_task": ctx.task_id})
        else:
            trigger = AdaptationTrigger.TASK_FAILURE
            if ctx.task_id and ctx.task_id not in context.failed_tasks:
                context = context.model_copy(update={"failed_tasks": [*context.failed_tasks, ctx.task_id]})

        adapted, adaptation = self.optimizer.adapt_plan(plan, context, trigger, reason=recovery.message)
        return recovery, adapted, adaptation
