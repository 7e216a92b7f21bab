"""Planning - goal parsing, plan generation and optimization."""

from orchestration.planning.engine import PlanningEngine, PlanningResult
from orchestration.planning.goal_parser import GoalParser
from orchestration.planning.models import (
    AdaptationTrigger,
    ExecutionContext,
    ExecutionPlan,
    OptimizationStrategy,
    ParsedGoal,
    PlanAdaptation,
    StrategyType,
    Task,
)
from orchestration.planning.optimizer import ExecutionOptimizer
from orchestration.planning.plan_generator import PlanGenerator
from orchestration.planning.task_graph import TaskGraph

__all__ = [
    "AdaptationTrigger",
    "ExecutionContext",
    "ExecutionOptimizer",
    "ExecutionPlan",
    "GoalParser",
    "OptimizationStrategy",
    "ParsedGoal",
    "PlanAdaptation",
    "PlanGenerator",
    "PlanningEngine",
    "PlanningResult",
    "StrategyType",
    "Task",
    "TaskGraph",
]
