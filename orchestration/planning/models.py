"""Planning models - Pydantic models for goals, plans and adaptations.

These models are the contract shared by the goal parser, the plan generator
and the execution optimizer. They serialize with camelCase aliases
(``model_dump(by_alias=True)``) so stored or transmitted plans keep the
field names used by the rest of the orchestration platform.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PlanModel(BaseModel):
    """Base for planning models: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Enumerations
# =============================================================================


class AgentType(str, Enum):
    """Opaque capability tags of the downstream agents."""
    API = "agent-api"
    MODELS = "agent-models"
    TEST = "agent-test"
    REALTIME = "agent-realtime"
    QUALITY = "agent-quality"
    INTEGRATION = "agent-integration"
    SECURITY = "agent-security"
    AUTH = "agent-auth"
    RBAC = "agent-rbac"
    DATABASE = "agent-database"
    UI = "agent-ui"
    DOCUMENTATION = "agent-documentation"


class RequiredCapability(str, Enum):
    """Capabilities a goal can require."""
    CRUD = "crud"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    REAL_TIME = "real_time"
    TESTING = "testing"
    INTEGRATION = "integration"
    SECURITY = "security"
    DATABASE = "database"
    UI = "ui"
    DOCUMENTATION = "documentation"
    API = "api"
    WEBSOCKET = "websocket"
    CACHING = "caching"
    LOGGING = "logging"


class GoalIntent(str, Enum):
    BUILD = "build"
    ADD = "add"
    IMPROVE = "improve"
    FIX = "fix"


class GoalComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class TaskPriority(str, Enum):
    """Task priority levels."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Higher rank wins ties when choosing between equally long paths
PRIORITY_RANK = {
    TaskPriority.CRITICAL: 3,
    TaskPriority.HIGH: 2,
    TaskPriority.MEDIUM: 1,
    TaskPriority.LOW: 0,
}


class TaskPhase(str, Enum):
    """Delivery phase a task belongs to, used to group milestones."""
    FOUNDATION = "foundation"
    CORE = "core"
    EXPERIENCE = "experience"
    VERIFICATION = "verification"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


def max_risk(levels: list[RiskLevel]) -> RiskLevel:
    """Highest severity among ``levels``; LOW when empty."""
    if not levels:
        return RiskLevel.LOW
    return max(levels, key=lambda level: RISK_RANK[level])


def lower_risk(level: RiskLevel) -> RiskLevel:
    """One severity step down, never below LOW."""
    rank = max(RISK_RANK[level] - 1, 0)
    return next(lvl for lvl, r in RISK_RANK.items() if r == rank)


class PlanStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StrategyType(str, Enum):
    MINIMIZE_DURATION = "minimize_duration"
    MINIMIZE_RISK = "minimize_risk"
    MAXIMIZE_PARALLELIZATION = "maximize_parallelization"
    BALANCED = "balanced"


class AdaptationTrigger(str, Enum):
    TASK_FAILURE = "task_failure"
    CONFLICT_DETECTED = "conflict_detected"
    TIME_OVERRUN = "time_overrun"
    DEPENDENCY_CHANGE = "dependency_change"
    MANUAL = "manual"


class RiskChange(str, Enum):
    INCREASED = "increased"
    DECREASED = "decreased"
    UNCHANGED = "unchanged"


# =============================================================================
# Goals
# =============================================================================


class GoalEntity(PlanModel):
    """A named thing extracted from the goal text."""
    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="resource, feature, integration or security")
    name: str


class GoalMetadata(PlanModel):
    model_config = ConfigDict(frozen=True)

    requires_auth: bool = False
    requires_database: bool = False
    requires_ui: bool = False
    requires_testing: bool = False
    requires_documentation: bool = False
    is_integration: bool = False
    affects_existing_code: bool = False


class ParsedGoal(PlanModel):
    """Structured interpretation of a free-text goal. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    original_goal: str
    normalized_goal: str = ""
    intent: GoalIntent = GoalIntent.BUILD
    capabilities: list[RequiredCapability] = Field(default_factory=list)
    entities: list[GoalEntity] = Field(default_factory=list)
    estimated_complexity: GoalComplexity = GoalComplexity.MODERATE
    suggested_agents: list[AgentType] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    metadata: GoalMetadata = Field(default_factory=GoalMetadata)

    @field_validator("capabilities", "suggested_agents")
    @classmethod
    def deduplicate(cls, v: list) -> list:
        """Keep first occurrence order, drop repeats."""
        return list(dict.fromkeys(v))

    def has_capability(self, capability: RequiredCapability) -> bool:
        return capability in self.capabilities

    def entities_of(self, entity_type: str) -> list[GoalEntity]:
        return [e for e in self.entities if e.type == entity_type]


@dataclass
class GoalTemplate:
    """A recognizable goal phrasing with its canonical decomposition.

    Named groups in ``pattern`` (``resource``, ``feature``, ``system``)
    become entities of the parsed goal.
    """
    id: str
    name: str
    pattern: re.Pattern[str]
    intent: GoalIntent
    capabilities: list[RequiredCapability]
    complexity: GoalComplexity
    suggested_agents: list[AgentType] = field(default_factory=list)
    description: str = ""


# =============================================================================
# Plans
# =============================================================================


class TaskMetadata(PlanModel):
    phase: TaskPhase = TaskPhase.CORE
    complexity: GoalComplexity = GoalComplexity.MODERATE
    tags: list[str] = Field(default_factory=list)


class Task(PlanModel):
    """A single unit of work assigned to one agent."""
    id: str = Field(..., description="Unique task identifier (e.g., 'task-001')")
    name: str = Field(..., max_length=200)
    description: str = ""
    agent_type: AgentType
    dependencies: list[str] = Field(default_factory=list, description="IDs of tasks that must finish first")
    estimated_duration: int = Field(..., gt=0, description="Minutes")
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    can_run_in_parallel: bool = True
    outputs: list[str] = Field(..., min_length=1)
    acceptance_criteria: list[str] = Field(..., min_length=1)
    metadata: TaskMetadata = Field(default_factory=TaskMetadata)

    @field_validator("dependencies")
    @classmethod
    def validate_no_self_dependency(cls, v: list[str], info) -> list[str]:
        """Ensure task doesn't depend on itself."""
        task_id = info.data.get("id")
        if task_id and task_id in v:
            raise ValueError(f"Task cannot depend on itself: {task_id}")
        return v

    @property
    def is_security_sensitive(self) -> bool:
        return self.agent_type in (AgentType.AUTH, AgentType.RBAC, AgentType.SECURITY)


class TaskDependency(PlanModel):
    """Edge ``from_task_id`` -> ``to_task_id``: the target waits for the source.

    Serialized as ``{"from": ..., "to": ...}``; ``fromTaskId``/``toTaskId`` are
    still accepted on input.
    """
    from_task_id: str = Field(
        ...,
        validation_alias=AliasChoices("from", "fromTaskId", "from_task_id"),
        serialization_alias="from",
    )
    to_task_id: str = Field(
        ...,
        validation_alias=AliasChoices("to", "toTaskId", "to_task_id"),
        serialization_alias="to",
    )
    type: str = "requires"
    reason: str = ""


class DependencyGraph(PlanModel):
    nodes: list[str] = Field(default_factory=list, description="Task IDs in plan order")
    edges: list[TaskDependency] = Field(default_factory=list)
    layers: list[list[str]] = Field(default_factory=list)
    critical_path: list[str] = Field(default_factory=list)


class Milestone(PlanModel):
    id: str
    name: str
    description: str = ""
    tasks: list[str] = Field(..., min_length=1)
    completion_criteria: list[str] = Field(default_factory=list)
    estimated_completion_minutes: int = Field(default=0, description="Earliest finish offset from plan start")
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    is_blocking: bool = False


class ParallelizationOpportunity(PlanModel):
    task_ids: list[str] = Field(..., min_length=2)
    estimated_time_saved: int = Field(..., gt=0, description="Minutes")
    reason: str = ""
    risk_level: RiskLevel = RiskLevel.LOW


class Risk(PlanModel):
    type: str = Field(..., description="security, external_dependency, complexity, schedule")
    description: str
    mitigation: str
    severity: RiskLevel
    probability: float = Field(default=0.5, ge=0.0, le=1.0)
    impact: float = Field(default=0.5, ge=0.0, le=1.0)


class RiskAssessment(PlanModel):
    overall_risk: RiskLevel = RiskLevel.LOW
    risks: list[Risk] = Field(default_factory=list)


class ExecutionPlan(PlanModel):
    """A task DAG with its schedule, milestones and risk profile."""
    id: str
    goal: str
    parsed_goal: ParsedGoal
    tasks: list[Task] = Field(default_factory=list)
    dependencies: DependencyGraph = Field(default_factory=DependencyGraph)
    estimated_duration: int = Field(default=0, ge=0, description="Minutes along the critical path")
    milestones: list[Milestone] = Field(default_factory=list)
    parallelization_opportunities: list[ParallelizationOpportunity] = Field(default_factory=list)
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    status: PlanStatus = PlanStatus.DRAFT

    def get_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def get_root_tasks(self) -> list[Task]:
        """Tasks with no dependencies (can start immediately)."""
        return [t for t in self.tasks if not t.dependencies]

    def get_dependents(self, task_id: str) -> list[Task]:
        """Tasks that directly depend on ``task_id``."""
        return [t for t in self.tasks if task_id in t.dependencies]


# =============================================================================
# Optimization and adaptation
# =============================================================================


class StrategyParameters(PlanModel):
    max_parallel_tasks: int | None = Field(default=None, ge=1)
    risk_tolerance: RiskLevel = RiskLevel.MEDIUM


class OptimizationStrategy(PlanModel):
    strategy: StrategyType = StrategyType.BALANCED
    parameters: StrategyParameters = Field(default_factory=StrategyParameters)


class ExecutionMetrics(PlanModel):
    """Runtime telemetry reported by the executor."""
    total_tasks: int = Field(default=0, ge=0)
    completed_tasks: int = Field(default=0, ge=0)
    failed_tasks: int = Field(default=0, ge=0)
    skipped_tasks: int = Field(default=0, ge=0)
    average_task_duration: float = Field(default=0.0, ge=0.0, description="Minutes")
    plan_progress: float = Field(default=0.0, ge=0.0, le=100.0, description="Percent complete")
    estimated_time_remaining: float = Field(default=0.0, ge=0.0, description="Minutes")


class ActiveAgent(PlanModel):
    agent_type: AgentType
    task_id: str
    start_time: datetime = Field(default_factory=utc_now)


class ExecutionEvent(PlanModel):
    timestamp: datetime = Field(default_factory=utc_now)
    type: str
    task_id: str | None = None
    message: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExecutionContext(PlanModel):
    """Snapshot of a running plan. Every field is optional."""
    plan_id: str = ""
    current_task: str | None = None
    completed_tasks: list[str] = Field(default_factory=list)
    failed_tasks: list[str] = Field(default_factory=list)
    blocked_tasks: list[str] = Field(default_factory=list)
    active_agents: list[ActiveAgent] = Field(default_factory=list)
    start_time: datetime | None = None
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    events: list[ExecutionEvent] = Field(default_factory=list)


class PlanChanges(PlanModel):
    model_config = ConfigDict(frozen=True)

    tasks_added: list[str] = Field(default_factory=list)
    tasks_removed: list[str] = Field(default_factory=list)
    tasks_modified: list[dict[str, Any]] = Field(default_factory=list)
    dependencies_added: list[TaskDependency] = Field(default_factory=list)
    dependencies_removed: list[TaskDependency] = Field(default_factory=list)


class AdaptationImpact(PlanModel):
    model_config = ConfigDict(frozen=True)

    estimated_duration_change: int = 0
    tasks_affected: int = 0
    risk_change: RiskChange = RiskChange.UNCHANGED


class PlanAdaptation(PlanModel):
    """Immutable audit record of one runtime change to a plan."""
    model_config = ConfigDict(frozen=True)

    id: str
    plan_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    trigger: AdaptationTrigger
    description: str
    reason: str = ""
    changes: PlanChanges = Field(default_factory=PlanChanges)
    impact: AdaptationImpact = Field(default_factory=AdaptationImpact)


class ComparisonMetrics(PlanModel):
    duration: list[int] = Field(default_factory=list)
    risk: list[RiskLevel] = Field(default_factory=list)
    parallelization: list[float] = Field(default_factory=list, description="Percent of tasks parallel-eligible")


class Recommendation(PlanModel):
    best_plan_id: str
    reason: str
    tradeoffs: list[str] = Field(default_factory=list)


class PlanComparison(PlanModel):
    plans: list[ExecutionPlan]
    comparison: ComparisonMetrics
    recommendation: Recommendation


# =============================================================================
# Validation
# =============================================================================


class ValidationIssue(PlanModel):
    type: str = Field(..., description="circular_dependency, missing_dependency, duration, parallelization")
    message: str
    task_id: str | None = None
    severity: str = "error"


class PlanValidationResult(PlanModel):
    is_valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    suggestions: list[ValidationIssue] = Field(default_factory=list)
