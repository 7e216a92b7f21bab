"""Plan Generator - synthesizes execution plans from parsed goals.

Each required capability contributes one or more task templates with a base
effort estimate. The resulting task DAG is analysed for dependency layers,
the critical path, milestones, parallelization opportunities and risk.
"""

import logging
import uuid
from dataclasses import dataclass, field

from orchestration.config import settings
from orchestration.planning.goal_parser import DEFAULT_CAPABILITIES, GoalParser
from orchestration.planning.models import (
    AgentType,
    ExecutionPlan,
    GoalComplexity,
    Milestone,
    ParallelizationOpportunity,
    ParsedGoal,
    PlanStatus,
    PlanValidationResult,
    RequiredCapability,
    Risk,
    RiskAssessment,
    RiskLevel,
    Task,
    TaskMetadata,
    TaskPhase,
    TaskPriority,
    ValidationIssue,
    max_risk,
    utc_now,
)
from orchestration.planning.task_graph import TaskGraph

logger = logging.getLogger(__name__)

Cap = RequiredCapability

COMPLEXITY_FACTORS = {
    GoalComplexity.SIMPLE: 0.75,
    GoalComplexity.MODERATE: 1.0,
    GoalComplexity.COMPLEX: 1.25,
    GoalComplexity.VERY_COMPLEX: 1.5,
}

MIN_TASK_MINUTES = 5

MILESTONE_PHASES = [
    (TaskPhase.FOUNDATION, "Foundation", "Data models and persistence in place"),
    (TaskPhase.CORE, "Core Implementation", "Business logic, security and integrations working"),
    (TaskPhase.EXPERIENCE, "Real-time & UI", "Client-facing experience delivered"),
    (TaskPhase.VERIFICATION, "Testing & Docs", "Behaviour verified and documented"),
]


@dataclass
class _TaskSpec:
    """A task before it has an ID; dependencies refer to other specs by key."""
    key: str
    name: str
    description: str
    agent: AgentType
    base_duration: int
    priority: TaskPriority
    phase: TaskPhase
    outputs: list[str]
    acceptance_criteria: list[str]
    depends_on: list[str] = field(default_factory=list)
    parallel: bool = True
    tags: list[str] = field(default_factory=list)


class PlanGenerator:
    """Builds ExecutionPlans from goals."""

    def __init__(self, parser: GoalParser | None = None):
        self.parser = parser or GoalParser()

    def generate_plan(self, goal: str) -> ExecutionPlan:
        """Parse ``goal`` and build a plan for it."""
        return self.generate_plan_from_parsed_goal(self.parser.parse_goal(goal))

    def generate_plan_from_parsed_goal(self, parsed_goal: ParsedGoal) -> ExecutionPlan:
        tasks = self.generate_tasks(parsed_goal)
        graph = TaskGraph(tasks)
        dependency_graph = graph.to_dependency_graph()
        _, duration = graph.critical_path()

        plan = ExecutionPlan(
            id=f"plan-{uuid.uuid4().hex[:12]}",
            goal=parsed_goal.original_goal,
            parsed_goal=parsed_goal,
            tasks=tasks,
            dependencies=dependency_graph,
            estimated_duration=duration,
            milestones=create_milestones(graph),
            parallelization_opportunities=find_parallelization_opportunities(graph, dependency_graph.layers),
            risk_assessment=assess_risks(parsed_goal, tasks, duration),
            status=PlanStatus.DRAFT,
        )

        logger.info(
            f"Generated plan with {len(tasks)} tasks, {len(dependency_graph.layers)} layers, "
            f"{duration} min critical path",
            extra={"plan_id": plan.id},
        )
        return plan

    # =========================================================================
    # Task synthesis
    # =========================================================================

    def generate_tasks(self, parsed_goal: ParsedGoal) -> list[Task]:
        """Concrete tasks for a goal, with dependencies resolved to task IDs."""
        specs = self._task_specs(parsed_goal)
        factor = COMPLEXITY_FACTORS[parsed_goal.estimated_complexity]

        ids = {spec.key: f"task-{index:03d}" for index, spec in enumerate(specs, start=1)}
        tasks = []
        for spec in specs:
            tasks.append(
                Task(
                    id=ids[spec.key],
                    name=spec.name,
                    description=spec.description,
                    agent_type=spec.agent,
                    dependencies=[ids[key] for key in spec.depends_on],
                    estimated_duration=max(MIN_TASK_MINUTES, round(spec.base_duration * factor)),
                    priority=spec.priority,
                    can_run_in_parallel=spec.parallel,
                    outputs=spec.outputs,
                    acceptance_criteria=spec.acceptance_criteria,
                    metadata=TaskMetadata(
                        phase=spec.phase,
                        complexity=parsed_goal.estimated_complexity,
                        tags=spec.tags,
                    ),
                )
            )
        return tasks

    def _task_specs(self, parsed_goal: ParsedGoal) -> list[_TaskSpec]:
        caps = set(parsed_goal.capabilities)
        meta = parsed_goal.metadata

        specs = self._functional_specs(parsed_goal, caps)
        if not specs:
            logger.debug("No functional capabilities in goal, using default API tasks")
            specs = self._functional_specs(parsed_goal, caps | set(DEFAULT_CAPABILITIES))

        functional = [spec.key for spec in specs]
        keys = set(functional)

        def add(spec: _TaskSpec) -> None:
            spec.depends_on = [key for key in spec.depends_on if key in keys]
            specs.append(spec)
            keys.add(spec.key)

        if Cap.DOCUMENTATION in caps or meta.requires_documentation:
            add(_TaskSpec(
                key="docs",
                name="Write Documentation",
                description="Document usage, configuration and operational notes",
                agent=AgentType.DOCUMENTATION,
                base_duration=45,
                priority=TaskPriority.LOW,
                phase=TaskPhase.VERIFICATION,
                outputs=["Documentation"],
                acceptance_criteria=["Every public operation is documented"],
                depends_on=functional,
                tags=["docs"],
            ))

        unit_covers = [k for k in functional if k in ("service", "auth", "rbac", "websocket") or k.startswith("integration:")]
        add(_TaskSpec(
            key="unit_tests",
            name="Write Unit Tests",
            description="Cover business logic and security rules with unit tests",
            agent=AgentType.TEST,
            base_duration=60,
            priority=TaskPriority.HIGH,
            phase=TaskPhase.VERIFICATION,
            outputs=["Unit test suite"],
            acceptance_criteria=["Business rules have passing tests", "Failure paths are covered"],
            depends_on=unit_covers or functional,
            tags=["testing"],
        ))

        integration_covers = [
            k for k in functional
            if k in ("controllers", "validation", "websocket", "ui") or k.startswith("integration:")
        ]
        add(_TaskSpec(
            key="integration_tests",
            name="Write Integration Tests",
            description="Exercise the delivered feature end to end",
            agent=AgentType.TEST,
            base_duration=75,
            priority=TaskPriority.MEDIUM,
            phase=TaskPhase.VERIFICATION,
            outputs=["Integration test suite"],
            acceptance_criteria=["Main user flows pass end to end"],
            depends_on=integration_covers or functional,
            tags=["testing"],
        ))

        return specs

    def _functional_specs(self, parsed_goal: ParsedGoal, caps: set[RequiredCapability]) -> list[_TaskSpec]:
        """Tasks that deliver the goal itself, before docs and tests."""
        meta = parsed_goal.metadata
        resources = [e.name for e in parsed_goal.entities_of("resource")]
        subject = resources[0] if resources else "the domain"

        specs: list[_TaskSpec] = []
        keys: set[str] = set()

        def add(spec: _TaskSpec) -> None:
            spec.depends_on = [key for key in spec.depends_on if key in keys]
            specs.append(spec)
            keys.add(spec.key)

        if caps & {Cap.DATABASE, Cap.CRUD} or meta.requires_database:
            add(_TaskSpec(
                key="models",
                name="Define Data Models",
                description=f"Define data models and relationships for {subject}",
                agent=AgentType.MODELS,
                base_duration=30,
                priority=TaskPriority.CRITICAL,
                phase=TaskPhase.FOUNDATION,
                outputs=["Data model definitions"],
                acceptance_criteria=["Models cover every field the goal needs", "Relationships are declared"],
                parallel=False,
                tags=["models"],
            ))
            add(_TaskSpec(
                key="schema",
                name="Create Database Schema",
                description="Create the database schema and migrations for the data models",
                agent=AgentType.DATABASE,
                base_duration=45,
                priority=TaskPriority.CRITICAL,
                phase=TaskPhase.FOUNDATION,
                outputs=["Schema migration"],
                acceptance_criteria=["Migration applies cleanly", "Indexes exist for lookup fields"],
                depends_on=["models"],
                parallel=False,
                tags=["database"],
            ))

        if caps & {Cap.API, Cap.CRUD}:
            add(_TaskSpec(
                key="service",
                name="Implement Service Layer",
                description=f"Implement business logic and data access for {subject}",
                agent=AgentType.API,
                base_duration=45,
                priority=TaskPriority.HIGH,
                phase=TaskPhase.CORE,
                outputs=["Service layer module"],
                acceptance_criteria=["Business rules enforced in one place", "Data access isolated from transport"],
                depends_on=["models", "schema"],
                tags=["api"],
            ))
            add(_TaskSpec(
                key="controllers",
                name="Implement API Controllers",
                description=f"Expose {subject} operations through API endpoints",
                agent=AgentType.API,
                base_duration=60,
                priority=TaskPriority.HIGH,
                phase=TaskPhase.CORE,
                outputs=["API endpoints", "Request and response schemas"],
                acceptance_criteria=["Endpoints return documented status codes", "Errors use a consistent format"],
                depends_on=["service"],
                tags=["api"],
            ))

        if Cap.AUTHENTICATION in caps:
            add(_TaskSpec(
                key="auth",
                name="Implement Authentication",
                description="Implement user authentication with secure credential handling",
                agent=AgentType.AUTH,
                base_duration=90,
                priority=TaskPriority.CRITICAL,
                phase=TaskPhase.CORE,
                outputs=["Authentication flow", "Token or session handling"],
                acceptance_criteria=["Credentials are never stored in plain text", "Invalid credentials are rejected"],
                depends_on=["models"],
                parallel=False,
                tags=["security"],
            ))

        if Cap.AUTHORIZATION in caps:
            add(_TaskSpec(
                key="rbac",
                name="Implement RBAC",
                description="Implement role-based access control for protected operations",
                agent=AgentType.RBAC,
                base_duration=75,
                priority=TaskPriority.HIGH,
                phase=TaskPhase.CORE,
                outputs=["Role and permission model", "Access checks"],
                acceptance_criteria=["Protected operations check permissions", "Denied access is logged"],
                depends_on=["auth"] if "auth" in keys else ["models"],
                parallel=False,
                tags=["security"],
            ))

        if Cap.VALIDATION in caps:
            add(_TaskSpec(
                key="validation",
                name="Add Input Validation",
                description="Validate and sanitize every external input",
                agent=AgentType.QUALITY,
                base_duration=45,
                priority=TaskPriority.HIGH,
                phase=TaskPhase.CORE,
                outputs=["Validation rules"],
                acceptance_criteria=["Invalid input is rejected with a clear message"],
                depends_on=["controllers"],
                tags=["quality"],
            ))

        if caps & {Cap.REAL_TIME, Cap.WEBSOCKET}:
            add(_TaskSpec(
                key="websocket",
                name="Implement WebSocket Server",
                description="Push real-time updates to connected clients",
                agent=AgentType.REALTIME,
                base_duration=60,
                priority=TaskPriority.MEDIUM,
                phase=TaskPhase.EXPERIENCE,
                outputs=["WebSocket server", "Event payload definitions"],
                acceptance_criteria=["Clients receive updates without polling", "Dropped connections are cleaned up"],
                depends_on=["controllers"],
                tags=["realtime"],
            ))

        if Cap.UI in caps or meta.requires_ui:
            add(_TaskSpec(
                key="ui",
                name="Build User Interface",
                description="Build the user interface on top of the API",
                agent=AgentType.UI,
                base_duration=120,
                priority=TaskPriority.MEDIUM,
                phase=TaskPhase.EXPERIENCE,
                outputs=["UI components"],
                acceptance_criteria=["Views render every API state", "Forms surface validation errors"],
                depends_on=["controllers"],
                tags=["ui"],
            ))

        if Cap.INTEGRATION in caps or meta.is_integration:
            systems = [e.name for e in parsed_goal.entities_of("integration")]
            for system in systems or [None]:
                label = system.title() if system else "External System"
                add(_TaskSpec(
                    key=f"integration:{system or 'external'}",
                    name=f"Integrate with {label}" if system else "Implement External Integration",
                    description=f"Connect to {label} and map its data into the domain",
                    agent=AgentType.INTEGRATION,
                    base_duration=90,
                    priority=TaskPriority.MEDIUM,
                    phase=TaskPhase.CORE,
                    outputs=[f"{label} client"],
                    acceptance_criteria=["Failures of the external service are handled", "Credentials come from configuration"],
                    depends_on=["service"],
                    tags=["integration"],
                ))

        return specs

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_plan(self, plan: ExecutionPlan) -> PlanValidationResult:
        """Check a plan for structural errors, warnings and suggestions."""
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []
        suggestions: list[ValidationIssue] = []

        seen: set[str] = set()
        for task in plan.tasks:
            if task.id in seen:
                errors.append(ValidationIssue(
                    type="duplicate_task",
                    message=f"Duplicate task ID: {task.id}",
                    task_id=task.id,
                ))
            seen.add(task.id)

        graph = TaskGraph(plan.tasks)

        for task_id, dep_id in graph.missing_dependencies():
            errors.append(ValidationIssue(
                type="missing_dependency",
                message=f"Task {task_id} depends on unknown task {dep_id}",
                task_id=task_id,
            ))

        cycle = graph.find_cycle()
        if cycle:
            errors.append(ValidationIssue(
                type="circular_dependency",
                message=f"Circular dependency detected: {' -> '.join(cycle)}",
                task_id=cycle[0],
            ))

        if plan.estimated_duration > settings.max_plan_duration_minutes:
            warnings.append(ValidationIssue(
                type="duration",
                message=(
                    f"Estimated duration {plan.estimated_duration} min exceeds "
                    f"{settings.max_plan_duration_minutes} min; consider splitting the goal"
                ),
                severity="warning",
            ))

        if not errors:
            for index, layer in enumerate(graph.execution_levels()):
                serialized = [t for t in layer if not graph.tasks[t].can_run_in_parallel]
                if len(layer) >= 2 and serialized:
                    suggestions.append(ValidationIssue(
                        type="parallelization",
                        message=(
                            f"Layer {index} has {len(layer)} independent tasks but "
                            f"{', '.join(serialized)} {'is' if len(serialized) == 1 else 'are'} not marked parallel"
                        ),
                        severity="suggestion",
                    ))

        if errors:
            logger.warning(f"Plan validation failed with {len(errors)} errors", extra={"plan_id": plan.id})

        return PlanValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            suggestions=suggestions,
        )


# =============================================================================
# Plan analysis
# =============================================================================


def find_parallelization_opportunities(
    graph: TaskGraph,
    layers: list[list[str]],
) -> list[ParallelizationOpportunity]:
    """One opportunity per layer holding two or more parallel-eligible tasks."""
    opportunities = []
    for index, layer in enumerate(layers):
        eligible = [graph.tasks[t] for t in layer if graph.tasks[t].can_run_in_parallel]
        if len(eligible) < 2:
            continue

        durations = [t.estimated_duration for t in eligible]
        saved = sum(durations) - max(durations)
        if saved <= 0:
            continue

        opportunities.append(ParallelizationOpportunity(
            task_ids=[t.id for t in eligible],
            estimated_time_saved=saved,
            reason=f"{len(eligible)} independent tasks in layer {index}: {', '.join(t.name for t in eligible)}",
            risk_level=RiskLevel.MEDIUM if any(t.is_security_sensitive for t in eligible) else RiskLevel.LOW,
        ))
    return opportunities


def create_milestones(graph: TaskGraph) -> list[Milestone]:
    """Group tasks into phase milestones; empty phases are left out."""
    finish = graph.earliest_finish()
    milestones: list[Milestone] = []

    grouped = [
        (name, description, [t.id for t in graph.tasks.values() if t.metadata.phase == phase])
        for phase, name, description in MILESTONE_PHASES
    ]
    grouped = [group for group in grouped if group[2]]

    for index, (name, description, task_ids) in enumerate(grouped):
        members = set(task_ids)
        later = {t for _, _, ids in grouped[index + 1:] for t in ids}
        depended_on = any(graph.get_dependencies(t) & members for t in later)
        security = any(graph.tasks[t].is_security_sensitive for t in task_ids)

        milestones.append(Milestone(
            id=f"milestone-{index + 1}",
            name=name,
            description=description,
            tasks=task_ids,
            completion_criteria=[f"{graph.tasks[t].name} completed" for t in task_ids],
            estimated_completion_minutes=max(finish[t] for t in task_ids),
            is_blocking=security or depended_on,
        ))
    return milestones


def assess_risks(parsed_goal: ParsedGoal, tasks: list[Task], duration: int) -> RiskAssessment:
    risks: list[Risk] = []
    caps = set(parsed_goal.capabilities)

    if caps & {Cap.AUTHENTICATION, Cap.AUTHORIZATION} or any(t.is_security_sensitive for t in tasks):
        risks.append(Risk(
            type="security",
            description="Authentication or access-control mistakes expose user data",
            mitigation="Security review before release, proven auth libraries, negative-path tests",
            severity=RiskLevel.HIGH,
            probability=0.5,
            impact=0.9,
        ))

    for task in tasks:
        if task.agent_type == AgentType.INTEGRATION:
            risks.append(Risk(
                type="external_dependency",
                description=f"{task.name} relies on a service outside our control",
                mitigation="Contract tests, retries with backoff and a fallback when the service is down",
                severity=RiskLevel.MEDIUM,
                probability=0.6,
                impact=0.7,
            ))

    very_complex = parsed_goal.estimated_complexity == GoalComplexity.VERY_COMPLEX
    if very_complex or duration > settings.long_plan_risk_minutes:
        risks.append(Risk(
            type="complexity",
            description=f"Large scope: {len(tasks)} tasks over {duration} min on the critical path",
            mitigation="Deliver milestone by milestone with checkpoints between them",
            severity=RiskLevel.HIGH if very_complex else RiskLevel.MEDIUM,
            probability=0.7,
            impact=0.8,
        ))

    return RiskAssessment(overall_risk=max_risk([r.severity for r in risks]), risks=risks)


def refresh_plan(plan: ExecutionPlan) -> ExecutionPlan:
    """Recompute derived plan data after its tasks changed. Mutates ``plan``."""
    graph = TaskGraph(plan.tasks)
    plan.dependencies = graph.to_dependency_graph()
    plan.estimated_duration = graph.critical_path()[1]
    plan.milestones = create_milestones(graph)
    plan.parallelization_opportunities = find_parallelization_opportunities(graph, plan.dependencies.layers)
    plan.updated_at = utc_now()
    return plan
