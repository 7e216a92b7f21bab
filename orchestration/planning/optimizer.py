"""Execution Optimizer - strategy-driven plan rewrites and runtime adaptation.

Strategies never touch the plan they are given: each returns a deep copy
with the same ID, re-derived schedule data and a fresh ``updated_at``.

Durations are measured with :meth:`TaskGraph.simulate_schedule`, so every
strategy is compared on the same model: parallel-eligible tasks share a
bounded number of slots, the rest run alone.
"""

import logging
import uuid

from orchestration.config import settings
from orchestration.planning.models import (
    RISK_RANK,
    AdaptationImpact,
    AdaptationTrigger,
    AgentType,
    ComparisonMetrics,
    ExecutionContext,
    ExecutionPlan,
    OptimizationStrategy,
    PlanAdaptation,
    PlanChanges,
    PlanComparison,
    Recommendation,
    Risk,
    RiskChange,
    RiskLevel,
    StrategyParameters,
    StrategyType,
    Task,
    TaskDependency,
    TaskPriority,
    TaskStatus,
    lower_risk,
    utc_now,
)
from orchestration.planning.plan_generator import refresh_plan
from orchestration.planning.task_graph import TaskGraph

logger = logging.getLogger(__name__)

DURATION_WEIGHT = 0.5
RISK_WEIGHT = 0.5

FAST_TRACK_AGENTS = (AgentType.TEST, AgentType.DOCUMENTATION)


def _cap_or(params: StrategyParameters, default: int) -> int:
    return default if params.max_parallel_tasks is None else params.max_parallel_tasks


class ExecutionOptimizer:
    """Rewrites plans for an objective and adapts running plans."""

    # =========================================================================
    # Strategies
    # =========================================================================

    def optimize_plan(self, plan: ExecutionPlan, strategy: OptimizationStrategy | None = None) -> ExecutionPlan:
        """Return an optimized copy of ``plan``."""
        strategy = strategy or OptimizationStrategy()
        params = strategy.parameters

        handlers = {
            StrategyType.MINIMIZE_DURATION: self._minimize_duration,
            StrategyType.MINIMIZE_RISK: self._minimize_risk,
            StrategyType.MAXIMIZE_PARALLELIZATION: self._maximize_parallelization,
            StrategyType.BALANCED: self._balanced,
        }
        optimized = handlers[strategy.strategy](plan.model_copy(deep=True), params)

        logger.info(
            f"Optimized plan with {strategy.strategy.value}: "
            f"{plan.estimated_duration} -> {optimized.estimated_duration} min, "
            f"risk {plan.risk_assessment.overall_risk.value} -> {optimized.risk_assessment.overall_risk.value}",
            extra={"plan_id": plan.id},
        )
        return optimized

    def _minimize_duration(self, plan: ExecutionPlan, params: StrategyParameters) -> ExecutionPlan:
        # No cap and every task eligible: the makespan is the critical path
        for task in plan.tasks:
            task.can_run_in_parallel = True
        refresh_plan(plan)
        return plan

    def _minimize_risk(self, plan: ExecutionPlan, params: StrategyParameters) -> ExecutionPlan:
        cap = self._risk_cap(params)
        self._serialize_risky_tasks(plan, include_critical_path=True)
        refresh_plan(plan)
        plan.estimated_duration = TaskGraph(plan.tasks).simulate_schedule(cap)

        assessment = plan.risk_assessment
        assessment.overall_risk = lower_risk(assessment.overall_risk)
        assessment.risks.append(Risk(
            type="schedule",
            description="Security-sensitive and critical-path tasks run one at a time",
            mitigation=f"At most {cap} tasks run concurrently; failures surface before dependents start",
            severity=RiskLevel.LOW,
            probability=0.3,
            impact=0.3,
        ))
        return plan

    def _maximize_parallelization(self, plan: ExecutionPlan, params: StrategyParameters) -> ExecutionPlan:
        cap = _cap_or(params, settings.max_parallel_cap)
        for task in plan.tasks:
            task.can_run_in_parallel = True
        refresh_plan(plan)
        plan.estimated_duration = TaskGraph(plan.tasks).simulate_schedule(cap)
        return plan

    def _balanced(self, plan: ExecutionPlan, params: StrategyParameters) -> ExecutionPlan:
        cap = _cap_or(params, settings.default_max_parallel_tasks)
        fastest = self._minimize_duration(plan.model_copy(deep=True), params).estimated_duration
        safest = self._minimize_risk(plan.model_copy(deep=True), params).estimated_duration

        for task in plan.tasks:
            task.can_run_in_parallel = True
        self._serialize_risky_tasks(plan, include_critical_path=params.risk_tolerance == RiskLevel.LOW)
        refresh_plan(plan)

        simulated = TaskGraph(plan.tasks).simulate_schedule(cap)
        # Never faster than the duration-first plan, never slower than the risk-first plan
        plan.estimated_duration = min(max(simulated, fastest), safest)
        return plan

    @staticmethod
    def _risk_cap(params: StrategyParameters) -> int:
        requested = _cap_or(params, settings.risk_max_parallel_tasks)
        return min(requested, settings.risk_max_parallel_tasks)

    @staticmethod
    def _serialize_risky_tasks(plan: ExecutionPlan, include_critical_path: bool) -> None:
        critical = set(TaskGraph(plan.tasks).critical_path()[0]) if include_critical_path else set()
        for task in plan.tasks:
            if task.is_security_sensitive or task.id in critical:
                task.can_run_in_parallel = False
            elif include_critical_path and task.priority == TaskPriority.CRITICAL:
                task.can_run_in_parallel = False

    # =========================================================================
    # Execution order
    # =========================================================================

    def get_execution_order(self, plan: ExecutionPlan, max_parallel_tasks: int | None = None) -> list[list[Task]]:
        """Split the plan into waves of at most ``max_parallel_tasks`` tasks.

        A task only joins a wave once all of its dependencies sit in earlier
        waves. Tasks that are not parallel-eligible get a wave to themselves.
        Ready tasks that do not fit spill into the next wave ahead of tasks
        that become ready later.
        """
        cap = settings.default_max_parallel_tasks if max_parallel_tasks is None else max_parallel_tasks
        if cap < 1:
            raise ValueError("max_parallel_tasks must be at least 1")

        tasks = {t.id: t for t in plan.tasks}
        done: set[str] = set()
        queue = [t.id for t in plan.tasks if not t.dependencies]
        waves: list[list[Task]] = []

        while queue:
            wave: list[str] = []
            for task_id in queue:
                task = tasks[task_id]
                if not task.can_run_in_parallel:
                    if not wave:
                        wave.append(task_id)
                        break
                    continue
                wave.append(task_id)
                if len(wave) >= cap:
                    break

            queue = [t for t in queue if t not in wave]
            done.update(wave)
            waves.append([tasks[t] for t in wave])

            for task in plan.tasks:
                if task.id in done or task.id in queue:
                    continue
                if all(dep in done for dep in task.dependencies):
                    queue.append(task.id)

        if len(done) != len(tasks):
            raise ValueError("Plan has circular or missing dependencies - cannot determine execution order")

        return waves

    # =========================================================================
    # Runtime adaptation
    # =========================================================================

    def adapt_plan(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext | None = None,
        trigger: AdaptationTrigger = AdaptationTrigger.MANUAL,
        reason: str = "",
    ) -> tuple[ExecutionPlan, PlanAdaptation]:
        """Adapt a running plan. Returns the adapted copy and its audit record."""
        context = context or ExecutionContext(plan_id=plan.id)
        adapted = plan.model_copy(deep=True)

        handlers = {
            AdaptationTrigger.TASK_FAILURE: self._adapt_task_failure,
            AdaptationTrigger.CONFLICT_DETECTED: self._adapt_conflict,
            AdaptationTrigger.TIME_OVERRUN: self._adapt_time_overrun,
            AdaptationTrigger.DEPENDENCY_CHANGE: self._adapt_dependency_change,
            AdaptationTrigger.MANUAL: self._adapt_manual,
        }
        description, changes, impact = handlers[trigger](adapted, context)
        if trigger in (AdaptationTrigger.TIME_OVERRUN, AdaptationTrigger.DEPENDENCY_CHANGE):
            refresh_plan(adapted)
        else:
            adapted.updated_at = utc_now()

        adaptation = PlanAdaptation(
            id=f"adaptation-{uuid.uuid4().hex[:12]}",
            plan_id=plan.id,
            trigger=trigger,
            description=description,
            reason=reason,
            changes=changes,
            impact=impact,
        )

        logger.info(
            f"Adapted plan on {trigger.value}: {description} "
            f"({impact.tasks_affected} tasks, {impact.estimated_duration_change:+d} min)",
            extra={"plan_id": plan.id},
        )
        return adapted, adaptation

    def _adapt_task_failure(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
    ) -> tuple[str, PlanChanges, AdaptationImpact]:
        failed = list(context.failed_tasks)
        if not failed and context.current_task:
            failed = [context.current_task]

        graph = TaskGraph(plan.tasks)
        critical_path = graph.critical_path()[0]
        critical = set(critical_path)

        retried: list[str] = []
        skipped: list[str] = []
        for task_id in failed:
            task = plan.get_task(task_id)
            if task is None:
                continue
            if task_id in critical:
                successors = critical_path[critical_path.index(task_id):]
                for successor in successors:
                    if successor not in retried:
                        retried.append(successor)
            else:
                skipped.append(task_id)

        for task in plan.tasks:
            if task.id in retried:
                task.status = TaskStatus.PENDING
            elif task.id in skipped:
                task.status = TaskStatus.SKIPPED

        duration_change = sum(plan.get_task(t).estimated_duration for t in retried if t in failed)
        changes = PlanChanges(
            tasks_removed=skipped,
            tasks_modified=[{"id": t, "status": TaskStatus.PENDING.value} for t in retried],
        )
        impact = AdaptationImpact(
            estimated_duration_change=duration_change,
            tasks_affected=len(retried) + len(skipped),
            risk_change=RiskChange.INCREASED if skipped else RiskChange.UNCHANGED,
        )
        description = f"Retrying {len(retried)} critical-path tasks, skipping {len(skipped)} non-critical tasks"
        return description, changes, impact

    def _adapt_conflict(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
    ) -> tuple[str, PlanChanges, AdaptationImpact]:
        candidates = [context.current_task, *context.blocked_tasks, *context.failed_tasks]
        conflicting = next((t for t in candidates if t and plan.get_task(t)), None)
        if conflicting is None:
            return "No conflicting task identified", PlanChanges(), AdaptationImpact()

        graph = TaskGraph(plan.tasks)
        completed = set(context.completed_tasks)
        blocked = []
        for task_id in [conflicting, *graph.get_descendants(conflicting)]:
            task = plan.get_task(task_id)
            if task.status == TaskStatus.COMPLETED or task_id in completed:
                continue
            task.status = TaskStatus.BLOCKED
            blocked.append(task_id)

        changes = PlanChanges(
            tasks_modified=[{"id": t, "status": TaskStatus.BLOCKED.value} for t in blocked],
        )
        impact = AdaptationImpact(
            estimated_duration_change=0,
            tasks_affected=len(blocked),
            risk_change=RiskChange.INCREASED,
        )
        return f"Blocked {len(blocked)} tasks downstream of conflict in {conflicting}", changes, impact

    def _adapt_time_overrun(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
    ) -> tuple[str, PlanChanges, AdaptationImpact]:
        """Open up parallelism among remaining tasks and fast-track tests and docs.

        The duration change is negative when time is recovered. It is 0 when
        the remaining work cannot be compressed any further, in which case
        the risk is reported as unchanged.
        """
        completed = set(context.completed_tasks) | {t.id for t in plan.tasks if t.status == TaskStatus.COMPLETED}
        before = TaskGraph(plan.tasks).critical_path(completed)[1]

        planned_average = sum(t.estimated_duration for t in plan.tasks) / len(plan.tasks) if plan.tasks else 0
        actual_average = context.metrics.average_task_duration
        overrun_ratio = max(1.0, actual_average / planned_average) if planned_average else 1.0

        tasks = {t.id: t for t in plan.tasks}
        modified: list[dict] = []
        added: list[TaskDependency] = []
        removed: list[TaskDependency] = []

        for task in plan.tasks:
            if task.id in completed:
                continue
            if not task.can_run_in_parallel:
                task.can_run_in_parallel = True
                modified.append({"id": task.id, "can_run_in_parallel": True})

        # Fast-track verification work: start tests and docs alongside the
        # work they cover instead of after it
        for task in plan.tasks:
            if task.id in completed or task.agent_type not in FAST_TRACK_AGENTS:
                continue
            new_deps: list[str] = []
            for dep_id in task.dependencies:
                dep = tasks.get(dep_id)
                if dep is None or dep_id in completed or not dep.dependencies:
                    new_deps.append(dep_id)
                    continue
                removed.append(TaskDependency(from_task_id=dep_id, to_task_id=task.id, reason="fast-tracked"))
                new_deps.extend(dep.dependencies)
            new_deps = [d for d in dict.fromkeys(new_deps) if d != task.id]
            for dep_id in new_deps:
                if dep_id not in task.dependencies:
                    added.append(TaskDependency(from_task_id=dep_id, to_task_id=task.id, reason="fast-tracked"))
            task.dependencies = new_deps

        after = TaskGraph(plan.tasks).critical_path(completed)[1]
        duration_change = round((after - before) * overrun_ratio)

        changes = PlanChanges(
            tasks_modified=modified,
            dependencies_added=added,
            dependencies_removed=removed,
        )
        affected = {m["id"] for m in modified} | {d.to_task_id for d in removed}
        recovered = after < before
        impact = AdaptationImpact(
            estimated_duration_change=duration_change if recovered else 0,
            tasks_affected=len(affected),
            risk_change=RiskChange.INCREASED if recovered else RiskChange.UNCHANGED,
        )
        if recovered:
            description = f"Increased parallelism across {len(affected)} remaining tasks to recover schedule"
        else:
            description = "Remaining tasks cannot be compressed further, no time recovered"
            logger.info(f"Time overrun on plan {plan.id}: nothing left to compress", extra={"plan_id": plan.id})
        return description, changes, impact

    def _adapt_dependency_change(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
    ) -> tuple[str, PlanChanges, AdaptationImpact]:
        previous = {(e.from_task_id, e.to_task_id) for e in plan.dependencies.edges}
        current = {(dep, t.id) for t in plan.tasks for dep in t.dependencies}
        added = [TaskDependency(from_task_id=f, to_task_id=t) for f, t in sorted(current - previous)]
        removed = [TaskDependency(from_task_id=f, to_task_id=t) for f, t in sorted(previous - current)]

        before = plan.estimated_duration
        after = TaskGraph(plan.tasks).critical_path()[1]

        changes = PlanChanges(dependencies_added=added, dependencies_removed=removed)
        impact = AdaptationImpact(
            estimated_duration_change=after - before,
            tasks_affected=len({d.to_task_id for d in added + removed}),
            risk_change=RiskChange.UNCHANGED,
        )
        return f"Rebuilt dependency graph ({len(added)} added, {len(removed)} removed)", changes, impact

    def _adapt_manual(
        self,
        plan: ExecutionPlan,
        context: ExecutionContext,
    ) -> tuple[str, PlanChanges, AdaptationImpact]:
        return "Manual adaptation recorded", PlanChanges(), AdaptationImpact()

    # =========================================================================
    # Comparison
    # =========================================================================

    def compare_plans(self, plans: list[ExecutionPlan]) -> PlanComparison:
        """Score plans on duration and risk. Lower score wins."""
        if not plans:
            raise ValueError("At least one plan is required for comparison")

        durations = [p.estimated_duration for p in plans]
        risks = [p.risk_assessment.overall_risk for p in plans]
        parallelization = [
            round(100 * sum(t.can_run_in_parallel for t in p.tasks) / len(p.tasks), 1) if p.tasks else 0.0
            for p in plans
        ]

        longest = max(durations) or 1
        scores = [
            DURATION_WEIGHT * (d / longest) + RISK_WEIGHT * (RISK_RANK[r] / 3)
            for d, r in zip(durations, risks)
        ]
        best = min(range(len(plans)), key=lambda i: (scores[i], -parallelization[i], i))

        return PlanComparison(
            plans=plans,
            comparison=ComparisonMetrics(duration=durations, risk=risks, parallelization=parallelization),
            recommendation=Recommendation(
                best_plan_id=plans[best].id,
                reason=self._recommendation_reason(best, durations, risks, parallelization),
                tradeoffs=self._tradeoffs(best, durations, risks),
            ),
        )

    @staticmethod
    def _recommendation_reason(
        best: int,
        durations: list[int],
        risks: list[RiskLevel],
        parallelization: list[float],
    ) -> str:
        reasons = []
        if durations[best] == min(durations):
            reasons.append(f"shortest duration ({durations[best]} min)")
        if RISK_RANK[risks[best]] == min(RISK_RANK[r] for r in risks):
            reasons.append(f"lowest risk ({risks[best].value})")
        if parallelization[best] == max(parallelization):
            reasons.append(f"highest parallelization ({parallelization[best]}%)")
        if not reasons:
            return "Best overall balance of duration and risk"
        return "Best plan: " + ", ".join(reasons)

    @staticmethod
    def _tradeoffs(best: int, durations: list[int], risks: list[RiskLevel]) -> list[str]:
        tradeoffs = []
        for index, (duration, risk) in enumerate(zip(durations, risks)):
            if index == best:
                continue
            if duration < durations[best]:
                tradeoffs.append(
                    f"Plan {index + 1} is {durations[best] - duration} min faster but carries {risk.value} risk"
                )
            if RISK_RANK[risk] < RISK_RANK[risks[best]]:
                tradeoffs.append(
                    f"Plan {index + 1} has lower risk ({risk.value}) but takes {duration} min"
                )
        return tradeoffs
