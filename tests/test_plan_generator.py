"""Tests for plan generation and validation."""

import re

import pytest

from orchestration.planning.goal_parser import GoalParser
from orchestration.planning.models import (
    AgentType,
    ExecutionPlan,
    GoalComplexity,
    GoalEntity,
    GoalIntent,
    GoalTemplate,
    ParsedGoal,
    PlanStatus,
    RequiredCapability,
    RiskLevel,
    TaskDependency,
    TaskPriority,
)
from orchestration.planning.plan_generator import PlanGenerator


def task_by_name(plan, name):
    return next(t for t in plan.tasks if t.name == name)


class TestTaskSynthesis:
    """Capabilities turn into tasks with dependencies."""

    def test_api_plan_tasks(self, api_plan):
        names = [t.name for t in api_plan.tasks]
        assert names == [
            "Define Data Models",
            "Create Database Schema",
            "Implement Service Layer",
            "Implement API Controllers",
            "Add Input Validation",
            "Write Unit Tests",
            "Write Integration Tests",
        ]
        assert [t.id for t in api_plan.tasks] == [f"task-00{i}" for i in range(1, 8)]
        assert api_plan.status == PlanStatus.DRAFT

    def test_dependencies_follow_layering(self, api_plan):
        models = task_by_name(api_plan, "Define Data Models")
        schema = task_by_name(api_plan, "Create Database Schema")
        service = task_by_name(api_plan, "Implement Service Layer")
        controllers = task_by_name(api_plan, "Implement API Controllers")

        assert models.dependencies == []
        assert schema.dependencies == [models.id]
        assert service.dependencies == [models.id, schema.id]
        assert controllers.dependencies == [service.id]

    def test_every_dependency_exists(self, full_plan):
        ids = {t.id for t in full_plan.tasks}
        for task in full_plan.tasks:
            assert set(task.dependencies) <= ids

    def test_tests_never_lead(self, full_plan):
        first_layer = full_plan.dependencies.layers[0]
        for task in full_plan.tasks:
            if task.agent_type == AgentType.TEST:
                assert task.id not in first_layer
                assert task.dependencies

    def test_documentation_depends_on_functional_tasks(self, full_plan):
        docs = task_by_name(full_plan, "Write Documentation")
        functional = [
            t.id for t in full_plan.tasks
            if t.agent_type not in (AgentType.TEST, AgentType.DOCUMENTATION)
        ]
        assert docs.dependencies == functional

    def test_rbac_depends_on_authentication(self, full_plan):
        auth = task_by_name(full_plan, "Implement Authentication")
        rbac = task_by_name(full_plan, "Implement RBAC")
        assert rbac.dependencies == [auth.id]
        assert auth.priority == TaskPriority.CRITICAL

    def test_restful_api_for_user_management(self, generator):
        plan = generator.generate_plan("Build a RESTful API for user management")

        service = task_by_name(plan, "Implement Service Layer")
        controllers = task_by_name(plan, "Implement API Controllers")
        assert service.id in controllers.dependencies
        assert generator.validate_plan(plan).is_valid

    def test_integration_task_per_system(self, generator):
        plan = generator.generate_plan("Integrate with Slack")

        integration = task_by_name(plan, "Integrate with Slack")
        assert integration.agent_type == AgentType.INTEGRATION

    def test_all_capabilities(self, generator):
        parsed = ParsedGoal(
            original_goal="Everything at once",
            capabilities=list(RequiredCapability),
            entities=[GoalEntity(type="integration", name="github")],
            estimated_complexity=GoalComplexity.VERY_COMPLEX,
        )
        plan = generator.generate_plan_from_parsed_goal(parsed)

        assert len(plan.tasks) > 10
        assert plan.estimated_duration > 300

    def test_empty_capabilities_still_produce_tasks(self, generator):
        plan = generator.generate_plan_from_parsed_goal(ParsedGoal(original_goal="?", capabilities=[]))

        assert len(plan.tasks) >= 1
        assert generator.validate_plan(plan).is_valid

    def test_durations_scale_with_complexity(self, generator):
        simple = generator.generate_plan_from_parsed_goal(ParsedGoal(
            original_goal="simple", capabilities=[RequiredCapability.API], estimated_complexity=GoalComplexity.SIMPLE,
        ))
        heavy = generator.generate_plan_from_parsed_goal(ParsedGoal(
            original_goal="heavy", capabilities=[RequiredCapability.API], estimated_complexity=GoalComplexity.VERY_COMPLEX,
        ))

        assert all(t.estimated_duration > 0 for t in simple.tasks)
        assert heavy.estimated_duration > simple.estimated_duration

    @pytest.mark.parametrize("capability", [
        RequiredCapability.DOCUMENTATION,
        RequiredCapability.TESTING,
        RequiredCapability.SECURITY,
    ])
    def test_tests_and_docs_never_lead(self, generator, capability):
        plan = generator.generate_plan_from_parsed_goal(
            ParsedGoal(original_goal="Tidy things up", capabilities=[capability])
        )

        roots = plan.get_root_tasks()
        assert roots
        assert all(t.agent_type not in (AgentType.TEST, AgentType.DOCUMENTATION) for t in roots)
        assert "Implement Service Layer" in [t.name for t in plan.tasks]
        assert generator.validate_plan(plan).is_valid

    def test_template_without_functional_capability(self):
        parser = GoalParser(templates=[GoalTemplate(
            id="write-docs",
            name="Write docs",
            pattern=re.compile(r"write\s+docs"),
            intent=GoalIntent.ADD,
            capabilities=[RequiredCapability.DOCUMENTATION],
            complexity=GoalComplexity.SIMPLE,
        )])
        plan = PlanGenerator(parser=parser).generate_plan("Write docs")

        docs = task_by_name(plan, "Write Documentation")
        assert docs.dependencies
        assert docs.id not in plan.dependencies.layers[0]


class TestScheduleAnalysis:
    """Layers, critical path and parallelization."""

    def test_layers(self, api_plan):
        assert api_plan.dependencies.layers == [
            ["task-001"],
            ["task-002"],
            ["task-003"],
            ["task-004", "task-006"],
            ["task-005"],
            ["task-007"],
        ]

    def test_duration_is_critical_path(self, api_plan):
        assert api_plan.estimated_duration == 300
        assert api_plan.dependencies.critical_path == [
            "task-001", "task-002", "task-003", "task-004", "task-005", "task-007",
        ]

    def test_duration_below_sequential_sum(self, api_plan, full_plan):
        for plan in (api_plan, full_plan):
            assert plan.estimated_duration < sum(t.estimated_duration for t in plan.tasks)

    def test_parallelization_opportunity(self, api_plan):
        assert len(api_plan.parallelization_opportunities) == 1
        opportunity = api_plan.parallelization_opportunities[0]

        assert opportunity.task_ids == ["task-004", "task-006"]
        assert opportunity.estimated_time_saved == 60

    def test_opportunities_save_time(self, full_plan):
        assert full_plan.parallelization_opportunities
        for opportunity in full_plan.parallelization_opportunities:
            assert len(opportunity.task_ids) >= 2
            assert opportunity.estimated_time_saved > 0

    def test_graph_nodes_match_tasks(self, api_plan):
        assert api_plan.dependencies.nodes == [t.id for t in api_plan.tasks]
        assert len(api_plan.dependencies.edges) == sum(len(t.dependencies) for t in api_plan.tasks)


class TestMilestones:
    """Milestones group tasks by phase."""

    def test_phases(self, full_plan):
        assert [m.name for m in full_plan.milestones] == [
            "Foundation",
            "Core Implementation",
            "Real-time & UI",
            "Testing & Docs",
        ]

    def test_every_task_in_one_milestone(self, full_plan):
        grouped = [t for m in full_plan.milestones for t in m.tasks]
        assert sorted(grouped) == sorted(t.id for t in full_plan.tasks)

    def test_security_milestone_is_blocking(self, generator):
        plan = generator.generate_plan("Add authentication")
        auth = task_by_name(plan, "Implement Authentication")

        milestone = next(m for m in plan.milestones if auth.id in m.tasks)
        assert milestone.is_blocking is True

    def test_last_milestone_not_blocking(self, api_plan):
        assert api_plan.milestones[-1].is_blocking is False
        assert api_plan.milestones[-1].estimated_completion_minutes == api_plan.estimated_duration


class TestRiskAssessment:
    """Risks are derived from capabilities and size."""

    def test_security_risk(self, generator):
        plan = generator.generate_plan("Add authentication")

        auth = task_by_name(plan, "Implement Authentication")
        assert auth.priority == TaskPriority.CRITICAL
        assert auth.agent_type == AgentType.AUTH

        security = next(r for r in plan.risk_assessment.risks if r.type == "security")
        assert security.mitigation
        assert plan.risk_assessment.overall_risk == RiskLevel.HIGH

    def test_external_dependency_risk(self, generator):
        plan = generator.generate_plan("Integrate with Slack")
        risks = [r for r in plan.risk_assessment.risks if r.type == "external_dependency"]

        assert len(risks) == 1
        assert "Slack" in risks[0].description

    def test_small_plan_is_low_risk(self, api_plan):
        assert api_plan.risk_assessment.risks == []
        assert api_plan.risk_assessment.overall_risk == RiskLevel.LOW

    def test_very_complex_goal_has_complexity_risk(self, full_plan):
        complexity = [r for r in full_plan.risk_assessment.risks if r.type == "complexity"]
        assert complexity[0].severity == RiskLevel.HIGH


class TestValidatePlan:
    """Validation reports problems as data."""

    def test_generated_plan_is_valid(self, generator, full_plan):
        result = generator.validate_plan(full_plan)
        assert result.is_valid is True
        assert result.errors == []

    def test_circular_dependency(self, generator, api_plan):
        api_plan.tasks[0].dependencies = [api_plan.tasks[-1].id]

        result = generator.validate_plan(api_plan)

        assert result.is_valid is False
        cycle = next(e for e in result.errors if e.type == "circular_dependency")
        assert "task-001" in cycle.message
        assert "->" in cycle.message

    def test_missing_dependency(self, generator, api_plan):
        api_plan.tasks[2].dependencies = ["task-999"]

        result = generator.validate_plan(api_plan)

        assert result.is_valid is False
        assert result.errors[0].type == "missing_dependency"
        assert result.errors[0].task_id == "task-003"

    def test_long_plan_warning(self, generator, api_plan):
        api_plan.estimated_duration = 10_000

        result = generator.validate_plan(api_plan)

        assert result.is_valid is True
        assert result.warnings[0].type == "duration"

    def test_suggests_unclaimed_parallelism(self, generator, full_plan):
        result = generator.validate_plan(full_plan)
        assert any(s.type == "parallelization" for s in result.suggestions)


class TestSerialization:
    """Plans serialize with camelCase aliases."""

    def test_camel_case_dump(self, api_plan):
        data = api_plan.model_dump(by_alias=True, mode="json")

        assert data["estimatedDuration"] == 300
        assert "parallelizationOpportunities" in data
        assert "canRunInParallel" in data["tasks"][0]
        assert data["parsedGoal"]["originalGoal"] == "Build API for users"

    def test_wire_field_names(self, api_plan):
        data = api_plan.model_dump(by_alias=True, mode="json")

        task = data["tasks"][0]
        assert task["agentType"] == "agent-models"
        assert "agent" not in task
        assert data["parsedGoal"]["estimatedComplexity"] == "moderate"
        assert "complexity" not in data["parsedGoal"]

        edge = data["dependencies"]["edges"][0]
        assert set(edge) == {"from", "to", "type", "reason"}
        assert (edge["from"], edge["to"]) == ("task-001", "task-002")

    def test_round_trip_from_camel_case(self, api_plan):
        data = api_plan.model_dump(by_alias=True, mode="json")

        restored = ExecutionPlan.model_validate(data)

        assert restored.tasks[0].agent_type == AgentType.MODELS
        assert restored.parsed_goal.estimated_complexity == GoalComplexity.MODERATE
        assert restored.dependencies.edges == api_plan.dependencies.edges
        assert restored.model_dump(by_alias=True, mode="json") == data

    def test_edges_accept_task_id_keys(self):
        edge = TaskDependency.model_validate({"fromTaskId": "task-001", "toTaskId": "task-002"})

        assert (edge.from_task_id, edge.to_task_id) == ("task-001", "task-002")
        assert edge.model_dump(by_alias=True) == {
            "from": "task-001", "to": "task-002", "type": "requires", "reason": "",
        }
