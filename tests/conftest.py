"""Pytest fixtures for planner and resilience tests."""

import pytest

from orchestration.planning.goal_parser import GoalParser
from orchestration.planning.optimizer import ExecutionOptimizer
from orchestration.planning.plan_generator import PlanGenerator
from orchestration.resilience.circuit_breaker import CircuitBreakerRegistry
from orchestration.resilience.error_handler import ErrorHandler
from orchestration.resilience.retry_manager import RetryConfig, RetryManager


def pytest_configure(config):
    """Register the asyncio marker."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture
def parser() -> GoalParser:
    return GoalParser()


@pytest.fixture
def generator() -> PlanGenerator:
    return PlanGenerator()


@pytest.fixture
def optimizer() -> ExecutionOptimizer:
    return ExecutionOptimizer()


@pytest.fixture
def api_plan(generator):
    """Plan for a CRUD API: a sequential spine with one parallel layer."""
    return generator.generate_plan("Build API for users")


@pytest.fixture
def full_plan(generator):
    """Plan touching every capability."""
    return generator.generate_plan(
        "Build REST API with authentication, RBAC permissions, real-time websocket updates, "
        "a dashboard, database storage, documentation and an integration with Stripe"
    )


@pytest.fixture
def error_handler() -> ErrorHandler:
    return ErrorHandler(max_checkpoints=3)


@pytest.fixture
def retry_manager() -> RetryManager:
    """Retry manager with millisecond delays so tests stay fast."""
    return RetryManager(
        default_config=RetryConfig(
            max_attempts=3,
            base_delay_ms=1,
            max_delay_ms=5,
            circuit_breaker_threshold=10,
        ),
        circuit_breakers=CircuitBreakerRegistry(window_seconds=300),
    )
