"""Configuration management for the orchestration planner."""

import logging
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Planner settings."""

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_name: str = "Orchestration Planner"
    debug: bool = False
    json_logs: bool = False

    # Parallel execution
    default_max_parallel_tasks: int = 4
    max_parallel_cap: int = 8  # Cap used when maximizing parallelization
    risk_max_parallel_tasks: int = 2  # Cap used when minimizing risk

    # Plan thresholds (minutes)
    max_plan_duration_minutes: int = 480  # Validation warns above this
    long_plan_risk_minutes: int = 480  # Complexity risk above this

    # Goal parsing
    long_goal_word_count: int = 100  # Goals this long are always very complex

    # Checkpoints
    max_checkpoints: int = 10

    # Retry defaults
    retry_max_attempts: int = 5
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 16000

    # Circuit breaker
    circuit_breaker_threshold: int = 10
    circuit_breaker_window_seconds: int = 300  # 5 minutes

    @field_validator(
        "default_max_parallel_tasks",
        "max_parallel_cap",
        "risk_max_parallel_tasks",
        "max_checkpoints",
        "circuit_breaker_threshold",
        "long_goal_word_count",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Counts and caps must be at least 1."""
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("retry_max_attempts", "retry_base_delay_ms", "retry_max_delay_ms")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Retry settings cannot be negative."""
        if v < 0:
            raise ValueError("Retry settings cannot be negative")
        return v


settings = Settings()


def get_config_dict() -> dict[str, Any]:
    """Get config as dict for diagnostics."""
    return {
        "app_name": settings.app_name,
        "debug": settings.debug,
        "default_max_parallel_tasks": settings.default_max_parallel_tasks,
        "max_plan_duration_minutes": settings.max_plan_duration_minutes,
        "max_checkpoints": settings.max_checkpoints,
        "retry_max_attempts": settings.retry_max_attempts,
        "circuit_breaker_threshold": settings.circuit_breaker_threshold,
    }


def validate_critical_settings(current: Settings | None = None) -> list[str]:
    """Validate settings combinations and log warnings for potential issues.

    Returns the warning messages so callers can surface them.
    """
    current = current or settings
    warnings: list[str] = []

    if current.retry_max_delay_ms < current.retry_base_delay_ms:
        warnings.append(
            f"retry_max_delay_ms ({current.retry_max_delay_ms}) is lower than "
            f"retry_base_delay_ms ({current.retry_base_delay_ms}) - every backoff will be clamped."
        )

    if current.risk_max_parallel_tasks > current.default_max_parallel_tasks:
        warnings.append(
            "risk_max_parallel_tasks exceeds default_max_parallel_tasks - "
            "risk-minimizing plans will run wider than balanced ones."
        )

    if current.default_max_parallel_tasks > current.max_parallel_cap:
        warnings.append(
            "default_max_parallel_tasks exceeds max_parallel_cap - "
            "maximizing parallelization will narrow execution."
        )

    for message in warnings:
        logger.warning(message)

    return warnings
