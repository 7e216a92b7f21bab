"""Tests for per-agent circuit breakers."""

import pytest

from orchestration.resilience.circuit_breaker import (
    CircuitBreakerOpenError,
    CircuitBreakerRegistry,
    CircuitBreakerState,
)


class TestCircuitBreakerState:
    """Tests for a single breaker's tally."""

    def test_opens_at_threshold(self):
        """Test the failure reaching the threshold opens the circuit."""
        state = CircuitBreakerState(agent_type="agent-api", threshold=3, window_seconds=60)

        assert state.record_failure(now=0) is False
        assert state.record_failure(now=1) is False
        assert state.record_failure(now=2) is True
        assert state.is_open is True
        assert state.opened_at == 2

    def test_old_failures_are_forgotten(self):
        """Test failures outside the window reset the count."""
        state = CircuitBreakerState(agent_type="agent-api", threshold=3, window_seconds=60)

        state.record_failure(now=0)
        state.record_failure(now=10)
        state.record_failure(now=100)

        assert state.failure_count == 1
        assert state.is_open is False

    def test_expiry(self):
        """Test an open circuit expires once the window has passed."""
        state = CircuitBreakerState(agent_type="agent-api", threshold=1, window_seconds=60)
        state.record_failure(now=1000)

        assert state.check_expired(now=1030) is False
        assert state.time_until_close(now=1030) == 30
        assert state.check_expired(now=1060) is True

    def test_status(self):
        """Test status dict for a closed circuit."""
        state = CircuitBreakerState(agent_type="agent-ui")
        status = state.get_status()

        assert status["agent_type"] == "agent-ui"
        assert status["is_open"] is False
        assert status["time_until_close"] is None


class TestCircuitBreakerRegistry:
    """Tests for the registry of breakers."""

    def test_ensure_closed_raises_when_open(self):
        """Test an open circuit refuses new operations."""
        registry = CircuitBreakerRegistry(window_seconds=300)
        registry.record_failure("agent-api", threshold=1)

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            registry.ensure_closed("agent-api")

        assert exc_info.value.agent_type == "agent-api"
        assert exc_info.value.failure_count == 1
        assert exc_info.value.retry_after > 0

    def test_agents_are_isolated(self):
        """Test one agent's failures don't trip another's circuit."""
        registry = CircuitBreakerRegistry(window_seconds=300)
        registry.record_failure("agent-api", threshold=1)

        registry.ensure_closed("agent-ui")
        assert registry.get("agent-ui") is None

    def test_success_clears_closed_tally(self):
        """Test a success forgets failures of a closed circuit."""
        registry = CircuitBreakerRegistry(window_seconds=300)
        registry.record_failure("agent-api", threshold=5)

        registry.record_success("agent-api")

        assert registry.get("agent-api") is None

    def test_success_does_not_close_open_circuit(self):
        """Test an open circuit stays open after a success."""
        registry = CircuitBreakerRegistry(window_seconds=300)
        registry.record_failure("agent-api", threshold=1)

        registry.record_success("agent-api")

        assert registry.get("agent-api").is_open is True

    def test_expired_circuit_is_dropped(self):
        """Test an open circuit with a zero window closes immediately."""
        registry = CircuitBreakerRegistry(window_seconds=0)
        registry.record_failure("agent-api", threshold=1)

        assert registry.get("agent-api") is None
        registry.ensure_closed("agent-api")

    def test_reset(self):
        """Test manual reset reports whether state existed."""
        registry = CircuitBreakerRegistry(window_seconds=300)
        registry.record_failure("agent-api", threshold=1)

        assert registry.reset("agent-api") is True
        assert registry.reset("agent-api") is False
        registry.ensure_closed("agent-api")

    def test_list_and_reset_all(self):
        """Test listing all tracked circuits."""
        registry = CircuitBreakerRegistry(window_seconds=300)
        registry.record_failure("agent-api", threshold=5)
        registry.record_failure("agent-ui", threshold=5)

        assert sorted(s.agent_type for s in registry.list_all()) == ["agent-api", "agent-ui"]

        registry.reset_all()
        assert registry.list_all() == []
