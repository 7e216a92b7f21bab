"""Tests for retry execution, backoff and circuit breaking."""

import asyncio

import pytest

from orchestration.resilience.circuit_breaker import CircuitBreakerOpenError
from orchestration.resilience.errors import ErrorType
from orchestration.resilience.retry_manager import (
    BackoffStrategy,
    RetryConfig,
    get_backoff_delay,
    get_recommended_config,
)


class FlakyOperation:
    """Async callable failing a set number of times before succeeding."""

    def __init__(self, failures: int, error: Exception | None = None, result: str = "ok"):
        self.failures = failures
        self.error = error or ConnectionError("Connection reset by peer")
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestExecuteWithRetry:
    """Tests for RetryManager.execute_with_retry."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, retry_manager):
        """Test a successful operation is called once."""
        operation = FlakyOperation(failures=0)

        result = await retry_manager.execute_with_retry(operation, "op-1")

        assert result == "ok"
        assert operation.calls == 1
        history = retry_manager.get_retry_history("op-1")
        assert history.total_attempts == 1
        assert history.final_success is True

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, retry_manager):
        """Test transient failures are retried until success."""
        operation = FlakyOperation(failures=2)

        result = await retry_manager.execute_with_retry(operation, "op-2")

        assert result == "ok"
        assert operation.calls == 3
        history = retry_manager.get_retry_history("op-2")
        assert [a.success for a in history.attempts] == [False, False, True]
        assert history.attempts[0].error_type == ErrorType.TRANSIENT
        assert history.attempts[0].delay_ms > 0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, retry_manager):
        """Test the operation runs max_attempts + 1 times and the last error is raised."""
        error = ConnectionError("Connection reset by peer")
        operation = FlakyOperation(failures=100, error=error)

        with pytest.raises(ConnectionError) as exc_info:
            await retry_manager.execute_with_retry(operation, "op-3")

        assert exc_info.value is error
        assert operation.calls == 4
        assert retry_manager.get_retry_history("op-3").final_success is False

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self, retry_manager):
        """Test fatal errors fail on the first attempt."""
        operation = FlakyOperation(failures=100, error=PermissionError("Permission denied"))

        with pytest.raises(PermissionError):
            await retry_manager.execute_with_retry(operation, "op-4")

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_zero_max_attempts(self, retry_manager):
        """Test max_attempts=0 means a single call."""
        operation = FlakyOperation(failures=100)

        with pytest.raises(ConnectionError):
            await retry_manager.execute_with_retry(operation, "op-5", config={"max_attempts": 0})

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_only_configured_types_retried(self, retry_manager):
        """Test retriable errors are not retried when only transient ones are configured."""
        operation = FlakyOperation(failures=100, error=RuntimeError("Resource is locked"))

        with pytest.raises(RuntimeError):
            await retry_manager.execute_with_retry(
                operation, "op-6", config={"retryable_errors": [ErrorType.TRANSIENT]},
            )

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_timeout(self, retry_manager):
        """Test a slow attempt raises TimeoutError."""
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(TimeoutError):
            await retry_manager.execute_with_retry(slow, "op-7", config={"timeout_ms": 10, "max_attempts": 0})

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, retry_manager):
        """Test cancelled operations are not retried."""
        operation = FlakyOperation(failures=100, error=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await retry_manager.execute_with_retry(operation, "op-8")

        assert operation.calls == 1


class TestCircuitBreaking:
    """Tests for circuit breaker integration."""

    @pytest.mark.asyncio
    async def test_circuit_opens_and_refuses(self, retry_manager):
        """Test reaching the threshold stops retries and refuses later calls."""
        operation = FlakyOperation(failures=100)
        context = {"agent_type": "agent-api", "operation_id": "op-cb"}

        with pytest.raises(ConnectionError):
            await retry_manager.execute_with_retry(
                operation, "op-cb", context, config={"circuit_breaker_threshold": 2},
            )
        assert operation.calls == 2

        follow_up = FlakyOperation(failures=0)
        with pytest.raises(CircuitBreakerOpenError):
            await retry_manager.execute_with_retry(follow_up, "op-cb-2", context)
        assert follow_up.calls == 0

        assert retry_manager.get_circuit_breaker_state("agent-api").is_open is True
        assert retry_manager.get_statistics()["open_circuit_breakers"] == 1

    @pytest.mark.asyncio
    async def test_reset_circuit(self, retry_manager):
        """Test a reset circuit accepts calls again."""
        context = {"agent_type": "agent-api"}
        with pytest.raises(ConnectionError):
            await retry_manager.execute_with_retry(
                FlakyOperation(failures=100), "op-a", context, config={"circuit_breaker_threshold": 1},
            )

        assert retry_manager.reset_circuit_breaker("agent-api") is True
        assert await retry_manager.execute_with_retry(FlakyOperation(failures=0), "op-b", context) == "ok"

    @pytest.mark.asyncio
    async def test_success_clears_failures(self, retry_manager):
        """Test a success forgets earlier failures of a closed circuit."""
        context = {"agent_type": "agent-ui"}

        await retry_manager.execute_with_retry(FlakyOperation(failures=2), "op-c", context)

        assert retry_manager.get_circuit_breaker_state("agent-ui") is None
        assert retry_manager.get_all_circuit_breaker_states() == []

    @pytest.mark.asyncio
    async def test_circuits_are_per_agent(self, retry_manager):
        """Test an open circuit for one agent doesn't block another."""
        with pytest.raises(ConnectionError):
            await retry_manager.execute_with_retry(
                FlakyOperation(failures=100), "op-d", {"agent_type": "agent-api"},
                config={"circuit_breaker_threshold": 1},
            )

        result = await retry_manager.execute_with_retry(FlakyOperation(failures=0), "op-e", {"agent_type": "agent-ui"})
        assert result == "ok"


class TestHistoryAndStatistics:
    """Tests for retry bookkeeping."""

    @pytest.mark.asyncio
    async def test_statistics(self, retry_manager):
        """Test aggregate statistics over successful and failed operations."""
        await retry_manager.execute_with_retry(FlakyOperation(failures=1), "op-ok")
        with pytest.raises(PermissionError):
            await retry_manager.execute_with_retry(
                FlakyOperation(failures=1, error=PermissionError("Permission denied")), "op-fail",
            )

        stats = retry_manager.get_statistics()
        assert stats["total_operations"] == 2
        assert stats["successful_operations"] == 1
        assert stats["failed_operations"] == 1
        assert stats["average_attempts"] == 1.5

    @pytest.mark.asyncio
    async def test_clear_history(self, retry_manager):
        """Test clearing one history and then all of them."""
        await retry_manager.execute_with_retry(FlakyOperation(failures=0), "op-1")
        await retry_manager.execute_with_retry(FlakyOperation(failures=0), "op-2")

        retry_manager.clear_history("op-1")
        assert retry_manager.get_retry_history("op-1") is None
        assert len(retry_manager.get_all_retry_histories()) == 1

        retry_manager.clear_history()
        assert retry_manager.get_all_retry_histories() == []

    @pytest.mark.asyncio
    async def test_history_to_dict(self, retry_manager):
        """Test history serialization."""
        await retry_manager.execute_with_retry(FlakyOperation(failures=1), "op-dict", {"phase": 2})

        data = retry_manager.get_retry_history("op-dict").to_dict()
        assert data["phase"] == 2
        assert data["total_attempts"] == 2
        assert data["attempts"][0]["error_type"] == "transient"
        assert data["completed_at"] is not None

    def test_empty_statistics(self, retry_manager):
        """Test statistics with no operations."""
        stats = retry_manager.get_statistics()
        assert stats["total_operations"] == 0
        assert stats["average_attempts"] == 0.0


class TestBackoff:
    """Tests for backoff delay calculation."""

    @pytest.mark.parametrize("strategy,attempt,expected", [
        (BackoffStrategy.FIXED, 3, 1000),
        (BackoffStrategy.LINEAR, 3, 3000),
        (BackoffStrategy.EXPONENTIAL, 3, 4000),
        (BackoffStrategy.FIBONACCI, 5, 5000),
        (BackoffStrategy.EXPONENTIAL, 10, 16000),
    ])
    def test_delay_with_jitter(self, strategy, attempt, expected):
        """Test delays stay within 10% jitter above the strategy value."""
        config = RetryConfig(strategy=strategy, base_delay_ms=1000, max_delay_ms=16000)

        for _ in range(20):
            delay = get_backoff_delay(attempt, config=config)
            assert expected <= delay <= expected * 1.1

    def test_fibonacci_sequence(self):
        """Test fibonacci delays follow 1, 1, 2, 3, 5."""
        config = RetryConfig(strategy=BackoffStrategy.FIBONACCI, base_delay_ms=100, max_delay_ms=10_000)
        lower_bounds = [int(get_backoff_delay(n, config=config) // 100) for n in range(1, 6)]
        assert lower_bounds == [1, 1, 2, 3, 5]

    def test_strategy_overrides_config(self):
        """Test an explicit strategy wins over the config's strategy."""
        config = RetryConfig(strategy=BackoffStrategy.EXPONENTIAL, base_delay_ms=1000, max_delay_ms=16000)

        delay = get_backoff_delay(3, BackoffStrategy.LINEAR, config)

        assert 3000 <= delay <= 3300

    def test_default_config(self):
        """Test the settings-backed config is used when none is given."""
        delay = get_backoff_delay(1, BackoffStrategy.FIXED)
        assert 1000 <= delay <= 1100

    def test_negative_max_attempts_rejected(self):
        """Test invalid retry config is rejected."""
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=-1)

    def test_recommended_configs(self):
        """Test per-type recommended configs."""
        assert get_recommended_config(ErrorType.TRANSIENT).strategy == BackoffStrategy.EXPONENTIAL
        assert get_recommended_config(ErrorType.RETRIABLE).max_attempts == 3
        assert get_recommended_config(ErrorType.FATAL).max_attempts == 0
        assert get_recommended_config(ErrorType.CONFLICT).max_attempts == 0
