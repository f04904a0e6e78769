"""Tests for the exponential-backoff retry wrapper."""

import pytest

from etherfi_monitor.storage.errors import DatabaseConnectionError
from etherfi_monitor.storage.retry import RetryPolicy, retrying, with_retry

# ============================================================================
# Helpers
# ============================================================================


class FlakyOperation:
    """Fails with a numbered error until ``succeed_on`` is reached."""

    def __init__(self, succeed_on: int) -> None:
        self.succeed_on = succeed_on
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls < self.succeed_on:
            raise DatabaseConnectionError(f"attempt {self.calls} failed")
        return "ok"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ============================================================================
# RetryPolicy Tests
# ============================================================================


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_defaults(self) -> None:
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.initial_delay == 1.0
        assert policy.backoff_multiplier == 2.0

    def test_delay_grows_exponentially(self) -> None:
        policy = RetryPolicy(initial_delay=1.0, backoff_multiplier=2.0)
        assert [policy.delay_for(k) for k in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_invalid_attempts(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


# ============================================================================
# with_retry Tests
# ============================================================================


class TestWithRetry:
    """Tests for with_retry."""

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self) -> None:
        op = FlakyOperation(succeed_on=3)
        sleep = RecordingSleep()

        result = await with_retry(op, RetryPolicy(max_attempts=3), sleep=sleep)

        assert result == "ok"
        assert op.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_propagates_last_error(self) -> None:
        op = FlakyOperation(succeed_on=3)
        sleep = RecordingSleep()

        with pytest.raises(DatabaseConnectionError, match="attempt 2 failed"):
            await with_retry(op, RetryPolicy(max_attempts=2), sleep=sleep)

        assert op.calls == 2
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_on_retry_called_before_each_retry(self) -> None:
        op = FlakyOperation(succeed_on=3)
        seen: list[tuple[str, int]] = []

        await with_retry(
            op,
            RetryPolicy(max_attempts=5, initial_delay=0.5, backoff_multiplier=3.0),
            on_retry=lambda e, attempt: seen.append((str(e), attempt)),
            sleep=RecordingSleep(),
        )

        assert seen == [("attempt 1 failed", 1), ("attempt 2 failed", 2)]

    @pytest.mark.asyncio
    async def test_on_retry_not_called_after_final_attempt(self) -> None:
        op = FlakyOperation(succeed_on=10)
        seen: list[int] = []

        with pytest.raises(DatabaseConnectionError):
            await with_retry(
                op,
                RetryPolicy(max_attempts=2),
                on_retry=lambda e, attempt: seen.append(attempt),
                sleep=RecordingSleep(),
            )

        assert seen == [1]

    @pytest.mark.asyncio
    async def test_non_matching_errors_are_not_retried(self) -> None:
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise KeyError("nope")

        policy = RetryPolicy(max_attempts=3, retry_on=(DatabaseConnectionError,))
        with pytest.raises(KeyError):
            await with_retry(op, policy, sleep=RecordingSleep())
        assert calls == 1

    @pytest.mark.asyncio
    async def test_decorator(self) -> None:
        op = FlakyOperation(succeed_on=2)

        @retrying(RetryPolicy(max_attempts=2, initial_delay=0))
        async def fetch() -> str:
            return await op()

        assert await fetch() == "ok"
        assert op.calls == 2
