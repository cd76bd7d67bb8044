"""Tests for the bounded retry combinator."""

import pytest

from sofa_worker.etl.retry import RetryPolicy, with_retry


class Recorder:
    def __init__(self):
        self.sleeps = []
        self.failures = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)

    async def on_failure(self, attempt, error):
        self.failures.append((attempt, str(error)))


def _flaky(fail_times, result="ok", error_type=RuntimeError):
    calls = {"n": 0}

    async def operation():
        calls["n"] += 1
        if calls["n"] <= fail_times:
            raise error_type(f"boom {calls['n']}")
        return result

    return operation, calls


class TestWithRetry:

    @pytest.mark.asyncio
    async def test_first_success_no_sleep(self):
        rec = Recorder()
        operation, calls = _flaky(0)
        assert await with_retry(operation, RetryPolicy(), sleep=rec.sleep) == "ok"
        assert calls["n"] == 1
        assert rec.sleeps == []

    @pytest.mark.asyncio
    async def test_recovers_after_failures(self):
        rec = Recorder()
        operation, calls = _flaky(2)
        result = await with_retry(
            operation, RetryPolicy(max_attempts=3, delay_seconds=2.0),
            on_failure=rec.on_failure, sleep=rec.sleep,
        )
        assert result == "ok"
        assert calls["n"] == 3
        assert rec.sleeps == [2.0, 2.0]
        assert [a for a, _ in rec.failures] == [0, 1]

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_error(self):
        """Exactly max_attempts calls, teardown after each, no sleep after the last."""
        rec = Recorder()
        operation, calls = _flaky(10)
        with pytest.raises(RuntimeError, match="boom 3"):
            await with_retry(
                operation, RetryPolicy(max_attempts=3, delay_seconds=1.0),
                on_failure=rec.on_failure, sleep=rec.sleep,
            )
        assert calls["n"] == 3
        assert len(rec.failures) == 3
        assert len(rec.sleeps) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        rec = Recorder()
        operation, calls = _flaky(10, error_type=KeyError)
        with pytest.raises(KeyError):
            await with_retry(
                operation, RetryPolicy(max_attempts=5),
                retry_on=(RuntimeError,), on_failure=rec.on_failure, sleep=rec.sleep,
            )
        assert calls["n"] == 1
        assert rec.failures == []

    @pytest.mark.asyncio
    async def test_zero_attempts_still_tries_once(self):
        operation, calls = _flaky(0)
        assert await with_retry(operation, RetryPolicy(max_attempts=0)) == "ok"
        assert calls["n"] == 1


class TestRetryPolicy:

    def test_constant_delay(self):
        policy = RetryPolicy(delay_seconds=2.0)
        assert [policy.delay_for(n) for n in range(3)] == [2.0, 2.0, 2.0]

    def test_exponential_backoff(self):
        policy = RetryPolicy(delay_seconds=1.0, backoff=2.0)
        assert [policy.delay_for(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_jitter_bounded(self):
        policy = RetryPolicy(delay_seconds=1.0, jitter_seconds=0.5)
        for n in range(20):
            assert 1.0 <= policy.delay_for(0) <= 1.5
