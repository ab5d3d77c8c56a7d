"""
Unit tests for RetryPolicy and Retrier.
"""

import asyncio

import pytest

from coach_jobs import PermanentError, Retrier, RetryExhausted, RetryPolicy, RetrySuccess


class Flaky:
    """Callable that fails a fixed number of times before succeeding."""

    def __init__(self, failures, value="ok", error=ConnectionError):
        self.failures = failures
        self.value = value
        self.error = error
        self.calls = 0

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return self.value


@pytest.mark.unit
class TestRetryPolicy:
    """Tests for the backoff schedule."""

    def test_defaults(self):
        """Default schedule is 1s, base 2, three attempts."""
        policy = RetryPolicy()
        assert policy.initial_backoff == 1.0
        assert policy.base == 2.0
        assert policy.max_attempts == 3

    def test_delay_grows_geometrically(self):
        """Each wait is the previous one times the base."""
        policy = RetryPolicy(initial_backoff=1, base=2, max_attempts=5)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1, 2, 4, 8]

    def test_delay_capped(self):
        """max_backoff limits a single wait."""
        policy = RetryPolicy(initial_backoff=1, base=10, max_attempts=5, max_backoff=30)
        assert policy.delay_for(3) == 30

    @pytest.mark.parametrize("kwargs", [
        {"initial_backoff": -1},
        {"base": 0.5},
        {"max_attempts": 0},
        {"max_backoff": -2},
    ])
    def test_invalid_values_rejected(self, kwargs):
        """Out-of-range settings raise ValueError."""
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_attempt_numbers_start_at_one(self):
        """delay_for(0) is meaningless."""
        with pytest.raises(ValueError):
            RetryPolicy().delay_for(0)


@pytest.mark.unit
class TestRetrier:
    """Tests for Retrier.run."""

    async def test_success_first_try(self, recording_sleep):
        """A succeeding operation runs once and never sleeps."""
        op = Flaky(0, value=42)
        result = await Retrier(sleep=recording_sleep).run(op)

        assert isinstance(result, RetrySuccess)
        assert result.ok
        assert result.value == 42
        assert result.attempts == 1
        assert recording_sleep.delays == []

    async def test_succeeds_after_failures(self, recording_sleep):
        """Failures are retried with growing waits until the operation succeeds."""
        op = Flaky(2)
        result = await Retrier(RetryPolicy(initial_backoff=1, base=2, max_attempts=3),
                               sleep=recording_sleep).run(op)

        assert result.ok
        assert result.attempts == 3
        assert op.calls == 3
        assert recording_sleep.delays == [1, 2]

    async def test_attempts_bounded(self, recording_sleep):
        """An always-failing operation is called exactly max_attempts times."""
        op = Flaky(100)
        result = await Retrier(RetryPolicy(max_attempts=3), sleep=recording_sleep).run(op)

        assert isinstance(result, RetryExhausted)
        assert not result.ok
        assert result.attempts == 3
        assert op.calls == 3
        assert isinstance(result.last_error, ConnectionError)
        assert str(result.last_error) == "failure 3"
        assert not result.permanent
        # No wait after the last attempt
        assert recording_sleep.delays == [1.0, 2.0]

    async def test_permanent_error_stops_retrying(self, recording_sleep):
        """PermanentError ends the run after a single attempt."""
        op = Flaky(100, error=PermanentError)
        result = await Retrier(RetryPolicy(max_attempts=5), sleep=recording_sleep).run(op)

        assert not result.ok
        assert result.permanent
        assert result.attempts == 1
        assert op.calls == 1
        assert recording_sleep.delays == []

    async def test_sync_operation(self, recording_sleep):
        """Plain functions are supported as well as coroutines."""
        result = await Retrier(sleep=recording_sleep).run(lambda a, b: a + b, 2, b=3)

        assert result.ok
        assert result.value == 5

    async def test_arguments_forwarded(self, recording_sleep):
        """Positional and keyword arguments reach every attempt."""
        seen = []

        async def op(subscriber_id, message):
            seen.append((subscriber_id, message))
            if len(seen) < 2:
                raise RuntimeError("transient")
            return "sent"

        result = await Retrier(sleep=recording_sleep).run(op, "sub-1", message="hello")

        assert result.value == "sent"
        assert seen == [("sub-1", "hello"), ("sub-1", "hello")]

    async def test_in_flight_tracking(self, utc_clock):
        """Operations waiting between attempts are listed with their next retry time."""
        release = asyncio.Event()

        async def blocking_sleep(delay):
            await release.wait()

        retrier = Retrier(RetryPolicy(initial_backoff=5, max_attempts=2), sleep=blocking_sleep, clock=utc_clock)
        task = asyncio.create_task(retrier.run(Flaky(1)))
        await asyncio.sleep(0.01)

        waiting = retrier.in_flight()
        assert len(waiting) == 1
        assert waiting[0].attempt == 1
        assert waiting[0].operation_id.startswith("Flaky:")
        assert (waiting[0].next_retry_at - utc_clock()).total_seconds() == 5

        release.set()
        result = await task
        assert result.ok
        assert retrier.in_flight() == []
