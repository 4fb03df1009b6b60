"""Tests for retries with backoff and deadline-bounded waits."""

import pytest
from hypothesis import given, strategies as st

from autospotting.core.config import Config
from autospotting.core.deadline import Deadline, wait_until
from autospotting.core.exceptions import ReplacementTimeout, ServiceError, TransientProviderError
from autospotting.core.retry import RetryPolicy


class Flaky:
    """Callable that fails a given number of times before succeeding."""

    def __init__(self, failures, error=None, result="ok"):
        self.failures = failures
        self.error = error or TransientProviderError("Rate exceeded", error_code='Throttling')
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestRetryPolicy:
    """Bounded exponential backoff."""

    def test_from_config(self):
        policy = RetryPolicy.from_config(Config(retry_max_attempts=7, retry_base_delay=0.5, retry_max_delay=4))

        assert policy == RetryPolicy(max_attempts=7, base_delay=0.5, max_delay=4)

    @given(attempt=st.integers(min_value=1, max_value=30))
    def test_delay_is_bounded(self, attempt):
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=30.0)

        delay = policy.delay_for(attempt)

        ceiling = min(30.0, 2 ** (attempt - 1))
        assert ceiling / 2 <= delay <= ceiling

    def test_succeeds_after_transient_failures(self, deadline, clock):
        func = Flaky(2)

        assert RetryPolicy(3, 0.1, 0.5).call(func, deadline, "testing") == "ok"
        assert func.calls == 3
        assert len(clock.sleeps) == 2

    def test_gives_up_after_max_attempts(self, deadline):
        func = Flaky(5)

        with pytest.raises(TransientProviderError):
            RetryPolicy(3, 0.1, 0.5).call(func, deadline, "testing")

        assert func.calls == 3

    def test_permanent_errors_are_not_retried(self, deadline):
        func = Flaky(1, error=ServiceError("bad request", error_code='ValidationError'))

        with pytest.raises(ServiceError):
            RetryPolicy(3, 0.1, 0.5).call(func, deadline, "testing")

        assert func.calls == 1

    def test_already_applied_mutation_is_not_reissued(self, deadline):
        func = Flaky(1)

        result = RetryPolicy(3, 0.1, 0.5).call(func, deadline, "testing", already_done=lambda: True)

        assert result is None
        assert func.calls == 1

    def test_failing_state_check_counts_as_not_done(self, deadline):
        func = Flaky(1)

        result = RetryPolicy(3, 0.1, 0.5).call(func, deadline, "testing", already_done=Flaky(1, result=False))

        assert result == "ok"
        assert func.calls == 2

    def test_backoff_stops_at_deadline(self, clock):
        deadline = Deadline(1.0, clock=clock.now, sleeper=clock.sleep)

        with pytest.raises(ReplacementTimeout):
            RetryPolicy(10, 5.0, 10.0).call(Flaky(10), deadline, "testing")

        assert sum(clock.sleeps) <= 1.0


class TestDeadline:
    """Run deadline and cancellation."""

    def test_unbounded(self, clock):
        deadline = Deadline(None, clock=clock.now, sleeper=clock.sleep)

        assert deadline.remaining() is None
        assert not deadline.expired
        deadline.check("anything")

    def test_expires_with_clock(self, clock):
        deadline = Deadline(10, clock=clock.now, sleeper=clock.sleep)
        clock.sleep(4)

        assert deadline.remaining() == 6
        clock.sleep(6)
        assert deadline.expired
        with pytest.raises(ReplacementTimeout, match="while launching"):
            deadline.check("launching")

    def test_cancel(self, clock):
        deadline = Deadline(None, clock=clock.now, sleeper=clock.sleep)

        deadline.cancel()

        assert deadline.cancelled
        assert deadline.expired
        assert deadline.remaining() == 0.0

    def test_sleep_never_passes_deadline(self, clock):
        deadline = Deadline(3, clock=clock.now, sleeper=clock.sleep)

        deadline.sleep(100)

        assert clock.sleeps == [3]
        deadline.sleep(5)
        assert clock.sleeps == [3]


class TestWaitUntil:
    """Polling with growing intervals."""

    def test_returns_first_truthy_result(self, deadline, clock):
        results = iter([None, None, "running"])

        assert wait_until(lambda: next(results), timeout=60, interval=1, deadline=deadline, description="x") == "running"
        assert len(clock.sleeps) == 2

    def test_intervals_grow(self, deadline, clock):
        results = iter([None] * 5 + [True])

        wait_until(lambda: next(results), timeout=600, interval=10, deadline=deadline, description="x")

        assert clock.sleeps[-1] > clock.sleeps[0]
        assert all(8 <= s for s in clock.sleeps)

    def test_local_timeout(self, deadline, clock):
        started = clock.now()

        with pytest.raises(ReplacementTimeout, match="Timed out"):
            wait_until(lambda: None, timeout=30, interval=1, deadline=deadline, description="waiting for x")

        assert clock.now() - started >= 30
        assert not deadline.expired

    def test_run_deadline(self, clock):
        deadline = Deadline(20, clock=clock.now, sleeper=clock.sleep)

        with pytest.raises(ReplacementTimeout, match="Run deadline"):
            wait_until(lambda: None, timeout=600, interval=1, deadline=deadline, description="waiting for x")

        assert deadline.expired
