"""Tests for retry strategies and the retry loop."""

import pytest

from shipwright.core.errors import BuildError, PublishError, RegistryTransportError
from shipwright.execution.retry import ExponentialBackoff, NoRetry, RetryContext


class TestExponentialBackoff:
    def test_delay_grows_and_caps(self):
        strategy = ExponentialBackoff(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [strategy.next_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_in_range(self):
        strategy = ExponentialBackoff(base_delay=4.0, jitter=True, jitter_range=0.25)
        for _ in range(50):
            assert 3.0 <= strategy.next_delay(0) <= 5.0

    def test_should_retry_bounds_attempts(self):
        strategy = ExponentialBackoff(max_retries=3)
        assert strategy.should_retry(1, PublishError("x"))
        assert strategy.should_retry(2, PublishError("x"))
        assert not strategy.should_retry(3, PublishError("x"))

    def test_default_filter_uses_retryable_flag(self):
        strategy = ExponentialBackoff(max_retries=5)
        assert strategy.should_retry(1, RegistryTransportError("reset"))
        assert not strategy.should_retry(1, BuildError("compile"))

    def test_explicit_error_types(self):
        strategy = ExponentialBackoff(max_retries=5, retryable_errors=(PublishError,))
        assert strategy.should_retry(1, PublishError("x"))
        assert not strategy.should_retry(1, ConnectionError("x"))

    def test_no_retry(self):
        assert NoRetry().should_retry(0, PublishError("x")) is False


class TestRetryContext:
    def test_success_after_transient_failures(self):
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise PublishError("registry hiccup")
            return "ok"

        ctx = RetryContext(ExponentialBackoff(max_retries=3, base_delay=2.0, jitter=False), sleep=sleeps.append)
        assert ctx.run(flaky) == "ok"
        assert ctx.attempts == 3
        assert sleeps == [2.0, 4.0]
        assert len(ctx.errors) == 2

    def test_gives_up_after_max_retries(self):
        ctx = RetryContext(ExponentialBackoff(max_retries=3, jitter=False), sleep=lambda _: None)

        def always_fails():
            raise PublishError("down")

        with pytest.raises(PublishError):
            ctx.run(always_fails)
        assert ctx.attempts == 3

    def test_fatal_error_not_retried(self):
        ctx = RetryContext(ExponentialBackoff(max_retries=3), sleep=lambda _: pytest.fail("slept"))

        def broken():
            raise BuildError("bad source")

        with pytest.raises(BuildError):
            ctx.run(broken)
        assert ctx.attempts == 1

    def test_on_retry_callback(self):
        seen = []
        ctx = RetryContext(
            ExponentialBackoff(max_retries=2, base_delay=1.0, jitter=False),
            on_retry=lambda attempt, error, delay: seen.append((attempt, str(error), delay)),
            sleep=lambda _: None,
        )
        with pytest.raises(PublishError):
            ctx.run(lambda: (_ for _ in ()).throw(PublishError("x")))
        assert seen == [(1, "x", 1.0)]
