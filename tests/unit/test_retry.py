import asyncio

import pytest

from core.exceptions import ConfigValidationError, FatalAdapterError, StepTimeoutError, TransientAdapterError
from engine.retry import RetryPolicy, compute_delay, is_retryable
from schemas.pipeline import ErrorHandlingConfig, ErrorStrategy, Step

from conftest import BrokenOperator, PriceFilter


class TestBackoff:
    def test_exponential_growth(self):
        delays = [compute_delay(n, 100, 10_000, 2.0) for n in range(4)]

        assert delays == [100, 200, 400, 800]

    def test_capped_at_max_delay(self):
        assert compute_delay(10, 100, 5_000, 2.0) == 5_000

    def test_huge_attempt_does_not_overflow(self):
        assert compute_delay(5_000, 100, 5_000, 10.0) == 5_000

    def test_policy_delay_matches_compute_delay(self):
        policy = RetryPolicy(max_attempts=3, initial_delay_ms=50, max_delay_ms=1_000, backoff_multiplier=3.0)

        assert policy.delay_ms(2) == 450

    @pytest.mark.asyncio
    async def test_zero_delay_does_not_sleep(self):
        policy = RetryPolicy(max_attempts=1, initial_delay_ms=0)

        await asyncio.wait_for(policy.wait(0), timeout=0.1)


class TestRetryClassification:
    def test_transient_errors_are_retryable(self):
        assert is_retryable(TransientAdapterError("reset")) is True
        assert is_retryable(StepTimeoutError("slow")) is True
        assert is_retryable(asyncio.TimeoutError()) is True

    def test_non_retryable_errors(self):
        assert is_retryable(FatalAdapterError("bad")) is False
        assert is_retryable(ConfigValidationError("bad config")) is False

    def test_foreign_errors_depend_on_adapter_purity(self):
        error = ValueError("boom")

        assert is_retryable(error) is False
        assert is_retryable(error, BrokenOperator()) is False
        assert is_retryable(error, PriceFilter()) is True

    def test_fatal_error_from_pure_adapter_is_not_retried(self):
        assert is_retryable(FatalAdapterError("bad"), PriceFilter()) is False


class TestPolicyResolution:
    def step(self, **options):
        return Step.model_validate({"key": "filter", "type": "TRANSFORM", **options})

    def test_step_retries_take_precedence(self):
        policy = RetryPolicy.for_step(
            self.step(retries=5, retryDelayMs=10),
            ErrorHandlingConfig(strategy=ErrorStrategy.RETRY, max_retries=1),
        )

        assert policy.max_attempts == 5
        assert policy.initial_delay_ms == 10

    def test_retry_strategy_uses_pipeline_max_retries(self):
        policy = RetryPolicy.for_step(
            self.step(),
            ErrorHandlingConfig(strategy=ErrorStrategy.RETRY, max_retries=2, retry_delay_ms=25, backoff_multiplier=1.5),
        )

        assert policy.max_attempts == 2
        assert policy.initial_delay_ms == 25
        assert policy.backoff_multiplier == 1.5

    def test_step_on_error_overrides_strategy(self):
        policy = RetryPolicy.for_step(self.step(onError="RETRY"), ErrorHandlingConfig(max_retries=4))

        assert policy.max_attempts == 4

    def test_other_strategies_do_not_retry(self):
        policy = RetryPolicy.for_step(self.step(), ErrorHandlingConfig(strategy=ErrorStrategy.QUARANTINE))

        assert policy.max_attempts == 0
        assert policy.exhausted(0) is True

    def test_exhaustion_counts_retries(self):
        policy = RetryPolicy(max_attempts=2)

        assert [policy.exhausted(n) for n in range(3)] == [False, False, True]
