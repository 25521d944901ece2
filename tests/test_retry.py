from __future__ import annotations

import asyncio
import random

import pytest

from journalq.jobs.errors import (
    HandlerNotRegisteredError,
    NonRetryableJobError,
    RetryableJobError,
)
from journalq.jobs.retry import RetryPolicy

from helpers import make_settings


class _StatusError(Exception):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class TestClassification:
    @pytest.fixture(name="policy")
    def policy_fixture(self):
        return RetryPolicy()

    @pytest.mark.parametrize("error", [
        RetryableJobError("upstream hiccup"),
        TimeoutError(),
        asyncio.TimeoutError(),
        ConnectionResetError("reset"),
        _StatusError("slow down", 429),
        _StatusError("bad gateway", 502),
        _StatusError("unavailable", 503),
        RuntimeError("Request timed out"),
        RuntimeError("rate limit exceeded"),
        RuntimeError("upstream returned 504"),
    ])
    def test_transient_errors_are_retryable(self, policy, error):
        assert policy.is_retryable(error) is True

    @pytest.mark.parametrize("error", [
        NonRetryableJobError("bad input"),
        HandlerNotRegisteredError("mystery"),
        _StatusError("unauthorized", 401),
        _StatusError("unprocessable", 422),
        ValueError("entry_text missing"),
        KeyError("entry_id"),
        PermissionError("denied"),
        RuntimeError("something odd happened"),
    ])
    def test_permanent_errors_are_not_retryable(self, policy, error):
        assert policy.is_retryable(error) is False

    def test_explicit_marker_wins_over_message(self):
        policy = RetryPolicy()
        assert policy.is_retryable(NonRetryableJobError("timeout while validating")) is False

    def test_status_code_wins_over_exception_type(self):
        class ValueStatusError(ValueError):
            status_code = 503

        # A ValueError carrying a 503 is still an upstream outage
        assert RetryPolicy().is_retryable(ValueStatusError("unavailable")) is True


class TestBackoff:
    def test_exponential_growth_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, factor=2.0, max_delay=100.0, jitter=0.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=2.0, factor=2.0, max_delay=10.0, jitter=0.0)
        assert policy.delay_for(10) == 10.0

    def test_jitter_only_shortens(self):
        policy = RetryPolicy(base_delay=2.0, factor=2.0, max_delay=10.0, jitter=0.1, rng=random.Random(7))
        for attempt in range(1, 8):
            nominal = min(10.0, 2.0 * 2 ** (attempt - 1))
            delay = policy.delay_for(attempt)
            assert nominal * 0.9 <= delay <= nominal

    def test_per_job_base_overrides_policy_base(self):
        policy = RetryPolicy(base_delay=2.0, factor=2.0, max_delay=10.0, jitter=0.0)
        assert policy.delay_for(2, base=1.0) == 2.0
        assert policy.delay_for(3, base=0.0) == 0.0

    def test_from_config(self):
        settings = make_settings(RETRY_BASE_DELAY=3.0, RETRY_FACTOR=3.0, RETRY_MAX_DELAY=20.0, RETRY_JITTER=0.0)
        policy = RetryPolicy.from_config(settings)
        assert policy.delay_for(1) == 3.0
        assert policy.delay_for(2) == 9.0
        assert policy.delay_for(3) == 20.0
