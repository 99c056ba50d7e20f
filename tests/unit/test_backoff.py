"""Tests for the shared backoff policy."""

import random

import pytest

from eduverse_engine.common.backoff import BackoffPolicy, policy_from_settings
from conftest import make_settings


class TestRawDelay:
    def test_doubles_per_attempt(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=100.0, jitter=0.0)
        assert [policy.raw_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=5.0)
        assert policy.raw_delay(10) == 5.0

    def test_attempt_zero_is_immediate(self):
        assert BackoffPolicy().raw_delay(0) == 0.0


class TestJitter:
    def test_within_twenty_percent(self):
        policy = BackoffPolicy(base_delay=10.0, max_delay=1000.0, jitter=0.2)
        rng = random.Random(7)
        for attempt in range(1, 6):
            raw = policy.raw_delay(attempt)
            for _ in range(50):
                d = policy.delay(attempt, rng)
                assert raw * 0.8 <= d <= raw * 1.2

    def test_never_above_cap(self):
        policy = BackoffPolicy(base_delay=10.0, max_delay=10.0, jitter=0.2)
        rng = random.Random(1)
        assert all(policy.delay(3, rng) <= 10.0 for _ in range(100))

    def test_zero_jitter_is_deterministic(self):
        policy = BackoffPolicy(base_delay=2.0, jitter=0.0)
        assert policy.delay(2) == 4.0


class TestAttempts:
    def test_exhausted(self):
        policy = BackoffPolicy(max_attempts=3)
        assert not policy.exhausted(2)
        assert policy.exhausted(3)

    def test_unbounded(self):
        assert not BackoffPolicy(max_attempts=None).exhausted(1000)

    def test_with_attempts_copies(self):
        policy = BackoffPolicy(max_attempts=3)
        assert policy.with_attempts(7).max_attempts == 7
        assert policy.max_attempts == 3


class TestValidation:
    def test_rejects_negative_delay(self):
        with pytest.raises(ValueError):
            BackoffPolicy(base_delay=-1)

    def test_rejects_shrinking_multiplier(self):
        with pytest.raises(ValueError):
            BackoffPolicy(multiplier=0.5)

    def test_rejects_full_jitter(self):
        with pytest.raises(ValueError):
            BackoffPolicy(jitter=1.0)


def test_policy_from_settings():
    settings = make_settings(retry_base_delay=0.25, retry_max_delay=8.0, retry_jitter=0.1, submit_max_retries=4)
    policy = policy_from_settings(settings)
    assert policy.base_delay == 0.25
    assert policy.max_delay == 8.0
    assert policy.jitter == 0.1
    assert policy.max_attempts == 4
