import importlib

import pytest


backoff = importlib.import_module("src.delivery.backoff")
RetryPolicy = backoff.RetryPolicy


def test_ceiling_doubles_until_cap():
    policy = RetryPolicy(base_seconds=1.0, cap_seconds=60.0, max_attempts=8)

    ceilings = [policy.ceiling_for(attempt) for attempt in range(1, 9)]

    assert ceilings == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0]


def test_delay_stays_between_half_ceiling_and_ceiling():
    policy = RetryPolicy(base_seconds=1.0, cap_seconds=60.0)

    assert policy.delay_for(5, rng=lambda: 0.0) == 8.0
    assert policy.delay_for(5, rng=lambda: 1.0) == 16.0
    assert policy.delay_for(100, rng=lambda: 0.5) == 45.0


def test_exhaustion_is_reached_at_max_attempts():
    policy = RetryPolicy(max_attempts=8)

    assert policy.is_exhausted(7) is False
    assert policy.is_exhausted(8) is True


def test_invalid_policy_is_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_seconds=10.0, cap_seconds=1.0)
