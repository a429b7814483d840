"""Tests for the exponential backoff policy."""

from worker_service.queue.retry import RetryPolicy


def test_delay_doubles_from_base_until_cap():
    policy = RetryPolicy(base_delay_seconds=5.0, max_delay_seconds=60.0)
    assert [policy.get_delay(a) for a in range(6)] == [5.0, 10.0, 20.0, 40.0, 60.0, 60.0]


def test_delay_is_monotonic_and_capped():
    policy = RetryPolicy(base_delay_seconds=1.5, max_delay_seconds=45.0)
    delays = [policy.get_delay(a) for a in range(50)]
    assert delays == sorted(delays)
    assert max(delays) == 45.0


def test_huge_attempt_numbers_stay_at_cap():
    policy = RetryPolicy()
    assert policy.get_delay(10_000) == policy.max_delay_seconds


def test_negative_attempt_treated_as_first():
    assert RetryPolicy().get_delay(-3) == 5.0


def test_jitter_only_shortens_within_ten_percent():
    policy = RetryPolicy(base_delay_seconds=10.0, max_delay_seconds=60.0, jitter=True)
    for _ in range(100):
        delay = policy.get_delay(1)
        assert 18.0 <= delay <= 20.0
