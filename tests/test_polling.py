import asyncio

import pytest

from inbox.polling import BackoffPolicy, PollTimeout, poll_until


def test_delays_grow_and_are_capped():
    policy = BackoffPolicy(base_delay=1.0, factor=2.0, max_delay=5.0, max_attempts=6)
    assert list(policy.delays()) == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_client_policy_is_in_milliseconds():
    policy = BackoffPolicy(base_delay=1.0, factor=2.0, max_delay=30.0, max_attempts=10)
    assert policy.to_client() == {"base_ms": 1000, "max_ms": 30000, "factor": 2.0, "max_attempts": 10}


def test_poll_until_returns_first_value(clock):
    answers = iter([None, None, "ready"])

    async def check():
        return next(answers)

    result = asyncio.run(poll_until(check, policy=BackoffPolicy(1.0, 2.0, 10.0, 5), clock=clock))
    assert result == "ready"
    assert clock.sleeps == [1.0, 2.0]


def test_poll_until_gives_up_after_max_attempts(clock):
    calls = []

    async def check():
        calls.append(1)
        return None

    with pytest.raises(PollTimeout) as exc:
        asyncio.run(poll_until(check, policy=BackoffPolicy(1.0, 1.0, 1.0, 3), clock=clock))
    assert exc.value.attempts == 3
    assert len(calls) == 3


def test_poll_until_is_bounded_by_elapsed_time(clock):
    async def check():
        return None

    with pytest.raises(PollTimeout) as exc:
        asyncio.run(poll_until(check, policy=BackoffPolicy(2.0, 1.0, 2.0, 1000), clock=clock, timeout=7.0))
    # 0, 2, 4, 6 elapsed; the next wait would pass 7 seconds
    assert exc.value.attempts == 4
    assert clock.now == 6.0


def test_check_errors_propagate(clock):
    async def check():
        raise RuntimeError("gateway exploded")

    with pytest.raises(RuntimeError):
        asyncio.run(poll_until(check, policy=BackoffPolicy(), clock=clock))
