import asyncio

import pytest

from allora_forge_relay.retry import RetryPolicy, retry_async


def test_delays_double_from_base():
    policy = RetryPolicy.from_millis(3, 1000)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_always_failing_call_stops_after_three_attempts(sleep_recorder):
    calls = []

    async def boom():
        calls.append(1)
        raise RuntimeError("node down")

    attempt = asyncio.run(retry_async(boom, RetryPolicy(), label="boom", sleep=sleep_recorder))

    assert not attempt.ok
    assert attempt.attempts == 3
    assert len(calls) == 3
    assert isinstance(attempt.error, RuntimeError)
    assert sleep_recorder.delays == [pytest.approx(1.0), pytest.approx(2.0)]


def test_success_after_transient_failure(sleep_recorder):
    outcomes = [RuntimeError("flaky"), 42]

    async def flaky():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    attempt = asyncio.run(retry_async(flaky, RetryPolicy(), label="flaky", sleep=sleep_recorder))

    assert attempt.ok
    assert attempt.value == 42
    assert attempt.attempts == 2
    assert sleep_recorder.delays == [1.0]


def test_should_retry_false_stops_immediately(sleep_recorder):
    async def rejected():
        raise ValueError("insufficient fee")

    attempt = asyncio.run(
        retry_async(rejected, RetryPolicy(), label="rejected", should_retry=lambda exc: False, sleep=sleep_recorder)
    )

    assert attempt.attempts == 1
    assert sleep_recorder.delays == []


def test_on_retry_sees_each_failure_but_the_last(sleep_recorder):
    seen = []

    async def boom():
        raise RuntimeError("x")

    asyncio.run(
        retry_async(
            boom, RetryPolicy(), label="boom", on_retry=lambda exc, n: seen.append(n), sleep=sleep_recorder
        )
    )

    assert seen == [1, 2]


def test_real_sleep_spacing_is_close_to_policy():
    loop_time = []

    async def boom():
        loop_time.append(asyncio.get_running_loop().time())
        raise RuntimeError("x")

    async def run():
        return await retry_async(boom, RetryPolicy(base_delay=0.05), label="timed")

    attempt = asyncio.run(run())
    stamps = [b - a for a, b in zip(loop_time, loop_time[1:])]

    assert attempt.attempts == 3
    assert 0.045 <= stamps[0] < 0.5
    assert 0.095 <= stamps[1] < 0.6
