"""Unit tests for the backoff policy and retry helper."""
import random

import pytest

from creditflow.errors import GenerationRejectedError, TransportError
from creditflow.utils.backoff import BackoffPolicy, retry_with_backoff
from conftest import RecordingSleep


def test_poll_schedule_is_capped_exponential() -> None:
    policy = BackoffPolicy(initial_delay=1.0, multiplier=1.5, max_delay=15.0, max_attempts=20)

    delays = policy.delays()

    assert len(delays) == 19
    assert delays[:4] == [1.0, 1.5, 2.25, 3.375]
    assert max(delays) == 15.0
    assert delays[-1] == 15.0
    assert delays == sorted(delays)


def test_fixed_delay_policy() -> None:
    policy = BackoffPolicy(initial_delay=2.0, multiplier=1.0, max_delay=2.0, max_attempts=3)

    assert policy.delays() == [2.0, 2.0]


def test_jitter_stays_within_bounds() -> None:
    policy = BackoffPolicy(initial_delay=1.0, multiplier=2.0, max_delay=4.0, max_attempts=5, jitter=0.5)
    rng = random.Random(7)

    for n, delay in enumerate(policy.delays(rng)):
        base = min(2.0**n, 4.0)
        assert base <= delay <= base + 0.5


@pytest.mark.parametrize(
    "kwargs",
    [{"initial_delay": -1}, {"multiplier": 0.5}, {"max_attempts": 0}, {"jitter": -0.1}],
)
def test_invalid_policies(kwargs) -> None:
    with pytest.raises(ValueError):
        BackoffPolicy(**kwargs)


@pytest.mark.asyncio
async def test_retry_until_success() -> None:
    sleep = RecordingSleep()
    attempts = []

    async def flaky(attempt: int) -> str:
        attempts.append(attempt)
        if attempt < 3:
            raise TransportError("timeout")
        return "ok"

    policy = BackoffPolicy(initial_delay=2.0, multiplier=1.0, max_delay=2.0, max_attempts=3)
    result = await retry_with_backoff(flaky, policy, retry_on=(TransportError,), sleep=sleep)

    assert result == "ok"
    assert attempts == [1, 2, 3]
    assert sleep.delays == [2.0, 2.0]


@pytest.mark.asyncio
async def test_retry_gives_up_with_last_error() -> None:
    sleep = RecordingSleep()

    async def always_down(attempt: int) -> str:
        raise TransportError(f"down {attempt}")

    policy = BackoffPolicy(initial_delay=1.0, multiplier=2.0, max_delay=10.0, max_attempts=3)
    with pytest.raises(TransportError, match="down 3"):
        await retry_with_backoff(always_down, policy, retry_on=(TransportError,), sleep=sleep)

    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately() -> None:
    sleep = RecordingSleep()
    calls = []

    async def refused(attempt: int) -> str:
        calls.append(attempt)
        raise GenerationRejectedError("refused")

    with pytest.raises(GenerationRejectedError):
        await retry_with_backoff(refused, BackoffPolicy(max_attempts=5), retry_on=(TransportError,), sleep=sleep)

    assert calls == [1]
    assert sleep.delays == []
