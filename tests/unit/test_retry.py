"""Tests for bounded exponential backoff."""

import pytest

from src.core.config import RetryConfig
from src.core.exceptions import LLMInvalidResponseError, LLMTimeoutError, PersistenceError
from src.core.retry import backoff_delay, retry_async
from tests.fakes import SleepRecorder


class Flaky:
    """Fails with queued errors, then returns ``value``."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


POLICY = RetryConfig(max_attempts=3, base_delay=1.0, max_delay=8.0)


def test_backoff_doubles_and_caps():
    policy = RetryConfig(max_attempts=6, base_delay=1.0, max_delay=5.0)

    assert [backoff_delay(policy, n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures():
    sleep = SleepRecorder()
    operation = Flaky([LLMTimeoutError("t1"), LLMTimeoutError("t2")])

    result = await retry_async(operation, POLICY, "complete", sleep=sleep)

    assert result == "ok"
    assert operation.calls == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_raises_last_error_when_exhausted():
    sleep = SleepRecorder()
    operation = Flaky([PersistenceError("a"), PersistenceError("b"), PersistenceError("c")])

    with pytest.raises(PersistenceError, match="c"):
        await retry_async(operation, POLICY, "save", sleep=sleep)

    assert operation.calls == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_non_transient_error_not_retried():
    sleep = SleepRecorder()
    operation = Flaky([LLMInvalidResponseError("bad json")])

    with pytest.raises(LLMInvalidResponseError):
        await retry_async(operation, POLICY, "complete", sleep=sleep)

    assert operation.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_single_attempt_policy():
    operation = Flaky([LLMTimeoutError("t")])

    with pytest.raises(LLMTimeoutError):
        await retry_async(operation, RetryConfig(max_attempts=1), "complete", sleep=SleepRecorder())

    assert operation.calls == 1
