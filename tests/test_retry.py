"""Tests for ResilientCaller."""

import asyncio

import pytest

from dataflow.errors import RetriesExhausted, RetryCancelled, TransientFetchError
from dataflow.resilience.retry import ResilientCaller


class Flaky:
    """Fails ``failures`` times with TransientFetchError, then returns ``value``"""

    def __init__(self, failures, value="ok"):
        self.failures = failures
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientFetchError(f"rpc timeout #{self.calls}", context={"pair": "cUSD_CELO"})
        return self.value


class TestBackoff:
    def test_fails_twice_then_succeeds(self, fast_retry, sleeps):
        operation = Flaky(failures=2, value=[1, 2, 3])

        result = asyncio.run(fast_retry.execute(operation))

        assert result == [1, 2, 3]
        assert operation.calls == 3
        assert sleeps.delays == [1.0, 2.0]

    def test_first_try_success_never_waits(self, fast_retry, sleeps):
        assert asyncio.run(fast_retry.execute(Flaky(failures=0))) == "ok"
        assert sleeps.delays == []

    def test_exhaustion_raises_with_last_error(self, fast_retry, sleeps):
        operation = Flaky(failures=5)

        with pytest.raises(RetriesExhausted) as excinfo:
            asyncio.run(fast_retry.execute(operation, description="poll cUSD_CELO"))

        assert operation.calls == 3
        assert sleeps.delays == [1.0, 2.0]
        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.last_error, TransientFetchError)
        assert excinfo.value.__cause__ is excinfo.value.last_error
        assert excinfo.value.context["pair"] == "cUSD_CELO"

    def test_per_call_overrides(self, fast_retry, sleeps):
        with pytest.raises(RetriesExhausted):
            asyncio.run(fast_retry.execute(Flaky(failures=9), max_attempts=4, base_delay=0.5))
        assert sleeps.delays == [0.5, 1.0, 2.0]

    def test_non_retryable_error_propagates_immediately(self, fast_retry, sleeps):
        calls = []

        async def broken():
            calls.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            asyncio.run(fast_retry.execute(broken))
        assert len(calls) == 1
        assert sleeps.delays == []

    def test_plain_callable(self, fast_retry):
        assert asyncio.run(fast_retry.execute(lambda: 42)) == 42

    def test_backoff_delay_schedule(self):
        caller = ResilientCaller(base_delay=1.0)
        assert [caller.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            ResilientCaller(max_attempts=0)


class TestCancellation:
    def test_stop_interrupts_long_backoff(self):
        async def scenario():
            stop = asyncio.Event()
            caller = ResilientCaller(max_attempts=3, base_delay=60.0, stop_event=stop)
            asyncio.get_running_loop().call_later(0.05, stop.set)
            started = asyncio.get_running_loop().time()
            with pytest.raises(RetryCancelled):
                await caller.execute(Flaky(failures=5))
            return asyncio.get_running_loop().time() - started

        elapsed = asyncio.run(scenario())
        assert elapsed < 5

    def test_already_stopped_does_not_wait(self):
        async def scenario():
            stop = asyncio.Event()
            stop.set()
            caller = ResilientCaller(max_attempts=3, base_delay=60.0, stop_event=stop)
            operation = Flaky(failures=5)
            with pytest.raises(RetryCancelled):
                await caller.execute(operation)
            return operation.calls

        assert asyncio.run(scenario()) == 1

    def test_real_wait_without_stop_event(self):
        caller = ResilientCaller(max_attempts=2, base_delay=0.01)
        assert asyncio.run(caller.execute(Flaky(failures=1))) == "ok"
