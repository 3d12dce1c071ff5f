import asyncio

import aiohttp
import pytest

from utils.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    ErrorKind,
    HttpStatusError,
    RemoteCallFailed,
    RetryPolicy,
    RpcError,
    classify_error,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class SleepRecorder:
    def __init__(self):
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


def _breaker(clock=None, sleep=None, **kwargs) -> CircuitBreaker:
    return CircuitBreaker(
        "test_rpc",
        clock=clock or FakeClock(),
        sleep=sleep or SleepRecorder(),
        rand=lambda low, high: 0.0,
        **kwargs,
    )


def _failing(error: Exception):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        raise error

    return operation, calls


# ---------------------------------------------------------------------------
# Error classification and backoff
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (HttpStatusError(408), ErrorKind.NETWORK),
        (asyncio.TimeoutError(), ErrorKind.NETWORK),
        (aiohttp.ClientConnectionError("refused"), ErrorKind.NETWORK),
        (HttpStatusError(502), ErrorKind.SERVER),
        (HttpStatusError(522), ErrorKind.SERVER),
        (RpcError(-32005, "Node is behind"), ErrorKind.RPC),
        (RpcError(429, "Too many requests"), ErrorKind.RPC),
        (RpcError(-32602, "Invalid params"), ErrorKind.FATAL),
        (HttpStatusError(400), ErrorKind.FATAL),
        (ValueError("bad payload"), ErrorKind.FATAL),
    ],
)
def test_classify_error(error, expected):
    assert classify_error(error) == expected


def test_backoff_uses_larger_base_for_network_errors_and_caps():
    policy = RetryPolicy()
    no_jitter = lambda low, high: 0.0  # noqa: E731

    assert policy.backoff(ErrorKind.NETWORK, 1, no_jitter) == 3.0
    assert policy.backoff(ErrorKind.NETWORK, 2, no_jitter) == 6.0
    assert policy.backoff(ErrorKind.SERVER, 1, no_jitter) == 1.0
    assert policy.backoff(ErrorKind.RPC, 3, no_jitter) == 4.0
    assert policy.backoff(ErrorKind.NETWORK, 6, no_jitter) == 30.0
    assert policy.backoff(ErrorKind.SERVER, 1, lambda low, high: high) == 2.0


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_transient_failures_are_retried_then_succeed():
    sleep = SleepRecorder()
    breaker = _breaker(sleep=sleep)
    outcomes = [HttpStatusError(502), HttpStatusError(503), {"ok": True}]

    async def operation():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    result = await breaker.call(operation, "getTransaction abc")

    assert result == {"ok": True}
    assert sleep.waits == [1.0, 2.0]
    assert breaker.failure_count == 0
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_exhausted_retries_raise_with_context_and_cause():
    breaker = _breaker()
    cause = HttpStatusError(500, "boom")
    operation, calls = _failing(cause)

    with pytest.raises(RemoteCallFailed) as excinfo:
        await breaker.call(operation, "getSignaturesForAddress W")

    assert calls["count"] == 4
    assert excinfo.value.context == "getSignaturesForAddress W"
    assert excinfo.value.cause is cause
    assert excinfo.value.attempts == 4
    # one failed call counts once, not once per attempt
    assert breaker.failure_count == 1


@pytest.mark.asyncio
async def test_fatal_errors_fail_fast_without_counting():
    sleep = SleepRecorder()
    breaker = _breaker(sleep=sleep)
    operation, calls = _failing(HttpStatusError(400, "bad request"))

    with pytest.raises(RemoteCallFailed):
        await breaker.call(operation, "ctx")

    assert calls["count"] == 1
    assert sleep.waits == []
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_non_retryable_rpc_error_is_not_counted():
    breaker = _breaker()
    operation, calls = _failing(RpcError(-32603, "Internal error"))

    with pytest.raises(RemoteCallFailed) as excinfo:
        await breaker.call(operation, "ctx")

    assert calls["count"] == 1
    assert isinstance(excinfo.value.cause, RpcError)
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_rate_limit_rpc_error_is_retried_and_counted():
    breaker = _breaker()
    operation, calls = _failing(RpcError(-32429, "rate limited"))

    with pytest.raises(RemoteCallFailed):
        await breaker.call(operation, "ctx")

    assert calls["count"] == 4
    assert breaker.failure_count == 1


# ---------------------------------------------------------------------------
# Circuit state machine
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_circuit_opens_after_max_failures_and_rejects_without_calling():
    clock = FakeClock()
    breaker = _breaker(clock=clock, max_failures=5, cooldown_seconds=60)
    operation, calls = _failing(HttpStatusError(503))

    for _ in range(5):
        with pytest.raises(RemoteCallFailed):
            await breaker.call(operation, "ctx")

    assert breaker.state == CircuitState.OPEN
    attempts_so_far = calls["count"]

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(operation, "getTransaction xyz")

    assert calls["count"] == attempts_so_far
    assert excinfo.value.endpoint == "test_rpc"
    assert excinfo.value.retry_in == pytest.approx(60)
    assert "Try again in 60s" in str(excinfo.value)


@pytest.mark.asyncio
async def test_half_open_success_resets_failure_count():
    clock = FakeClock()
    breaker = _breaker(clock=clock, max_failures=2, cooldown_seconds=60)
    failing, _ = _failing(HttpStatusError(503))

    for _ in range(2):
        with pytest.raises(RemoteCallFailed):
            await breaker.call(failing, "ctx")
    assert breaker.state == CircuitState.OPEN

    clock.now += 60.5

    async def healthy():
        return "pong"

    assert await breaker.call(healthy, "ctx") == "pong"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_half_open_failure_reopens_with_fresh_cooldown():
    clock = FakeClock()
    breaker = _breaker(clock=clock, max_failures=1, cooldown_seconds=60, policy=RetryPolicy(max_attempts=1))
    failing, calls = _failing(HttpStatusError(502))

    with pytest.raises(RemoteCallFailed):
        await breaker.call(failing, "ctx")
    assert breaker.state == CircuitState.OPEN

    clock.now += 61
    with pytest.raises(RemoteCallFailed):
        await breaker.call(failing, "ctx")

    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.next_attempt_time == pytest.approx(clock.now + 60)
    assert calls["count"] == 2

    with pytest.raises(CircuitOpenError):
        await breaker.call(failing, "ctx")
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_circuit_stays_open_until_cooldown_strictly_elapsed():
    clock = FakeClock()
    breaker = _breaker(clock=clock, max_failures=1, cooldown_seconds=60, policy=RetryPolicy(max_attempts=1))
    failing, calls = _failing(HttpStatusError(500))

    with pytest.raises(RemoteCallFailed):
        await breaker.call(failing, "ctx")

    clock.now += 60
    with pytest.raises(CircuitOpenError):
        await breaker.call(failing, "ctx")
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_half_open_allows_a_single_trial_call():
    clock = FakeClock()
    breaker = _breaker(clock=clock, max_failures=1, cooldown_seconds=60, policy=RetryPolicy(max_attempts=1))
    failing, _ = _failing(HttpStatusError(503))

    with pytest.raises(RemoteCallFailed):
        await breaker.call(failing, "ctx")
    clock.now += 61

    release = asyncio.Event()
    started = asyncio.Event()
    calls = {"count": 0}

    async def slow_trial():
        calls["count"] += 1
        started.set()
        await release.wait()
        return "pong"

    trial = asyncio.create_task(breaker.call(slow_trial, "trial"))
    await started.wait()
    assert breaker.state == CircuitState.HALF_OPEN

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(slow_trial, "second")
    assert excinfo.value.endpoint == "test_rpc"
    assert calls["count"] == 1

    release.set()
    assert await trial == "pong"
    assert breaker.state == CircuitState.CLOSED
    assert calls["count"] == 1
