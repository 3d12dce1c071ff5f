"""
Resilience Layer
================
Every remote call the scanner makes goes through here.

Public RPC nodes time out, return 5xx from their edge proxies, and
rate-limit without warning. This module gives each remote endpoint:

- Bounded retries with exponential backoff and jitter
- An error classifier that decides what is worth retrying
- A circuit breaker that stops hammering an endpoint once it is clearly down

Circuit breaker states:
- CLOSED: normal operation, calls go through
- OPEN: too many consecutive failures, calls are refused for a cooldown
- HALF_OPEN: cooldown elapsed, a single trial call is let through

One breaker exists per remote endpoint class (Solana RPC, price history,
token metadata), shared by every scan, because it models the endpoint's
health and not any one caller.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import aiohttp

from utils.logger import get_logger

logger = get_logger(__name__)

# HTTP statuses that mean "the server (or its edge proxy) had a bad moment"
RETRYABLE_HTTP_STATUSES = {500, 502, 503, 504, 520, 521, 522, 523, 524}

# HTTP statuses that behave like a network timeout
TIMEOUT_HTTP_STATUSES = {408}

# JSON-RPC error codes that mean "slow down / node behind", not "bad request"
RETRYABLE_RPC_CODES = {-32005, -32429, 429}


# =============================================================================
# Errors
# =============================================================================


class HttpStatusError(Exception):
    """A remote endpoint answered with a non-200 HTTP status."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}: {body[:200]}")


class RpcError(Exception):
    """A JSON-RPC error object returned inside a 200 response."""

    def __init__(self, code: int | None, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC error {code}: {message}")


class ResilienceError(Exception):
    """Base class for failures surfaced by the resilience layer."""

    def __init__(self, context: str, message: str):
        self.context = context
        super().__init__(message)


class RemoteCallFailed(ResilienceError):
    """A remote call failed permanently (non-retryable, or out of attempts)."""

    def __init__(self, context: str, cause: BaseException, attempts: int = 1):
        self.cause = cause
        self.attempts = attempts
        super().__init__(
            context, f"{context} failed after {attempts} attempt(s): {cause}"
        )


class CircuitOpenError(ResilienceError):
    """The endpoint's circuit is open; the call was refused without being made."""

    def __init__(self, context: str, endpoint: str, retry_in: float):
        self.endpoint = endpoint
        self.retry_in = retry_in
        super().__init__(
            context,
            f"Circuit breaker for {endpoint} is OPEN. Service temporarily unavailable "
            f"for {context}. Try again in {max(0, int(retry_in + 0.999))}s",
        )


# =============================================================================
# Error Classification
# =============================================================================


class ErrorKind(str, Enum):
    NETWORK = "network"  # connection refused, DNS, reset, timeouts, HTTP 408
    SERVER = "server"  # 5xx and edge-proxy 52x
    RPC = "rpc"  # retryable JSON-RPC error (rate limit / node behind)
    FATAL = "fatal"  # anything else: bad request, 4xx, unexpected payload


def classify_error(error: BaseException) -> ErrorKind:
    """Decide which bucket an exception from a remote call belongs to."""
    if isinstance(error, HttpStatusError):
        if error.status in TIMEOUT_HTTP_STATUSES:
            return ErrorKind.NETWORK
        if error.status in RETRYABLE_HTTP_STATUSES:
            return ErrorKind.SERVER
        return ErrorKind.FATAL
    if isinstance(error, RpcError):
        if error.code in RETRYABLE_RPC_CODES:
            return ErrorKind.RPC
        return ErrorKind.FATAL
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.NETWORK
    if isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        return ErrorKind.NETWORK
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorKind.NETWORK
    return ErrorKind.FATAL


def is_server_classified(kind: ErrorKind) -> bool:
    """Only endpoint-health failures count toward opening the circuit."""
    return kind in (ErrorKind.NETWORK, ErrorKind.SERVER, ErrorKind.RPC)


# =============================================================================
# Retry Policy
# =============================================================================


@dataclass
class RetryPolicy:
    """How hard to retry a single remote call."""

    max_attempts: int = 4
    network_base_delay: float = 3.0
    server_base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 1.0

    def backoff(self, kind: ErrorKind, attempt: int, rand: Callable[[float, float], float] = random.uniform) -> float:
        """Delay before retrying after `attempt` (1-based) failed with `kind`."""
        base = self.network_base_delay if kind == ErrorKind.NETWORK else self.server_base_delay
        delay = min(base * (2 ** (attempt - 1)), self.max_delay)
        return delay + rand(0, self.jitter)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            network_base_delay=settings.retry_network_base_delay,
            server_base_delay=settings.retry_server_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerState:
    failure_count: int = 0
    state: CircuitState = CircuitState.CLOSED
    last_failure_time: float = 0.0
    next_attempt_time: float = 0.0


class CircuitBreaker:
    """
    Failure-isolation state machine for one remote endpoint.

    Usage:
        breaker = CircuitBreaker("solana_rpc")
        result = await breaker.call(lambda: session_post(...), "getTransaction 5x...")
    """

    def __init__(
        self,
        name: str,
        max_failures: int = 5,
        cooldown_seconds: float = 60.0,
        policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[float, float], float] = random.uniform,
    ):
        self.name = name
        self.max_failures = max_failures
        self.cooldown_seconds = cooldown_seconds
        self.policy = policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._rand = rand
        self._state = CircuitBreakerState()
        self._lock = asyncio.Lock()
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def failure_count(self) -> int:
        return self._state.failure_count

    def snapshot(self) -> CircuitBreakerState:
        """Copy of the current state (for logging and tests)."""
        s = self._state
        return CircuitBreakerState(s.failure_count, s.state, s.last_failure_time, s.next_attempt_time)

    async def _admit(self, context: str) -> None:
        """Let the call through, or raise CircuitOpenError."""
        async with self._lock:
            now = self._clock()
            if self._state.state == CircuitState.OPEN:
                if now > self._state.next_attempt_time:
                    self._state.state = CircuitState.HALF_OPEN
                    logger.info("circuit_half_open", endpoint=self.name)
                else:
                    raise CircuitOpenError(context, self.name, self._state.next_attempt_time - now)

            if self._state.state == CircuitState.HALF_OPEN:
                # Only one trial call while half-open
                if self._trial_in_flight:
                    raise CircuitOpenError(context, self.name, 0.0)
                self._trial_in_flight = True

    async def record_success(self) -> None:
        async with self._lock:
            if self._state.state != CircuitState.CLOSED or self._state.failure_count > 0:
                logger.info("circuit_closed", endpoint=self.name, previous=self._state.state.value)
            self._state.failure_count = 0
            self._state.state = CircuitState.CLOSED
            self._trial_in_flight = False

    async def record_failure(self) -> None:
        async with self._lock:
            now = self._clock()
            self._state.failure_count += 1
            self._state.last_failure_time = now

            if self._state.state == CircuitState.HALF_OPEN:
                self._state.state = CircuitState.OPEN
                self._state.next_attempt_time = now + self.cooldown_seconds
                logger.warning("circuit_reopened", endpoint=self.name, cooldown_s=self.cooldown_seconds)
            elif self._state.failure_count >= self.max_failures:
                self._state.state = CircuitState.OPEN
                self._state.next_attempt_time = now + self.cooldown_seconds
                logger.warning(
                    "circuit_opened",
                    endpoint=self.name,
                    failures=self._state.failure_count,
                    cooldown_s=self.cooldown_seconds,
                )
            self._trial_in_flight = False

    async def _release_trial(self) -> None:
        async with self._lock:
            self._trial_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[Any]], context: str) -> Any:
        """
        Run `operation` with retries, backoff and circuit protection.

        Raises:
            CircuitOpenError: the circuit is open, nothing was attempted
            RemoteCallFailed: the call failed permanently; `.cause` is the last error
        """
        await self._admit(context)

        last_error: BaseException | None = None
        last_kind = ErrorKind.FATAL
        attempts = 0

        for attempt in range(1, self.policy.max_attempts + 1):
            attempts = attempt
            try:
                result = await operation()
            except asyncio.CancelledError:
                await self._release_trial()
                raise
            except Exception as e:
                last_error = e
                last_kind = classify_error(e)

                if last_kind == ErrorKind.FATAL:
                    break

                if attempt < self.policy.max_attempts:
                    wait = self.policy.backoff(last_kind, attempt, self._rand)
                    logger.warning(
                        "remote_call_retry",
                        endpoint=self.name,
                        context=context,
                        attempt=f"{attempt}/{self.policy.max_attempts}",
                        kind=last_kind.value,
                        wait_s=round(wait, 2),
                        error=str(e),
                    )
                    await self._sleep(wait)
                    continue
                break
            else:
                await self.record_success()
                return result

        logger.error(
            "remote_call_failed",
            endpoint=self.name,
            context=context,
            attempts=attempts,
            kind=last_kind.value,
            error=str(last_error),
        )
        if is_server_classified(last_kind):
            await self.record_failure()
        else:
            await self._release_trial()
        raise RemoteCallFailed(context, last_error, attempts)

    @classmethod
    def from_settings(cls, name: str, settings, **kwargs) -> "CircuitBreaker":
        return cls(
            name,
            max_failures=settings.circuit_max_failures,
            cooldown_seconds=settings.circuit_cooldown_seconds,
            policy=RetryPolicy.from_settings(settings),
            **kwargs,
        )
