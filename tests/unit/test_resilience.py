"""
Unit tests for CircuitBreaker and ResilientExecutor.

The breaker clock is a mutable holder and the retry sleep is a no-op, so
nothing here waits on wall time except the timeout test (10 ms).
"""

import asyncio

import pytest

from sqlgate.services.resilience.circuit_breaker import (
    CircuitBreaker, CircuitBreakerRegistry, CircuitState, Permit,
)
from sqlgate.services.resilience.executor import ResilientExecutor
from sqlgate.services.shared.config import ResiliencePolicy
from sqlgate.services.shared.errors import InternalError, ResilienceExhausted, TransientBackendFailure


# ── Helpers ───────────────────────────────────────────────────────────────────

class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def _no_sleep(_seconds):
    return None


class Operation:
    """Fails with the queued exceptions, then returns 'ok'."""

    def __init__(self, *failures):
        self.failures = list(failures)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"


def _policy(**kw) -> ResiliencePolicy:
    base = dict(max_retry_attempts=3, base_delay=0.0, max_delay=0.0, failure_threshold=2, break_duration=30.0, timeout=5.0)
    base.update(kw)
    return ResiliencePolicy(**base)


def _executor(clock=None, **kw):
    registry = CircuitBreakerRegistry(clock=clock or Clock())
    return ResilientExecutor(registry, _policy(**kw), sleep=_no_sleep)


def _transient(n):
    return [TransientBackendFailure("connection reset") for _ in range(n)]


# ── Circuit breaker ───────────────────────────────────────────────────────────

def test_breaker_opens_at_threshold():
    breaker = CircuitBreaker("sales", failure_threshold=2, break_duration=30, clock=Clock())
    breaker.record_failure(breaker.acquire())
    assert breaker.state == CircuitState.closed
    breaker.record_failure(breaker.acquire())
    assert breaker.state == CircuitState.open
    with pytest.raises(ResilienceExhausted) as exc_info:
        breaker.acquire()
    assert exc_info.value.circuit_open
    assert exc_info.value.data["target"] == "sales"


def test_success_resets_failure_count():
    breaker = CircuitBreaker("sales", failure_threshold=2, clock=Clock())
    breaker.record_failure(breaker.acquire())
    breaker.record_success(breaker.acquire())
    breaker.record_failure(breaker.acquire())
    assert breaker.state == CircuitState.closed


def test_half_open_admits_exactly_one_trial():
    clock = Clock()
    breaker = CircuitBreaker("sales", failure_threshold=1, break_duration=30, clock=clock)
    breaker.record_failure(breaker.acquire())

    clock.now += 30
    assert breaker.acquire() == Permit.trial
    assert breaker.state == CircuitState.half_open
    with pytest.raises(ResilienceExhausted):
        breaker.acquire()


def test_trial_success_closes():
    clock = Clock()
    breaker = CircuitBreaker("sales", failure_threshold=1, break_duration=30, clock=clock)
    breaker.record_failure(breaker.acquire())
    clock.now += 31
    breaker.record_success(breaker.acquire())
    assert breaker.state == CircuitState.closed
    assert breaker.acquire() == Permit.normal


def test_trial_failure_reopens_and_restarts_cooldown():
    clock = Clock()
    breaker = CircuitBreaker("sales", failure_threshold=1, break_duration=30, clock=clock)
    breaker.record_failure(breaker.acquire())
    clock.now += 31
    breaker.record_failure(breaker.acquire())
    assert breaker.state == CircuitState.open

    clock.now += 29
    with pytest.raises(ResilienceExhausted):
        breaker.acquire()
    clock.now += 1
    assert breaker.acquire() == Permit.trial


def test_released_trial_can_be_reacquired():
    clock = Clock()
    breaker = CircuitBreaker("sales", failure_threshold=1, break_duration=30, clock=clock)
    breaker.record_failure(breaker.acquire())
    clock.now += 31
    breaker.release(breaker.acquire())
    assert breaker.acquire() == Permit.trial


def test_registry_keeps_one_breaker_per_target():
    registry = CircuitBreakerRegistry(clock=Clock())
    assert registry.get("sales") is registry.get("sales")
    assert registry.get("sales") is not registry.get("hr")
    assert registry.states() == {"sales": "closed", "hr": "closed"}


# ── Executor ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    op = Operation(*_transient(2))
    assert await _executor().execute("sales", op) == "ok"
    assert op.calls == 3


@pytest.mark.asyncio
async def test_retries_exhausted():
    op = Operation(*_transient(10))
    with pytest.raises(ResilienceExhausted) as exc_info:
        await _executor().execute("sales", op)
    assert op.calls == 4
    assert exc_info.value.attempts == 4
    assert not exc_info.value.circuit_open


@pytest.mark.asyncio
async def test_zero_retry_budget_means_single_attempt():
    op = Operation(*_transient(10))
    with pytest.raises(ResilienceExhausted):
        await _executor(max_retry_attempts=0).execute("sales", op)
    assert op.calls == 1


@pytest.mark.asyncio
async def test_non_transient_error_is_not_retried_and_keeps_circuit_closed():
    executor = _executor(failure_threshold=1)
    op = Operation(InternalError("syntax error"))
    with pytest.raises(InternalError):
        await executor.execute("sales", op)
    assert op.calls == 1
    assert executor.registry.get("sales").state == CircuitState.closed


@pytest.mark.asyncio
async def test_open_circuit_short_circuits_without_calling_backend():
    executor = _executor(max_retry_attempts=0, failure_threshold=2)
    for _ in range(2):
        with pytest.raises(ResilienceExhausted):
            await executor.execute("sales", Operation(*_transient(1)))

    op = Operation()
    with pytest.raises(ResilienceExhausted) as exc_info:
        await executor.execute("sales", op)
    assert exc_info.value.circuit_open
    assert op.calls == 0


@pytest.mark.asyncio
async def test_half_open_trial_gets_a_single_attempt():
    clock = Clock()
    executor = _executor(clock=clock, failure_threshold=1)
    with pytest.raises(ResilienceExhausted):
        await executor.execute("sales", Operation(*_transient(10)))

    clock.now += 31
    op = Operation(*_transient(10))
    with pytest.raises(ResilienceExhausted) as exc_info:
        await executor.execute("sales", op)
    assert op.calls == 1
    assert exc_info.value.circuit_open


@pytest.mark.asyncio
async def test_timeout_counts_as_transient():
    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(ResilienceExhausted):
        await _executor(max_retry_attempts=0, timeout=0.01).execute("sales", slow)


@pytest.mark.asyncio
async def test_cancellation_propagates_and_releases_trial():
    clock = Clock()
    executor = _executor(clock=clock, failure_threshold=1)
    with pytest.raises(ResilienceExhausted):
        await executor.execute("sales", Operation(*_transient(10)))
    clock.now += 31

    started = asyncio.Event()

    async def blocked():
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(executor.execute("sales", blocked))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert executor.registry.get("sales").acquire() == Permit.trial
