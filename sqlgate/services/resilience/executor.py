"""
Resilient execution of backend operations.

Composition, outermost first:

    circuit breaker   per target, fail fast while open, single half-open trial
      retry           tenacity AsyncRetrying, transient failures only,
                      wait = base_delay * 2^n capped at max_delay
        timeout       asyncio.wait_for around one attempt

Only TransientBackendFailure (timeouts included) is retried or counted by the
breaker. Any other exception means the backend answered, so it propagates
unchanged and the call counts as a success for circuit purposes.

Cancellation stops further attempts, gives back a half-open trial permit and
propagates to the caller.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from sqlgate.services.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState, Permit
from sqlgate.services.shared.config import ResiliencePolicy
from sqlgate.services.shared.errors import ResilienceExhausted, TransientBackendFailure

logger = structlog.get_logger()

R = TypeVar("R")


def _log_retry(target: str):
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "backend_retry_scheduled",
            target=target,
            attempt=state.attempt_number,
            wait_seconds=round(state.next_action.sleep, 3) if state.next_action else None,
            error=str(exc) if exc else None,
        )
    return before_sleep


class ResilientExecutor:
    def __init__(
        self,
        registry: CircuitBreakerRegistry,
        policy: Optional[ResiliencePolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.policy = policy or ResiliencePolicy()
        self._sleep = sleep

    async def execute(
        self,
        target: str,
        operation: Callable[[], Awaitable[R]],
        policy: Optional[ResiliencePolicy] = None,
    ) -> R:
        policy = policy or self.policy
        breaker = self.registry.get(target, policy)
        permit = breaker.acquire()
        attempts = 0

        async def attempt_once() -> R:
            nonlocal attempts
            attempts += 1
            try:
                return await asyncio.wait_for(operation(), timeout=policy.timeout)
            except asyncio.TimeoutError as exc:
                raise TransientBackendFailure(f"{target}: timed out after {policy.timeout}s") from exc

        try:
            if permit == Permit.trial:
                result = await attempt_once()
            else:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(policy.max_retry_attempts + 1),
                    wait=wait_exponential(multiplier=policy.base_delay, max=policy.max_delay),
                    retry=retry_if_exception_type(TransientBackendFailure),
                    before_sleep=_log_retry(target),
                    sleep=self._sleep,
                    reraise=True,
                ):
                    with attempt:
                        result = await attempt_once()
        except TransientBackendFailure as exc:
            breaker.record_failure(permit)
            circuit_open = breaker.state == CircuitState.open
            logger.warning(
                "resilience_exhausted",
                target=target,
                attempts=attempts,
                circuit_open=circuit_open,
                trial=permit == Permit.trial,
            )
            raise ResilienceExhausted(
                f"{target}: {exc.message}",
                circuit_open=circuit_open,
                attempts=attempts,
                data={"target": target},
            ) from exc
        except asyncio.CancelledError:
            breaker.release(permit)
            logger.info("backend_call_cancelled", target=target, attempts=attempts)
            raise
        except Exception:
            breaker.record_success(permit)
            raise

        breaker.record_success(permit)
        return result
