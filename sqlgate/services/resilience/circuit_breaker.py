"""
Per-target circuit breaker.

  closed     calls flow; consecutive transient failures are counted
  open       calls fail fast until break_duration has elapsed
  half_open  exactly one trial call is admitted; success closes the
             circuit, failure reopens it and restarts the cooldown

State lives behind a threading.Lock so the breaker is safe to share between
the event loop and executor threads. Breakers are owned by a
CircuitBreakerRegistry that the application injects, one per process.
"""

import enum
import threading
import time
from typing import Callable, Optional

import structlog

from sqlgate.services.shared.config import ResiliencePolicy
from sqlgate.services.shared.errors import ResilienceExhausted

logger = structlog.get_logger()


class CircuitState(str, enum.Enum):
    closed    = "closed"
    open      = "open"
    half_open = "half_open"


class Permit(str, enum.Enum):
    normal = "normal"
    trial  = "trial"


class CircuitBreaker:
    def __init__(
        self,
        target: str,
        failure_threshold: int = 5,
        break_duration: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.target = target
        self.failure_threshold = failure_threshold
        self.break_duration = break_duration
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.closed
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def _open_error(self, remaining: float) -> ResilienceExhausted:
        return ResilienceExhausted(
            f"Circuit for '{self.target}' is open ({remaining:.1f}s remaining)",
            circuit_open=True,
            data={"target": self.target, "retryAfterSeconds": round(max(remaining, 0.0), 1)},
        )

    def acquire(self) -> Permit:
        """Admit one call or raise ResilienceExhausted(circuit_open=True)."""
        with self._lock:
            if self._state == CircuitState.closed:
                return Permit.normal

            if self._state == CircuitState.open:
                elapsed = self._clock() - (self._opened_at or 0.0)
                if elapsed < self.break_duration:
                    raise self._open_error(self.break_duration - elapsed)
                self._state = CircuitState.half_open
                self._trial_in_flight = True
                logger.info("circuit_half_open", target=self.target)
                return Permit.trial

            # half_open: a trial is already running
            if self._trial_in_flight:
                raise self._open_error(0.0)
            self._trial_in_flight = True
            return Permit.trial

    def record_success(self, permit: Permit) -> None:
        with self._lock:
            if permit == Permit.trial or self._state == CircuitState.half_open:
                self._trial_in_flight = False
                if self._state != CircuitState.closed:
                    logger.info("circuit_closed", target=self.target)
                self._state = CircuitState.closed
                self._opened_at = None
            self._consecutive_failures = 0

    def record_failure(self, permit: Permit) -> None:
        with self._lock:
            self._consecutive_failures += 1
            if permit == Permit.trial or self._state == CircuitState.half_open:
                self._trial_in_flight = False
                self._trip("trial_failed")
            elif self._state == CircuitState.closed and self._consecutive_failures >= self.failure_threshold:
                self._trip("threshold_reached")

    def release(self, permit: Permit) -> None:
        """Give a trial permit back without an outcome (cancelled call)."""
        with self._lock:
            if permit == Permit.trial:
                self._trial_in_flight = False

    def _trip(self, reason: str) -> None:
        self._state = CircuitState.open
        self._opened_at = self._clock()
        logger.warning(
            "circuit_opened",
            target=self.target,
            reason=reason,
            consecutive_failures=self._consecutive_failures,
            break_duration=self.break_duration,
        )


class CircuitBreakerRegistry:
    """One breaker per backend target, created on first use."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, target: str, policy: Optional[ResiliencePolicy] = None) -> CircuitBreaker:
        policy = policy or ResiliencePolicy()
        with self._lock:
            breaker = self._breakers.get(target)
            if breaker is None:
                breaker = CircuitBreaker(
                    target,
                    failure_threshold=policy.failure_threshold,
                    break_duration=policy.break_duration,
                    clock=self._clock,
                )
                self._breakers[target] = breaker
            return breaker

    def states(self) -> dict[str, str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.target: b.state.value for b in breakers}
