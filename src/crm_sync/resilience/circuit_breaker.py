"""Circuit breaker for long-lived protection of a failing dependency.

States:
- closed: calls pass; consecutive failures are counted and reaching
  ``failure_threshold`` opens the circuit
- open: calls are rejected with CircuitOpenError until ``reset_timeout``
  seconds have passed since the last failure
- half-open: exactly one trial call is let through; success closes the
  circuit, failure reopens it and restarts the timeout window

Transitions happen when execute() is called. Nothing polls in the background.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

import structlog

from src.crm_sync.connectors.exceptions import CircuitOpenError
from src.crm_sync.core.monitoring import circuit_breaker_state

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


_GAUGE_VALUES = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


class CircuitBreaker:
    """Per-operation-family circuit breaker.

    Args:
        name: Label for logs and the state gauge.
        failure_threshold: Consecutive failures that open the circuit.
        reset_timeout: Seconds the circuit stays open before a trial call.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: float | None = None
        self._trial_in_flight = False
        circuit_breaker_state.labels(name=name).set(0)

    @property
    def state(self) -> CircuitState:
        return self._state

    def snapshot(self) -> dict:
        return {
            "state": self._state.value,
            "failures": self._failures,
            "last_failure_time": self._last_failure_time,
        }

    def _transition(self, state: CircuitState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        circuit_breaker_state.labels(name=self.name).set(_GAUGE_VALUES[state])
        log = logger.warning if state is CircuitState.OPEN else logger.info
        log(
            f"circuit_breaker.{state.value.replace('-', '_')}",
            name=self.name,
            previous=previous.value,
            failures=self._failures,
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker, raising CircuitOpenError when rejected."""
        if (
            self._state is CircuitState.OPEN
            and self._last_failure_time is not None
            and self._clock() - self._last_failure_time >= self.reset_timeout
        ):
            self._transition(CircuitState.HALF_OPEN)

        if self._state is CircuitState.OPEN:
            raise CircuitOpenError(self.name)

        trial = self._state is CircuitState.HALF_OPEN
        if trial:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name)
            self._trial_in_flight = True

        try:
            result = await operation()
        except Exception:
            self._failures += 1
            self._last_failure_time = self._clock()
            if trial or self._failures >= self.failure_threshold:
                self._transition(CircuitState.OPEN)
            raise
        else:
            self._failures = 0
            if trial:
                self._transition(CircuitState.CLOSED)
            return result
        finally:
            if trial:
                self._trial_in_flight = False

    def reset(self) -> None:
        self._failures = 0
        self._last_failure_time = None
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED)
        logger.info("circuit_breaker.reset", name=self.name)
