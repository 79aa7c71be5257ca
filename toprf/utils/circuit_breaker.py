"""Circuit breaker guarding the chain RPC endpoints.

``failure_threshold`` consecutive connection failures trip the breaker; calls
are then refused for ``recovery_timeout`` seconds, after which up to
``half_open_max`` trial calls are let through. A successful trial closes the
breaker and a failed one trips it again.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import Enum

import structlog

from toprf.api.metrics import CIRCUIT_BREAKER_STATE

log = structlog.get_logger()


class CircuitState(Enum):
    CLOSED = 0
    HALF_OPEN = 1
    OPEN = 2


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        half_open_max: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max = half_open_max
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._tripped_at: float | None = None
        self._half_open_left = 0
        self._publish()

    def _publish(self) -> None:
        CIRCUIT_BREAKER_STATE.labels(target=self.name).set(self._state.value)

    def _move_to(self, state: CircuitState) -> None:
        if state is self._state:
            return
        log.info("circuit_breaker_state", name=self.name, old=self._state.name, new=state.name)
        self._state = state
        self._publish()

    def _trip(self) -> None:
        self._tripped_at = self._clock()
        self._move_to(CircuitState.OPEN)
        log.warning("circuit_breaker_tripped", name=self.name, failures=self._consecutive_failures)

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._tripped_at is not None
            and self._clock() - self._tripped_at >= self.recovery_timeout
        ):
            self._half_open_left = self.half_open_max
            self._move_to(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._consecutive_failures

    def allow_request(self) -> bool:
        state = self.state
        if state is CircuitState.HALF_OPEN and self._half_open_left > 0:
            self._half_open_left -= 1
            return True
        return state is CircuitState.CLOSED

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._tripped_at = None
        self._move_to(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._state is CircuitState.HALF_OPEN:
            self._trip()
        elif self._state is CircuitState.CLOSED and self._consecutive_failures >= self.failure_threshold:
            self._trip()

    def reset(self) -> None:
        self._consecutive_failures = 0
        self._tripped_at = None
        self._half_open_left = 0
        self._move_to(CircuitState.CLOSED)
