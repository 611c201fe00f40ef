"""Circuit breakers guarding flaky external dependencies."""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

AI_INFERENCE = "ai-inference"
GIT_OPERATIONS = "git-operations"

DEFAULT_BREAKERS: dict[str, tuple[int, int]] = {
    AI_INFERENCE: (3, 30_000),
    GIT_OPERATIONS: (5, 60_000),
}


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(RuntimeError):
    """Raised when a call is rejected because the breaker is open."""

    def __init__(self, circuit_name: str, retry_after_ms: int) -> None:
        seconds = math.ceil(retry_after_ms / 1000)
        super().__init__(f"Circuit '{circuit_name}' is open. Retry in {seconds}s")
        self.circuit_name = circuit_name
        self.retry_after_ms = retry_after_ms


class CircuitBreaker:
    """Fail fast once a dependency has failed ``failure_threshold`` times in a row.

    After ``reset_ms`` has elapsed since the last failure a single trial call is
    let through. Its outcome closes the circuit again or re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int,
        reset_ms: int,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_ms = reset_ms
        self._clock = clock or time.monotonic
        self._failures = 0
        self._last_failure_at: float | None = None
        self._open = False
        self._trial_in_flight = False

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def is_open(self) -> bool:
        return self._open

    def _elapsed_ms(self) -> float:
        if self._last_failure_at is None:
            return math.inf
        return (self._clock() - self._last_failure_at) * 1000

    @property
    def state(self) -> CircuitState:
        if not self._open:
            return CircuitState.CLOSED
        if self._elapsed_ms() >= self.reset_ms:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        trial = False
        if self._open:
            elapsed = self._elapsed_ms()
            if elapsed < self.reset_ms:
                raise CircuitOpenError(self.name, int(self.reset_ms - elapsed))
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0)
            self._trial_in_flight = True
            trial = True
            logger.info("Circuit half-open, allowing trial call", extra={"circuit": self.name})

        try:
            result = await fn()
        except Exception:
            self._record_failure(trial)
            raise
        finally:
            if trial:
                self._trial_in_flight = False

        self._close()
        return result

    def _record_failure(self, trial: bool) -> None:
        self._failures += 1
        self._last_failure_at = self._clock()
        if trial or self._failures >= self.failure_threshold:
            if not self._open:
                logger.warning(
                    "Circuit opened",
                    extra={"circuit": self.name, "failures": self._failures},
                )
            self._open = True

    def _close(self) -> None:
        if self._open:
            logger.info("Circuit closed", extra={"circuit": self.name})
        self._failures = 0
        self._open = False

    def reset(self) -> None:
        self._failures = 0
        self._last_failure_at = None
        self._open = False
        self._trial_in_flight = False

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "is_open": self._open,
            "failures": self._failures,
            "failure_threshold": self.failure_threshold,
            "reset_ms": self.reset_ms,
        }


class CircuitBreakerRegistry:
    """Owns the breakers of one process, keyed by dependency name."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] | None = None,
        wall_clock: Callable[[], datetime] | None = None,
        defaults: dict[str, tuple[int, int]] | None = None,
    ) -> None:
        self._clock = clock or time.monotonic
        self._wall_clock = wall_clock or (lambda: datetime.now(timezone.utc))
        self._started_at = self._clock()
        self._breakers: dict[str, CircuitBreaker] = {}
        self._defaults = dict(DEFAULT_BREAKERS if defaults is None else defaults)

    def get(
        self,
        name: str,
        *,
        failure_threshold: int | None = None,
        reset_ms: int | None = None,
    ) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            default_threshold, default_reset = self._defaults.get(name, (5, 60_000))
            breaker = CircuitBreaker(
                name,
                failure_threshold or default_threshold,
                reset_ms or default_reset,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def health(self) -> dict[str, Any]:
        """Summarise breaker state as healthy, degraded or unhealthy."""

        open_count = sum(1 for breaker in self._breakers.values() if breaker.is_open)
        if open_count == 0:
            status = "healthy"
        elif open_count == len(self._breakers):
            status = "unhealthy"
        else:
            status = "degraded"
        return {
            "status": status,
            "timestamp": self._wall_clock().isoformat(),
            "uptime_ms": int((self._clock() - self._started_at) * 1000),
            "circuits": self.snapshot(),
        }


__all__ = [
    "AI_INFERENCE",
    "GIT_OPERATIONS",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
]
