"""Timeouts, circuit breakers and retries shared by every engine."""

from .breaker import (
    AI_INFERENCE,
    GIT_OPERATIONS,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
)
from .commands import (
    CommandError,
    CommandResult,
    CommandRunner,
    FakeCommandRunner,
    OperationTimeoutError,
    run_command,
    sanitize_environment,
    with_timeout,
    with_timeout_fallback,
)
from .retry import with_retry

__all__ = [
    "AI_INFERENCE",
    "GIT_OPERATIONS",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
    "OperationTimeoutError",
    "run_command",
    "sanitize_environment",
    "with_retry",
    "with_timeout",
    "with_timeout_fallback",
]
