"""Retry with exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .breaker import CircuitOpenError

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    delay_ms: int = 1_000,
    backoff_multiplier: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    never_retry: tuple[type[BaseException], ...] = (CircuitOpenError,),
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``fn`` until it succeeds, sleeping ``delay_ms * multiplier**n`` between attempts.

    The last error is re-raised once ``max_attempts`` is exhausted. Errors in
    ``never_retry`` and errors outside ``retry_on`` are raised immediately.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    delay = float(delay_ms)
    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except never_retry:
            raise
        except retry_on as exc:
            if attempt == max_attempts:
                raise
            logger.info(
                "Retrying after failure",
                extra={"label": label, "attempt": attempt, "delay_ms": delay, "error": str(exc)},
            )
            await sleep(delay / 1000)
            delay *= backoff_multiplier

    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["with_retry"]
