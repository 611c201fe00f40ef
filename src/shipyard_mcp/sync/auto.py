"""Background driver that runs sync passes on an interval with backoff."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable

from ..config import MIN_SYNC_INTERVAL_MS
from ..github import GitHubError
from ..resilience import CircuitOpenError, OperationTimeoutError
from ..storage import TaskRepository
from .engine import IssueSyncEngine
from .models import SyncDirection, SyncInProgressError, SyncReport

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL_MS = 5 * 60 * 1000
MAX_CONSECUTIVE_ERRORS = 5
BACKOFF_BASE_MS = 30 * 1000
MAX_BACKOFF_MS = 30 * 60 * 1000
FOCUS_MIN_ELAPSED_MS = 60 * 1000
INITIAL_DELAY_MS = 3000


class AutoSyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    OFFLINE = "offline"
    CONFLICTS = "conflicts"
    PAUSED = "paused"


def backoff_ms(consecutive_errors: int) -> int:
    if consecutive_errors <= 0:
        return 0
    return min(BACKOFF_BASE_MS * 2 ** (consecutive_errors - 1), MAX_BACKOFF_MS)


class AutoSyncDriver:
    """Schedule :meth:`IssueSyncEngine.run_pass` calls.

    Passes run every ``interval_ms`` (never below 30 seconds), when
    connectivity returns, and on focus when the last pass is older than a
    minute. Pending task writes are flushed first. Each failure doubles the
    wait before the next attempt; after five in a row the driver pauses until
    a manual ``sync_now(manual=True)``.
    """

    def __init__(
        self,
        engine: IssueSyncEngine,
        repository: TaskRepository,
        *,
        interval_ms: int = DEFAULT_SYNC_INTERVAL_MS,
        direction: SyncDirection = SyncDirection.BOTH,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._repository = repository
        self.interval_ms = max(int(interval_ms), MIN_SYNC_INTERVAL_MS)
        self._direction = direction
        self._clock = clock
        self.status = AutoSyncStatus.IDLE
        self.online = True
        self.consecutive_errors = 0
        self.last_error: str | None = None
        self.last_sync_at: float | None = None
        self.last_report: SyncReport | None = None
        self._backoff_until = 0.0
        self._syncing = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def paused(self) -> bool:
        return self.consecutive_errors >= MAX_CONSECUTIVE_ERRORS

    @property
    def backoff_remaining_ms(self) -> int:
        return max(0, int((self._backoff_until - self._clock()) * 1000))

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "online": self.online,
            "interval_ms": self.interval_ms,
            "consecutive_errors": self.consecutive_errors,
            "backoff_remaining_ms": self.backoff_remaining_ms,
            "last_error": self.last_error,
            "last_report": self.last_report.summary if self.last_report else None,
        }

    async def sync_now(self, *, manual: bool = False) -> SyncReport | None:
        """Run one pass unless a guard says not to; returns the report when it ran."""

        if manual:
            self.consecutive_errors = 0
            self._backoff_until = 0.0
        if self._syncing or self._engine.in_progress:
            return None
        if not self.online:
            self.status = AutoSyncStatus.OFFLINE
            return None
        if self.paused:
            logger.warning("Auto-sync paused after repeated failures; waiting for a manual retry")
            self.status = AutoSyncStatus.PAUSED
            return None
        if self._backoff_until > self._clock():
            logger.info("Auto-sync in backoff", extra={"remaining_ms": self.backoff_remaining_ms})
            return None

        self._syncing = True
        self.status = AutoSyncStatus.SYNCING
        try:
            self._repository.flush()
            report = await self._engine.run_pass(self._direction)
        except SyncInProgressError:
            return None
        except (GitHubError, OperationTimeoutError, CircuitOpenError, OSError) as exc:
            self.consecutive_errors += 1
            wait_ms = backoff_ms(self.consecutive_errors)
            self._backoff_until = self._clock() + wait_ms / 1000
            self.last_error = str(exc)
            self.status = AutoSyncStatus.PAUSED if self.paused else AutoSyncStatus.ERROR
            logger.warning(
                "Auto-sync pass failed",
                extra={"consecutive_errors": self.consecutive_errors, "backoff_ms": wait_ms, "error": str(exc)},
            )
            return None
        finally:
            self._syncing = False

        self.consecutive_errors = 0
        self._backoff_until = 0.0
        self.last_error = None
        self.last_sync_at = self._clock()
        self.last_report = report
        self.status = AutoSyncStatus.CONFLICTS if report.conflicts else AutoSyncStatus.SYNCED
        return report

    async def notify_focus(self) -> SyncReport | None:
        if self.last_sync_at is not None and (self._clock() - self.last_sync_at) * 1000 <= FOCUS_MIN_ELAPSED_MS:
            return None
        return await self.sync_now()

    async def notify_connectivity(self, online: bool) -> SyncReport | None:
        was_offline = not self.online
        self.online = online
        if not online:
            self.status = AutoSyncStatus.OFFLINE
            return None
        if was_offline:
            return await self.sync_now()
        return None

    async def run(self, stop_event: asyncio.Event, *, initial_delay_ms: int = INITIAL_DELAY_MS) -> None:
        """Loop until ``stop_event`` is set."""

        delay = initial_delay_ms / 1000
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass
            await self.sync_now()
            delay = self.interval_ms / 1000

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._stop_event))
        logger.info("Auto-sync started", extra={"interval_ms": self.interval_ms})

    async def stop(self) -> None:
        if self._task is None or self._stop_event is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self._stop_event = None
        logger.info("Auto-sync stopped")


__all__ = [
    "BACKOFF_BASE_MS",
    "DEFAULT_SYNC_INTERVAL_MS",
    "MAX_BACKOFF_MS",
    "MAX_CONSECUTIVE_ERRORS",
    "MIN_SYNC_INTERVAL_MS",
    "AutoSyncDriver",
    "AutoSyncStatus",
    "backoff_ms",
]
