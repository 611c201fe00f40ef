"""Bidirectional reconciliation between local tasks and tracker issues."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from ..github import GitHubClient, GitHubClientError, GitHubError, GitHubNotFoundError
from ..github.labels import LABEL_SCHEMA, SYNC_LABEL, task_labels
from ..resilience import CircuitOpenError, OperationTimeoutError
from ..storage import SyncStatus, Task, TaskRepository, utcnow
from .issues import (
    extract_task_id,
    issue_patch,
    issue_state_for,
    issue_to_task,
    parse_timestamp,
    patch_differs,
    task_to_issue_body,
)
from .models import (
    ConflictChoice,
    ConflictNotFoundError,
    StaleConflictError,
    SyncConflict,
    SyncDirection,
    SyncedItem,
    SyncError,
    SyncInProgressError,
    SyncReport,
)

logger = logging.getLogger(__name__)

DEFAULT_API_DELAY_MS = 100

_TRACKER_ERRORS = (GitHubError, OperationTimeoutError, CircuitOpenError)


def _retryable(exc: BaseException) -> bool:
    if isinstance(exc, (OperationTimeoutError, CircuitOpenError)):
        return True
    return not isinstance(exc, GitHubClientError)


def _later(*values: datetime | None) -> datetime | None:
    present = [value for value in values if value is not None]
    return max(present) if present else None


class IssueSyncEngine:
    """Reconcile a task repository with the issues carrying :data:`SYNC_LABEL`.

    For every task both "modified since last sync" facts are computed before
    any write. A task changed on both sides becomes a :class:`SyncConflict`
    and nothing is written until :meth:`resolve_conflict` is called.
    """

    def __init__(
        self,
        github: GitHubClient,
        repository: TaskRepository,
        *,
        clock: Callable[[], datetime] = utcnow,
        api_delay_ms: int = DEFAULT_API_DELAY_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._github = github
        self._repository = repository
        self._clock = clock
        self._api_delay_ms = api_delay_ms
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._conflicts: dict[str, SyncConflict] = {}
        self._writes = 0
        self.last_report: SyncReport | None = None

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    @property
    def conflicts(self) -> list[SyncConflict]:
        return list(self._conflicts.values())

    def get_conflict(self, task_id: str) -> SyncConflict:
        conflict = self._conflicts.get(task_id)
        if conflict is None:
            raise ConflictNotFoundError(f"No pending conflict for task '{task_id}'")
        return conflict

    # -- passes ------------------------------------------------------------

    async def run_pass(self, direction: SyncDirection | str = SyncDirection.BOTH) -> SyncReport:
        if self._lock.locked():
            raise SyncInProgressError("A sync pass is already running")
        async with self._lock:
            direction = SyncDirection(direction)
            report = SyncReport(direction=direction)
            self._writes = 0
            await self._ensure_labels(report)
            issues = await self._github.list_issues(labels=SYNC_LABEL, state="all")

            by_number: dict[int, dict[str, Any]] = {}
            by_task_id: dict[str, dict[str, Any]] = {}
            for issue in sorted(issues, key=lambda item: item.get("created_at") or ""):
                by_number[int(issue["number"])] = issue
                marker = extract_task_id(issue.get("body"))
                if marker:
                    # Oldest issue wins when duplicates exist.
                    by_task_id.setdefault(marker, issue)

            matched: set[int] = set()
            tasks = self._repository.list_tasks()
            for task in tasks:
                issue = None
                if task.issue_number is not None:
                    issue = by_number.get(task.issue_number)
                if issue is None:
                    issue = by_task_id.get(task.id)
                if issue is not None:
                    matched.add(int(issue["number"]))
                try:
                    await self._sync_task(task, issue, direction, report)
                except _TRACKER_ERRORS as exc:
                    logger.warning(
                        "Sync failed for task",
                        extra={"task_id": task.id, "issue_number": task.issue_number, "error": str(exc)},
                    )
                    report.errors.append(
                        SyncError(
                            task_id=task.id,
                            issue_number=task.issue_number,
                            operation="sync-task",
                            message=str(exc),
                            retryable=_retryable(exc),
                        )
                    )

            if direction is not SyncDirection.PUSH:
                known = {task.id for task in tasks}
                for number, issue in by_number.items():
                    if number in matched:
                        continue
                    if extract_task_id(issue.get("body")) in known:
                        # A newer duplicate of an already linked task; dedupe_issues closes it.
                        continue
                    if issue.get("state") == "closed":
                        report.unchanged += 1
                        continue
                    self._pull_create(issue, report)

            self.last_report = report
            logger.info("Sync pass finished", extra={"direction": direction.value, **report.summary})
            return report

    async def _sync_task(
        self,
        task: Task,
        issue: dict[str, Any] | None,
        direction: SyncDirection,
        report: SyncReport,
    ) -> None:
        if issue is None and task.issue_number is not None:
            issue = await self._fetch_linked(task.issue_number)

        # Earlier tasks in this pass awaited the tracker; decide on the stored version.
        current = self._repository.find_task(task.id)
        if current is None:
            return
        task = current

        if issue is None:
            if direction is SyncDirection.PULL:
                report.unchanged += 1
                return
            await self._push_create(task, report)
            return

        pending = self._conflicts.get(task.id)
        if pending is not None:
            report.conflicts.append(pending)
            return

        # Both sides are read before anything is written.
        remote_updated = parse_timestamp(issue.get("updated_at"))
        last_synced = task.last_synced_at
        if last_synced is None:
            # Linked by marker but never reconciled: the newer side wins.
            remote_newer = remote_updated is not None and remote_updated > task.local_modified_at
            if direction is SyncDirection.PULL or (remote_newer and direction is SyncDirection.BOTH):
                self._pull_update(task, issue, report)
            elif remote_newer:
                self._link_only(task, issue, report)
            else:
                await self._push_update(task, issue, report, operation="link")
            return

        local_changed = task.sync_status is SyncStatus.PENDING or task.local_modified_at > last_synced
        remote_changed = remote_updated is not None and remote_updated > last_synced
        if local_changed and remote_changed:
            if not patch_differs(issue_patch(task, issue), issue):
                # Both sides already agree, e.g. after a direct label update.
                self._mark_synced(task, remote_updated)
                self._repository.save_task(task)
                report.unchanged += 1
                return
            self._record_conflict(task, issue, report)
            return
        if local_changed and direction is not SyncDirection.PULL:
            await self._push_update(task, issue, report)
            return
        if remote_changed and direction is not SyncDirection.PUSH:
            self._pull_update(task, issue, report)
            return
        report.unchanged += 1

    async def _fetch_linked(self, number: int) -> dict[str, Any] | None:
        try:
            return await self._github.get_issue(number)
        except GitHubNotFoundError:
            logger.warning("Linked issue no longer exists", extra={"issue_number": number})
            return None

    # -- writes ------------------------------------------------------------

    async def _pace(self) -> None:
        if self._writes and self._api_delay_ms > 0:
            await self._sleep(self._api_delay_ms / 1000)
        self._writes += 1

    def _store_result(
        self,
        pushed: Task,
        *,
        issue_number: int,
        issue_url: str | None,
        remote_updated: datetime | None,
    ) -> Task | None:
        """Write sync bookkeeping onto the stored task after a tracker write.

        Only the sync fields are touched. When the task was edited while the
        tracker call was in flight it stays pending so the next pass pushes it.
        """

        current = self._repository.find_task(pushed.id)
        if current is None:
            return None
        current.issue_number = issue_number
        current.issue_url = issue_url or current.issue_url
        if current.local_modified_at != pushed.local_modified_at:
            current.last_remote_modified_at = remote_updated
            current.last_synced_at = _later(self._clock(), remote_updated)
            current.sync_status = SyncStatus.PENDING
            logger.info(
                "Task changed during sync write; left pending",
                extra={"task_id": current.id, "issue_number": issue_number},
            )
        else:
            self._mark_synced(current, remote_updated)
        self._repository.save_task(current)
        return current

    async def _push_create(self, task: Task, report: SyncReport) -> None:
        await self._pace()
        issue = await self._github.create_issue(
            title=task.title, body=task_to_issue_body(task), labels=task_labels(task)
        )
        number = int(issue["number"])
        updated_at = parse_timestamp(issue.get("updated_at"))
        if issue_state_for(task) == "closed":
            # Issues are always created open.
            await self._pace()
            closed = await self._github.update_issue(number, state="closed")
            updated_at = parse_timestamp((closed or {}).get("updated_at")) or updated_at
        self._store_result(
            task, issue_number=number, issue_url=issue.get("html_url"), remote_updated=updated_at
        )
        report.pushed.append(SyncedItem(task.id, number, "create"))
        logger.info("Created issue for task", extra={"task_id": task.id, "issue_number": number})

    async def _push_update(
        self,
        task: Task,
        issue: dict[str, Any],
        report: SyncReport,
        *,
        operation: str = "update",
    ) -> None:
        number = int(issue["number"])
        patch = issue_patch(task, issue)
        if operation == "link" and issue.get("state") == "closed":
            # Linking alone never reopens an issue closed on the tracker.
            patch["state"] = "closed"
        updated_at = parse_timestamp(issue.get("updated_at"))
        if patch_differs(patch, issue):
            await self._pace()
            updated = await self._github.update_issue(number, **patch)
            updated_at = parse_timestamp((updated or {}).get("updated_at")) or updated_at
            report.pushed.append(SyncedItem(task.id, number, operation))
        else:
            report.unchanged += 1
        self._store_result(task, issue_number=number, issue_url=issue.get("html_url"), remote_updated=updated_at)

    def _link_only(self, task: Task, issue: dict[str, Any], report: SyncReport) -> None:
        # Push-only pass and the issue is newer: record the link, leave the pull for later.
        task.issue_number = int(issue["number"])
        task.issue_url = issue.get("html_url") or task.issue_url
        self._repository.save_task(task)
        report.unchanged += 1

    def _pull_update(self, task: Task, issue: dict[str, Any], report: SyncReport) -> None:
        refreshed = issue_to_task(issue, existing=task)
        self._mark_synced(refreshed, parse_timestamp(issue.get("updated_at")))
        self._repository.save_task(refreshed)
        report.pulled.append(SyncedItem(task.id, refreshed.issue_number, "update"))

    def _pull_create(self, issue: dict[str, Any], report: SyncReport) -> None:
        task = issue_to_task(issue)
        self._mark_synced(task, parse_timestamp(issue.get("updated_at")))
        try:
            self._repository.add_task(task)
        except ValueError as exc:
            report.errors.append(
                SyncError(task.id, task.issue_number, "pull-create", str(exc), retryable=False)
            )
            return
        report.pulled.append(SyncedItem(task.id, task.issue_number, "create"))
        logger.info("Pulled new task from issue", extra={"task_id": task.id, "issue_number": task.issue_number})

    def _mark_synced(self, task: Task, remote_updated: datetime | None) -> None:
        now = self._clock()
        task.sync_status = SyncStatus.SYNCED
        task.last_remote_modified_at = remote_updated
        task.last_synced_at = _later(now, remote_updated, task.local_modified_at)

    def _record_conflict(self, task: Task, issue: dict[str, Any], report: SyncReport) -> None:
        remote_updated = parse_timestamp(issue.get("updated_at")) or self._clock()
        conflict = SyncConflict(
            task_id=task.id,
            issue_number=int(issue["number"]),
            local_version=task.model_copy(deep=True),
            remote_version=issue_to_task(issue, existing=task),
            remote_issue=dict(issue),
            remote_updated_at=remote_updated,
            detected_at=self._clock(),
        )
        self._conflicts[task.id] = conflict
        task.sync_status = SyncStatus.CONFLICT
        self._repository.save_task(task)
        report.conflicts.append(conflict)
        logger.warning(
            "Sync conflict detected",
            extra={"task_id": task.id, "issue_number": conflict.issue_number},
        )

    # -- conflicts ---------------------------------------------------------

    async def resolve_conflict(
        self,
        task_id: str,
        choice: ConflictChoice | str,
        *,
        revalidate: bool = True,
    ) -> Task:
        """Apply the user's choice for a pending conflict with one corrective write."""

        choice = ConflictChoice(choice)
        conflict = self.get_conflict(task_id)
        task = self._repository.get_task(task_id)

        if choice is ConflictChoice.KEEP_REMOTE:
            resolved = issue_to_task(conflict.remote_issue, existing=task)
            self._mark_synced(resolved, conflict.remote_updated_at)
            self._repository.save_task(resolved)
            self._conflicts.pop(task_id, None)
            logger.info("Conflict resolved with remote version", extra={"task_id": task_id})
            return resolved

        current = conflict.remote_issue
        if revalidate:
            current = await self._github.get_issue(conflict.issue_number)
            current_updated = parse_timestamp(current.get("updated_at"))
            if current_updated is not None and current_updated > conflict.remote_updated_at:
                conflict.remote_issue = dict(current)
                conflict.remote_version = issue_to_task(current, existing=task)
                conflict.remote_updated_at = current_updated
                conflict.detected_at = self._clock()
                raise StaleConflictError(
                    f"Issue #{conflict.issue_number} changed again since the conflict was captured; "
                    "review the refreshed remote version"
                )

        updated = await self._github.update_issue(conflict.issue_number, **issue_patch(task, current))
        self._conflicts.pop(task_id, None)
        stored = self._store_result(
            task,
            issue_number=conflict.issue_number,
            issue_url=current.get("html_url"),
            remote_updated=parse_timestamp((updated or {}).get("updated_at")),
        )
        if stored is None:
            return task
        # The corrective push wins; forget the remote edit that caused the conflict.
        stored.last_remote_modified_at = None
        self._repository.save_task(stored)
        logger.info("Conflict resolved with local version", extra={"task_id": task_id})
        return stored

    # -- labels ------------------------------------------------------------

    async def _ensure_labels(self, report: SyncReport) -> None:
        try:
            existing = {label["name"].lower() for label in await self._github.list_repo_labels()}
        except _TRACKER_ERRORS as exc:
            report.errors.append(SyncError(None, None, "labels", str(exc), retryable=_retryable(exc)))
            return
        for name, (color, description) in LABEL_SCHEMA.items():
            if name.lower() in existing:
                continue
            try:
                await self._github.create_label(name, color=color, description=description)
            except _TRACKER_ERRORS as exc:
                report.errors.append(SyncError(None, None, "labels", str(exc), retryable=_retryable(exc)))
                return

    async def ensure_labels(self) -> list[SyncError]:
        report = SyncReport(direction=SyncDirection.PUSH)
        await self._ensure_labels(report)
        return report.errors


__all__ = ["DEFAULT_API_DELAY_MS", "IssueSyncEngine"]
