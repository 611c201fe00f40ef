"""Task status transitions tied to workspaces, reviews, pull requests and agent hooks."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from .git import WorkspaceHandle, WorkspaceManager
from .github import GitHubError, MergeOutcome, PRLifecycleManager
from .resilience import CircuitOpenError, OperationTimeoutError
from .review import ReviewOutcome, ReviewPipeline, build_task_prompt
from .storage import (
    STATUS_ORDER,
    ChromaStore,
    ExecutionRecord,
    ExecutionStatus,
    Task,
    TaskNotFoundError,
    TaskRepository,
    TaskSource,
    TaskStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

_LABEL_ERRORS = (GitHubError, OperationTimeoutError, CircuitOpenError)


class InvalidTransitionError(RuntimeError):
    """Raised when a status change would move a task backwards."""

    def __init__(self, task_id: str, current: TaskStatus, requested: TaskStatus) -> None:
        super().__init__(
            f"Task '{task_id}' cannot move from {current.value} to {requested.value}"
        )
        self.task_id = task_id
        self.current = current
        self.requested = requested


class HookValidationError(ValueError):
    """Raised when an agent hook payload is missing required fields."""


@dataclass(slots=True)
class TackleResult:
    task: Task
    workspace: WorkspaceHandle
    execution_id: str | None
    prompt: str
    launch_command: str
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.model_dump(mode="json"),
            "workspace": self.workspace.to_dict(),
            "execution_id": self.execution_id,
            "prompt": self.prompt,
            "launch_command": self.launch_command,
            "warnings": list(self.warnings) + list(self.workspace.warnings),
        }


@dataclass(slots=True)
class HookResult:
    applied: bool
    reason: str | None = None
    task_id: str | None = None
    execution_id: str | None = None
    status: str | None = None
    review_scheduled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "reason": self.reason,
            "task_id": self.task_id,
            "execution_id": self.execution_id,
            "status": self.status,
            "review_scheduled": self.review_scheduled,
        }


@dataclass(slots=True)
class ReviewRun:
    task: Task
    outcome: ReviewOutcome
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = self.outcome.to_dict()
        payload["task"] = self.task.model_dump(mode="json")
        payload["warnings"] = [*payload["warnings"], *self.warnings]
        return payload


@dataclass(slots=True)
class ShipResult:
    task: Task
    merge: MergeOutcome
    cleanup: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.merge.success

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "task": self.task.model_dump(mode="json"),
            "merge": self.merge.to_dict(),
            "cleanup": self.cleanup,
            "warnings": [*self.merge.warnings, *self.warnings],
        }


def launch_command(path: Path | str, prompt: str, *, executable: str = "claude") -> str:
    return f"cd {shlex.quote(str(path))} && {executable} {shlex.quote(prompt)}"


class TaskWorkflow:
    """Move tasks through backlog, in progress, review and ready to ship.

    Status only moves forward. The one way back is a failed review, which
    returns the task to ``in_progress`` with the reviewer's feedback.
    """

    def __init__(
        self,
        repository: TaskRepository,
        workspaces: WorkspaceManager,
        store: ChromaStore,
        pipeline: ReviewPipeline,
        *,
        pr_manager: PRLifecycleManager | None = None,
        defer_cleanup: bool = True,
        retention_hours: float = 24.0,
        review_on_stop: bool = False,
        task_source: str = TaskSource.FILE.value,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._workspaces = workspaces
        self._store = store
        self._pipeline = pipeline
        self._pr_manager = pr_manager
        self.defer_cleanup = defer_cleanup
        self.retention_hours = retention_hours
        self.review_on_stop = review_on_stop
        self.task_source = task_source
        self._clock = clock
        self._background: set[asyncio.Task[Any]] = set()

    # -- transitions -------------------------------------------------------

    def _set_status(self, task: Task, status: TaskStatus, *, rollback: bool = False) -> bool:
        status = TaskStatus(status)
        if task.status is status:
            return False
        allowed_rollback = rollback and task.status is TaskStatus.REVIEW and status is TaskStatus.IN_PROGRESS
        if STATUS_ORDER.index(status) < STATUS_ORDER.index(task.status) and not allowed_rollback:
            raise InvalidTransitionError(task.id, task.status, status)
        task.status = status
        task.mark_modified(self._clock())
        return True

    async def _update_label(self, task: Task, warnings: list[str]) -> None:
        if self._pr_manager is None or task.issue_number is None:
            return
        try:
            await self._pr_manager.update_status_label(task.issue_number, task.status)
        except _LABEL_ERRORS as exc:
            message = f"Status label update failed: {exc}"
            logger.warning(message, extra={"task_id": task.id, "issue_number": task.issue_number})
            warnings.append(message)

    async def move(self, task_id: str, status: TaskStatus | str) -> tuple[Task, list[str]]:
        """Advance a task to ``status``; moving to the current status is a no-op."""

        task = self._repository.get_task(task_id)
        warnings: list[str] = []
        if self._set_status(task, TaskStatus(status)):
            self._repository.save_task(task)
            await self._update_label(task, warnings)
        return task, warnings

    # -- tackle ------------------------------------------------------------

    async def tackle(self, task_id: str) -> TackleResult:
        """Start work: move to in progress, provision the workspace, open an execution."""

        task = self._repository.get_task(task_id)
        if STATUS_ORDER.index(task.status) > STATUS_ORDER.index(TaskStatus.IN_PROGRESS):
            raise InvalidTransitionError(task.id, task.status, TaskStatus.IN_PROGRESS)

        handle = await self._workspaces.ensure_workspace(
            task_id=task.id, title=task.title, task_source=self.task_source
        )
        changed = self._set_status(task, TaskStatus.IN_PROGRESS)
        # Branch and path are only rewritten when the worktree was (re)created.
        if task.branch is None or handle.created:
            task.branch = handle.branch
            task.worktree_path = str(handle.path)
            if not changed:
                task.mark_modified(self._clock())
            changed = True
        if changed:
            self._repository.save_task(task)

        prompt = build_task_prompt(task, branch=handle.branch)
        warnings: list[str] = []
        execution_id = self._open_execution(task, prompt, warnings)
        await self._update_label(task, warnings)

        logger.info(
            "Task tackled",
            extra={"task_id": task.id, "branch": handle.branch, "workspace_created": handle.created},
        )
        return TackleResult(
            task=task,
            workspace=handle,
            execution_id=execution_id,
            prompt=prompt,
            launch_command=launch_command(handle.path, prompt),
            warnings=warnings,
        )

    def _open_execution(self, task: Task, prompt: str, warnings: list[str]) -> str | None:
        try:
            latest = self._store.latest_execution(self.task_source, task.id)
            if latest is not None and latest.status is ExecutionStatus.RUNNING:
                return latest.id
            record = self._store.create_execution(
                task_source=self.task_source,
                task_id=task.id,
                task_title=task.title,
                prompt=prompt,
            )
        except Exception as exc:  # execution history is advisory for tackling
            message = f"Execution tracking unavailable: {exc}"
            logger.warning(message, extra={"task_id": task.id})
            warnings.append(message)
            return None
        return record.id

    def register_session(self, execution_id: str, session_id: str) -> ExecutionRecord:
        return self._store.update_session_id(execution_id, session_id)

    # -- agent hooks -------------------------------------------------------

    async def handle_session_stop(self, session_id: str | None, cwd: str | None) -> HookResult:
        """Agent session finished; move the task to review at most once."""

        if not cwd:
            return HookResult(applied=False, reason="no_cwd")
        workspace = self._store.find_workspace_by_path(cwd)
        if workspace is None:
            return HookResult(applied=False, reason="not_worktree")
        try:
            task = self._repository.get_task(workspace.task_id)
        except TaskNotFoundError:
            return HookResult(applied=False, reason="task_not_found", task_id=workspace.task_id)

        execution = self._complete_execution(workspace.task_source, task.id, session_id)
        self._store.touch_workspace(workspace.id)

        if task.status is not TaskStatus.IN_PROGRESS:
            return HookResult(
                applied=False,
                reason="already_transitioned",
                task_id=task.id,
                execution_id=execution.id if execution else None,
                status=task.status.value,
            )

        self._set_status(task, TaskStatus.REVIEW)
        self._repository.save_task(task)
        warnings: list[str] = []
        await self._update_label(task, warnings)

        scheduled = False
        if self.review_on_stop:
            self._schedule_review(task.id)
            scheduled = True
        logger.info(
            "Session stop moved task to review",
            extra={"task_id": task.id, "session_id": session_id, "review_scheduled": scheduled},
        )
        return HookResult(
            applied=True,
            task_id=task.id,
            execution_id=execution.id if execution else None,
            status=task.status.value,
            review_scheduled=scheduled,
        )

    def _complete_execution(self, task_source: str, task_id: str, session_id: str | None) -> ExecutionRecord | None:
        execution = self._store.find_execution_by_session(session_id) if session_id else None
        if execution is None:
            execution = self._store.latest_execution(task_source, task_id)
        if execution is None or execution.is_terminal:
            return execution
        if session_id and not execution.agent_session_id:
            self._store.update_session_id(execution.id, session_id)
        return self._store.complete_execution(execution.id, status=ExecutionStatus.COMPLETED, exit_code=0)

    def handle_subagent_stop(
        self,
        *,
        session_id: str | None,
        subagent_type: str | None,
        prompt: str | None,
        duration_ms: int | None = None,
        total_tokens: int | None = None,
        total_tool_uses: int | None = None,
    ) -> ExecutionRecord:
        missing = [
            name
            for name, value in (("session_id", session_id), ("subagent_type", subagent_type), ("prompt", prompt))
            if not value
        ]
        if missing:
            raise HookValidationError(f"Missing required fields: {', '.join(missing)}")
        return self._store.create_subagent_execution(
            parent_session_id=str(session_id),
            subagent_type=str(subagent_type),
            prompt=str(prompt),
            duration_ms=duration_ms,
            total_tokens=total_tokens,
            total_tool_uses=total_tool_uses,
        )

    def _schedule_review(self, task_id: str) -> None:
        job = asyncio.create_task(self._review_in_background(task_id))
        self._background.add(job)
        job.add_done_callback(self._background.discard)

    async def _review_in_background(self, task_id: str) -> None:
        try:
            await self.review(task_id)
        except Exception:  # nothing awaits a background review
            logger.exception("Background review failed", extra={"task_id": task_id})

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # -- review ------------------------------------------------------------

    async def review(self, task_id: str) -> ReviewRun:
        """Review the task's branch; pass advances to ready to ship, fail rolls back."""

        task = self._repository.get_task(task_id)
        if task.status is TaskStatus.IN_PROGRESS:
            self._set_status(task, TaskStatus.REVIEW)
            self._repository.save_task(task)
        elif task.status is not TaskStatus.REVIEW:
            raise InvalidTransitionError(task.id, task.status, TaskStatus.REVIEW)

        workdir = Path(task.worktree_path) if task.worktree_path else self._workspaces.workspace_path(task.id)
        outcome = await self._pipeline.review(
            title=task.title,
            description=task.description,
            workdir=workdir,
            repo_root=self._workspaces.repo_root,
            branch=task.branch,
            acceptance_criteria=task.acceptance_criteria,
            issue_number=task.issue_number,
            task_id=task.id,
        )

        # Re-read: the task may have been edited while the reviewer ran.
        task = self._repository.get_task(task_id)
        if task.status is not TaskStatus.REVIEW:
            return ReviewRun(task=task, outcome=outcome, warnings=["Task left review while it was being reviewed"])

        if outcome.passed:
            self._set_status(task, TaskStatus.READY_TO_SHIP)
            task.review_feedback = None
            if outcome.pull_request is not None:
                task.pr_number = outcome.pull_request.number
                task.pr_url = outcome.pull_request.url
        else:
            self._set_status(task, TaskStatus.IN_PROGRESS, rollback=True)
            task.review_feedback = outcome.result.format_feedback()
        self._repository.save_task(task)

        warnings: list[str] = []
        await self._update_label(task, warnings)
        return ReviewRun(task=task, outcome=outcome, warnings=warnings)

    # -- ship --------------------------------------------------------------

    async def ship(self, task_id: str, *, defer_cleanup: bool | None = None) -> ShipResult:
        """Merge the task's pull request, then defer or perform workspace cleanup."""

        task = self._repository.get_task(task_id)
        if task.status is not TaskStatus.READY_TO_SHIP:
            raise InvalidTransitionError(task.id, task.status, TaskStatus.READY_TO_SHIP)
        if self._pr_manager is None:
            return ShipResult(task=task, merge=MergeOutcome(success=False, error="GitHub is not configured"))

        target: str | int | None = task.pr_number or task.branch
        if target is None:
            return ShipResult(task=task, merge=MergeOutcome(success=False, error="Task has no pull request or branch"))

        warnings: list[str] = []
        workdir = Path(task.worktree_path) if task.worktree_path else self._workspaces.workspace_path(task.id)
        if task.branch and workdir.is_dir():
            # Work committed after the review still has to reach the PR.
            await self._pipeline.publish_branch(
                workdir=workdir, branch=task.branch, title=task.title, warnings=warnings
            )
        merge = await self._pr_manager.merge_pr(target, repo_root=self._workspaces.repo_root)
        if not merge.success:
            return ShipResult(task=task, merge=merge, warnings=warnings)

        defer = self.defer_cleanup if defer_cleanup is None else defer_cleanup
        if defer:
            cleanup = self._workspaces.defer_cleanup(task.id, self.task_source)
        else:
            cleanup = await self._cleanup_now(task, warnings)

        if merge.pr_number is not None and task.pr_number is None:
            task.pr_number = merge.pr_number
            task.mark_modified(self._clock())
            self._repository.save_task(task)
        logger.info("Task shipped", extra={"task_id": task.id, "pr_number": merge.pr_number, "deferred": defer})
        return ShipResult(task=task, merge=merge, cleanup=cleanup, warnings=warnings)

    async def _cleanup_now(self, task: Task, warnings: list[str]) -> dict[str, Any] | None:
        record = self._store.get_workspace_for_task(self.task_source, task.id)
        if record is None:
            return None
        report = await self._workspaces.cleanup(workspace_ids=[record.id])
        for result in report.results:
            if result.status == "skipped":
                warnings.append(f"Workspace kept: {result.reason}")
        return report.to_dict()


__all__ = [
    "HookResult",
    "HookValidationError",
    "InvalidTransitionError",
    "ReviewRun",
    "ShipResult",
    "TackleResult",
    "TaskWorkflow",
    "launch_command",
]
