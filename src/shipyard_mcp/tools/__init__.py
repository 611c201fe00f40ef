"""Tool registration for Shipyard MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from fastmcp import Context, FastMCP

from ..api import (
    CleanupRequest,
    DedupeRequest,
    MetadataLabelRequest,
    MoveRequest,
    ResolveConflictRequest,
    SessionRegistrationRequest,
    SessionStopPayload,
    ShipRequest,
    StatusLabelRequest,
    SubagentStopPayload,
    SyncRequest,
    TaskRequest,
    WorkspacePinRequest,
    invoke,
)
from ..config import ShipyardSettings
from ..git import WorkspaceManager
from ..github import GitHubClient, GitHubConfigError, PRLifecycleManager
from ..resilience import CircuitBreakerRegistry
from ..storage import ChromaStore, RecordNotFoundError, TaskRepository
from ..sync import AutoSyncDriver, IssueSyncEngine, dedupe_issues, tracker_health
from ..workflow import TaskWorkflow

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[tuple[int, dict[str, Any]]]]


@dataclass(slots=True)
class ToolHandles:
    list_tasks: Any
    tackle_task: Any
    move_task: Any
    review_task: Any
    ship_task: Any
    cleanup_workspaces: Any
    pin_workspace: Any
    list_orphans: Any
    remove_orphans: Any
    list_executions: Any
    register_session: Any
    sync_tasks: Any
    list_conflicts: Any
    resolve_conflict: Any
    dedupe_issues: Any
    tracker_health: Any
    update_status_label: Any
    update_metadata_labels: Any
    system_health: Any
    session_stop: Handler
    subagent_stop: Handler


def register_tools(
    server: FastMCP,
    *,
    settings: ShipyardSettings,
    repository: TaskRepository,
    store: ChromaStore,
    workspaces: WorkspaceManager,
    workflow: TaskWorkflow,
    registry: CircuitBreakerRegistry,
    github: GitHubClient | None = None,
    pr_manager: PRLifecycleManager | None = None,
    sync_engine: IssueSyncEngine | None = None,
    auto_sync: AutoSyncDriver | None = None,
) -> ToolHandles:
    """Register Shipyard's MCP tools on the server."""

    def _require_sync() -> IssueSyncEngine:
        if sync_engine is None:
            raise GitHubConfigError("GitHub sync is not configured; set GITHUB_TOKEN and GITHUB_REPO")
        return sync_engine

    def _require_github() -> GitHubClient:
        if github is None or not github.configured:
            raise GitHubConfigError("GitHub is not configured; set GITHUB_TOKEN and GITHUB_REPO")
        return github

    def _require_pr_manager() -> PRLifecycleManager:
        if pr_manager is None:
            raise GitHubConfigError("GitHub is not configured; set GITHUB_TOKEN and GITHUB_REPO")
        return pr_manager

    async def _run(action: str, operation: Callable[[], Awaitable[Any]], context: Context | None) -> dict[str, Any]:
        status, envelope = await invoke(action, operation)
        level = "info" if envelope["success"] else "warning"
        _emit_log(context, level, f"{action} finished", extra={"action": action, "status": status})
        return envelope

    # -- tasks -------------------------------------------------------------

    async def _list_tasks(status: str | None = None, context: Context | None = None) -> dict[str, Any]:
        """List backlog tasks, optionally filtered by status."""

        async def operation() -> list[dict[str, Any]]:
            tasks = repository.list_tasks()
            if status:
                tasks = [task for task in tasks if task.status.value == status]
            return [task.model_dump(mode="json") for task in tasks]

        return await _run("list_tasks", operation, context)

    async def _tackle_task(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Move a task to in progress and provision its workspace."""

        async def operation():
            request = TaskRequest(task_id=task_id)
            return await workflow.tackle(request.task_id)

        return await _run("tackle", operation, context)

    async def _move_task(task_id: str, status: str, context: Context | None = None) -> dict[str, Any]:
        """Advance a task to a later status."""

        async def operation() -> dict[str, Any]:
            request = MoveRequest(task_id=task_id, status=status)
            task, warnings = await workflow.move(request.task_id, request.status)
            return {"task": task.model_dump(mode="json"), "warnings": warnings}

        return await _run("move", operation, context)

    async def _review_task(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Commit, diff and AI-review the task branch; opens a PR on pass."""

        async def operation():
            request = TaskRequest(task_id=task_id)
            return await workflow.review(request.task_id)

        return await _run("review", operation, context)

    async def _ship_task(
        task_id: str,
        defer_cleanup: bool | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Merge the task's pull request and clean up (or schedule cleanup of) its workspace."""

        async def operation():
            request = ShipRequest(task_id=task_id, defer_cleanup=defer_cleanup)
            return await workflow.ship(request.task_id, defer_cleanup=request.defer_cleanup)

        return await _run("ship", operation, context)

    tool_list_tasks = server.tool(
        name="list_tasks",
        description="List backlog tasks with their status, branch, workspace and sync bookkeeping.",
    )(_list_tasks)

    tool_tackle = server.tool(
        name="tackle_task",
        description=(
            "Start work on a task: move it to in_progress, create its git worktree and branch, "
            "and return the agent prompt plus a launch command."
        ),
    )(_tackle_task)

    tool_move = server.tool(
        name="move_task",
        description="Advance a task's status (backlog, up_next, in_progress, review, ready_to_ship).",
    )(_move_task)

    tool_review = server.tool(
        name="review_task",
        description=(
            "Auto-commit, push and diff the task branch, ask the AI reviewer for a verdict, "
            "and open a pull request when the review passes."
        ),
    )(_review_task)

    tool_ship = server.tool(
        name="ship_task",
        description="Squash-merge the task's pull request and defer or perform workspace cleanup.",
        annotations={"destructiveHint": True},
    )(_ship_task)

    # -- workspaces --------------------------------------------------------

    async def _cleanup_workspaces(
        dry_run: bool = True,
        retention_hours: float | None = None,
        workspace_ids: list[str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Remove stale workspaces that pass every safety gate."""

        async def operation():
            request = CleanupRequest(
                dry_run=dry_run, retention_hours=retention_hours, workspace_ids=workspace_ids
            )
            hours = settings.retention_hours if request.retention_hours is None else request.retention_hours
            return await workspaces.cleanup(
                retention_hours=hours, dry_run=request.dry_run, workspace_ids=request.workspace_ids
            )

        return await _run("cleanup_workspaces", operation, context)

    async def _pin_workspace(workspace_id: str, pinned: bool = True, context: Context | None = None) -> dict[str, Any]:
        """Exclude a workspace from (or return it to) policy cleanup."""

        async def operation():
            request = WorkspacePinRequest(workspace_id=workspace_id, pinned=pinned)
            if store.get_workspace(request.workspace_id) is None:
                raise RecordNotFoundError(request.workspace_id)
            if request.pinned:
                return store.pin_workspace(request.workspace_id)
            return store.unpin_workspace(request.workspace_id)

        return await _run("pin_workspace", operation, context)

    async def _list_orphans(context: Context | None = None) -> dict[str, Any]:
        """Task directories that git no longer tracks as worktrees."""

        async def operation():
            return await workspaces.find_orphans()

        return await _run("list_orphans", operation, context)

    async def _remove_orphans(dry_run: bool = True, context: Context | None = None) -> dict[str, Any]:
        """Delete orphaned task directories and prune worktree registrations."""

        async def operation():
            return await workspaces.remove_orphans(dry_run=dry_run)

        return await _run("remove_orphans", operation, context)

    async def _list_executions(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Agent executions for a task, newest first, with nested subagent runs."""

        async def operation():
            request = TaskRequest(task_id=task_id)
            return store.executions_with_children(request.task_id)

        return await _run("list_executions", operation, context)

    async def _register_session(execution_id: str, session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Attach the agent's session id to an execution."""

        async def operation():
            request = SessionRegistrationRequest(execution_id=execution_id, session_id=session_id)
            return workflow.register_session(request.execution_id, request.session_id)

        return await _run("register_session", operation, context)

    tool_cleanup = server.tool(
        name="cleanup_workspaces",
        description=(
            "Clean up stale task worktrees. Skips workspaces with a running agent or uncommitted "
            "changes. dry_run defaults to true."
        ),
        annotations={"destructiveHint": True},
    )(_cleanup_workspaces)

    tool_pin = server.tool(
        name="pin_workspace",
        description="Pin (or unpin) a workspace so policy cleanup never removes it.",
    )(_pin_workspace)

    tool_list_orphans = server.tool(
        name="list_orphans",
        description="List task directories not registered as git worktrees, with their size.",
    )(_list_orphans)

    tool_remove_orphans = server.tool(
        name="remove_orphans",
        description="Remove orphaned task directories and prune git worktree metadata. dry_run defaults to true.",
        annotations={"destructiveHint": True},
    )(_remove_orphans)

    tool_executions = server.tool(
        name="list_executions",
        description="List agent executions recorded for a task, including subagent runs.",
    )(_list_executions)

    tool_register_session = server.tool(
        name="register_session",
        description=(
            "Record the coding agent's session id on the execution returned by tackle_task, "
            "so session-stop and subagent-stop hooks resolve to it."
        ),
    )(_register_session)

    # -- tracker sync ------------------------------------------------------

    async def _sync_tasks(direction: str = "both", context: Context | None = None) -> dict[str, Any]:
        """Run one sync pass against the issue tracker."""

        async def operation():
            request = SyncRequest(direction=direction)
            engine = _require_sync()
            repository.flush()
            return await engine.run_pass(request.direction)

        return await _run("sync", operation, context)

    async def _list_conflicts(context: Context | None = None) -> dict[str, Any]:
        """Pending sync conflicts awaiting a keep-local or keep-remote decision."""

        async def operation():
            return _require_sync().conflicts

        return await _run("list_conflicts", operation, context)

    async def _resolve_conflict(task_id: str, choice: str, context: Context | None = None) -> dict[str, Any]:
        """Resolve a sync conflict by keeping the local or the remote version."""

        async def operation():
            request = ResolveConflictRequest(task_id=task_id, choice=choice)
            task = await _require_sync().resolve_conflict(request.task_id, request.choice)
            return task.model_dump(mode="json")

        return await _run("resolve_conflict", operation, context)

    async def _dedupe_issues(apply: bool = False, context: Context | None = None) -> dict[str, Any]:
        """Find (and with apply=true, close) duplicate issues for the same task."""

        async def operation():
            request = DedupeRequest(apply=apply)
            return await dedupe_issues(_require_github(), dry_run=not request.apply)

        return await _run("dedupe", operation, context)

    async def _tracker_health(context: Context | None = None) -> dict[str, Any]:
        """Check tracker credentials, repository access and sync hygiene."""

        async def operation():
            return await tracker_health(_require_github(), repository)

        return await _run("tracker_health", operation, context)

    async def _update_status_label(issue_number: int, status: str, context: Context | None = None) -> dict[str, Any]:
        """Replace an issue's status label in a single write."""

        async def operation():
            request = StatusLabelRequest(issue_number=issue_number, status=status)
            return await _require_pr_manager().update_status_label(request.issue_number, request.status)

        return await _run("update_status_label", operation, context)

    async def _update_metadata_labels(
        issue_number: int,
        priority: str | None = None,
        effort: str | None = None,
        value: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Replace an issue's priority, effort or value labels in a single write."""

        async def operation():
            request = MetadataLabelRequest(
                issue_number=issue_number, priority=priority, effort=effort, value=value
            )
            return await _require_pr_manager().update_metadata_labels(
                request.issue_number,
                priority=request.priority,
                effort=request.effort,
                value=request.value,
            )

        return await _run("update_metadata_labels", operation, context)

    async def _system_health(context: Context | None = None) -> dict[str, Any]:
        """Circuit breaker states and auto-sync status."""

        async def operation() -> dict[str, Any]:
            payload = registry.health()
            payload["auto_sync"] = auto_sync.snapshot() if auto_sync is not None else None
            return payload

        return await _run("system_health", operation, context)

    tool_sync = server.tool(
        name="sync_tasks",
        description="Reconcile local tasks with GitHub issues (direction: push, pull or both).",
    )(_sync_tasks)

    tool_conflicts = server.tool(
        name="list_conflicts",
        description="List sync conflicts where both the task and its issue changed since the last sync.",
    )(_list_conflicts)

    tool_resolve = server.tool(
        name="resolve_conflict",
        description="Resolve a sync conflict with choice keep-local or keep-remote.",
    )(_resolve_conflict)

    tool_dedupe = server.tool(
        name="dedupe_issues",
        description="Group synced issues by task id and close all but the oldest. apply defaults to false.",
        annotations={"destructiveHint": True},
    )(_dedupe_issues)

    tool_tracker_health = server.tool(
        name="tracker_health",
        description="Report tracker authentication, repository access, duplicates and orphaned issues.",
    )(_tracker_health)

    tool_status_label = server.tool(
        name="update_status_label",
        description="Atomically replace the status label on an issue.",
    )(_update_status_label)

    tool_metadata_labels = server.tool(
        name="update_metadata_labels",
        description="Atomically replace priority, effort or value labels on an issue.",
    )(_update_metadata_labels)

    tool_system_health = server.tool(
        name="system_health",
        description="Report circuit breaker health (healthy, degraded, unhealthy) and auto-sync state.",
    )(_system_health)

    # -- agent hooks (HTTP only) -------------------------------------------

    async def _session_stop(payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        async def operation():
            request = SessionStopPayload.model_validate(payload)
            return await workflow.handle_session_stop(request.session_id, request.cwd)

        return await invoke("session_stop", operation)

    async def _subagent_stop(payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        async def operation():
            request = SubagentStopPayload.model_validate(payload)
            return workflow.handle_subagent_stop(
                session_id=request.session_id,
                subagent_type=request.subagent_type,
                prompt=request.prompt,
                duration_ms=request.duration_ms,
                total_tokens=request.total_tokens,
                total_tool_uses=request.total_tool_uses,
            )

        return await invoke("subagent_stop", operation)

    return ToolHandles(
        list_tasks=tool_list_tasks,
        tackle_task=tool_tackle,
        move_task=tool_move,
        review_task=tool_review,
        ship_task=tool_ship,
        cleanup_workspaces=tool_cleanup,
        pin_workspace=tool_pin,
        list_orphans=tool_list_orphans,
        remove_orphans=tool_remove_orphans,
        list_executions=tool_executions,
        register_session=tool_register_session,
        sync_tasks=tool_sync,
        list_conflicts=tool_conflicts,
        resolve_conflict=tool_resolve,
        dedupe_issues=tool_dedupe,
        tracker_health=tool_tracker_health,
        update_status_label=tool_status_label,
        update_metadata_labels=tool_metadata_labels,
        system_health=tool_system_health,
        session_stop=_session_stop,
        subagent_stop=_subagent_stop,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
