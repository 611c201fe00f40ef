"""Per-task git worktrees: provisioning, gated cleanup and orphan removal."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable

from ..resilience import OperationTimeoutError
from ..storage import ChromaStore, TaskSource, WorkspaceRecord
from .client import GitClient, GitCommandError

logger = logging.getLogger(__name__)

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
SLUG_MAX_LENGTH = 40
STATUS_CHECK_TIMEOUT_MS = 5_000


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    slug = _SLUG_PATTERN.sub("-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")


def short_id(task_id: str) -> str:
    return task_id[:8]


def branch_name(task_id: str, title: str) -> str:
    """``task/<first 8 chars of id>-<slug>``, e.g. ``task/abcdef12-fix-login-bug``."""

    slug = slugify(title)
    return f"task/{short_id(task_id)}-{slug}" if slug else f"task/{short_id(task_id)}"


def workspace_dirname(task_id: str) -> str:
    return f"task-{short_id(task_id)}"


@dataclass(slots=True)
class WorkspaceHandle:
    task_source: str
    task_id: str
    path: Path
    branch: str
    created: bool
    workspace_id: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["path"] = str(self.path)
        return payload


@dataclass(slots=True)
class CleanupOutcome:
    workspace_id: str
    task_id: str
    path: str
    status: str
    reason: str | None = None


@dataclass(slots=True)
class CleanupReport:
    results: list[CleanupOutcome]
    dry_run: bool

    @property
    def cleaned(self) -> int:
        return sum(1 for item in self.results if item.status == "cleaned")

    @property
    def skipped(self) -> int:
        return sum(1 for item in self.results if item.status == "skipped")

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [asdict(item) for item in self.results],
            "summary": {
                "total": len(self.results),
                "cleaned": self.cleaned,
                "skipped": self.skipped,
                "dry_run": self.dry_run,
            },
        }


@dataclass(slots=True)
class OrphanedWorkspace:
    name: str
    path: str
    size_bytes: int


@dataclass(slots=True)
class OrphanCleanupReport:
    removed: list[OrphanedWorkspace]
    failed: list[dict[str, str]]
    dry_run: bool
    pruned: bool

    @property
    def freed_bytes(self) -> int:
        return sum(item.size_bytes for item in self.removed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "removed": [asdict(item) for item in self.removed],
            "failed": self.failed,
            "freed_bytes": self.freed_bytes,
            "dry_run": self.dry_run,
            "pruned": self.pruned,
        }


def _directory_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total


class WorkspaceManager:
    """Create, find and remove the worktree dedicated to each task."""

    def __init__(
        self,
        repo_root: Path,
        git: GitClient,
        store: ChromaStore,
        *,
        tasks_dir_name: str = ".tasks",
    ) -> None:
        self.repo_root = Path(repo_root)
        self._git = git
        self._store = store
        self.tasks_dir_name = tasks_dir_name

    @property
    def tasks_root(self) -> Path:
        return self.repo_root / self.tasks_dir_name

    def workspace_path(self, task_id: str) -> Path:
        return self.tasks_root / workspace_dirname(task_id)

    async def ensure_workspace(
        self,
        *,
        task_id: str,
        title: str,
        task_source: str = TaskSource.FILE.value,
    ) -> WorkspaceHandle:
        """Return the task's workspace, creating the worktree on first use."""

        path = self.workspace_path(task_id)
        existing = self._lookup(task_source, task_id)
        branch = existing.branch if existing is not None and existing.branch else branch_name(task_id, title)
        warnings: list[str] = []

        if path.exists():
            workspace_id = self._register(task_source, task_id, path, branch, warnings)
            logger.info("Reusing existing workspace", extra={"task_id": task_id, "path": str(path)})
            return WorkspaceHandle(task_source, task_id, path, branch, False, workspace_id, warnings)

        self.ensure_ignored()
        base = await self._git.default_branch(self.repo_root)
        path.parent.mkdir(parents=True, exist_ok=True)
        if await self._git.branch_exists(self.repo_root, branch):
            await self._git.worktree_add(self.repo_root, path, branch, base, new_branch=False)
        else:
            await self._git.worktree_add(self.repo_root, path, branch, base)

        workspace_id = self._register(task_source, task_id, path, branch, warnings)
        logger.info(
            "Created workspace",
            extra={"task_id": task_id, "path": str(path), "branch": branch, "base": base},
        )
        return WorkspaceHandle(task_source, task_id, path, branch, True, workspace_id, warnings)

    def _lookup(self, task_source: str, task_id: str) -> WorkspaceRecord | None:
        try:
            return self._store.get_workspace_for_task(task_source, task_id)
        except Exception as exc:  # storage is advisory for lookups
            logger.warning("Workspace lookup failed", extra={"task_id": task_id, "error": str(exc)})
            return None

    def _register(
        self,
        task_source: str,
        task_id: str,
        path: Path,
        branch: str,
        warnings: list[str],
    ) -> str | None:
        try:
            record = self._store.upsert_workspace(
                task_source=task_source, task_id=task_id, path=str(path), branch=branch
            )
        except Exception as exc:  # registration failure must not undo a created worktree
            message = f"Workspace registry update failed: {exc}"
            logger.warning(message, extra={"task_id": task_id})
            warnings.append(message)
            return None
        return record.id

    def ensure_ignored(self) -> bool:
        """Append the worktree directory to ``.gitignore`` unless already listed."""

        gitignore = self.repo_root / ".gitignore"
        entry = f"{self.tasks_dir_name}/"
        content = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
        listed = {line.strip().lstrip("/") for line in content.splitlines()}
        if entry in listed or self.tasks_dir_name in listed:
            return False
        separator = "" if not content or content.endswith("\n") else "\n"
        gitignore.write_text(f"{content}{separator}\n# Task worktrees\n{entry}\n", encoding="utf-8")
        return True

    def defer_cleanup(self, task_id: str, task_source: str = TaskSource.FILE.value) -> dict[str, Any]:
        """Mark the workspace for later removal and describe how to remove it by hand."""

        record = self._lookup(task_source, task_id)
        path = Path(record.path) if record is not None else self.workspace_path(task_id)
        if record is not None:
            self._store.mark_pending_cleanup(record.id)
        return {
            "pending_cleanup": True,
            "path": str(path),
            "instructions": f'cd "{self.repo_root}" && git worktree remove "{path}" --force',
        }

    async def cleanup(
        self,
        *,
        retention_hours: float = 24.0,
        dry_run: bool = False,
        workspace_ids: Iterable[str] | None = None,
    ) -> CleanupReport:
        """Remove stale workspaces that pass every safety gate.

        Explicit ``workspace_ids`` bypass the retention window but not the gates.
        """

        if workspace_ids is not None:
            candidates = [
                record
                for record in (self._store.get_workspace(workspace_id) for workspace_id in workspace_ids)
                if record is not None
            ]
        else:
            candidates = self._store.cleanup_candidates(retention_hours)

        results = [await self._cleanup_one(record, dry_run=dry_run) for record in candidates]
        report = CleanupReport(results=results, dry_run=dry_run)
        logger.info(
            "Workspace cleanup finished",
            extra={"cleaned": report.cleaned, "skipped": report.skipped, "dry_run": dry_run},
        )
        return report

    async def _cleanup_one(self, record: WorkspaceRecord, *, dry_run: bool) -> CleanupOutcome:
        path = Path(record.path)

        def outcome(status: str, reason: str) -> CleanupOutcome:
            return CleanupOutcome(record.id, record.task_id, record.path, status, reason)

        if not path.exists():
            if not dry_run:
                self._store.delete_workspace(record.id)
            return outcome("cleaned", "Worktree already removed from disk")

        try:
            running = self._store.has_running_execution(record.task_source, record.task_id)
        except Exception as exc:  # unknown execution state blocks deletion
            return outcome("skipped", f"Could not verify execution state: {exc}")
        if running:
            return outcome("skipped", "Agent is currently running")

        try:
            dirty = await self._git.has_uncommitted_changes(path, timeout_ms=STATUS_CHECK_TIMEOUT_MS)
        except (GitCommandError, OperationTimeoutError, OSError):
            dirty = True
        if dirty:
            return outcome("skipped", "Has uncommitted changes")

        if dry_run:
            return outcome("would_clean", "Dry run - would be cleaned")

        try:
            await self._remove(path)
        except OSError as exc:
            return outcome("skipped", f"Failed to remove: {exc}")
        self._store.delete_workspace(record.id)
        return outcome("cleaned", "Removed")

    async def _remove(self, path: Path) -> None:
        try:
            await self._git.worktree_remove(self.repo_root, path)
            return
        except (GitCommandError, OperationTimeoutError) as exc:
            logger.warning("git worktree remove failed, deleting directory", extra={"path": str(path), "error": str(exc)})
        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path)
        await self._prune()

    async def _prune(self) -> bool:
        try:
            await self._git.worktree_prune(self.repo_root)
        except (GitCommandError, OperationTimeoutError) as exc:
            logger.warning("git worktree prune failed", extra={"error": str(exc)})
            return False
        return True

    async def find_orphans(self) -> list[OrphanedWorkspace]:
        """Task directories on disk that git no longer lists as worktrees."""

        if not self.tasks_root.is_dir():
            return []
        registered = {path.resolve() for path in await self._git.worktree_list(self.repo_root)}
        orphans: list[OrphanedWorkspace] = []
        for entry in sorted(self.tasks_root.iterdir()):
            if not entry.is_dir() or not entry.name.startswith("task-"):
                continue
            if entry.resolve() in registered:
                continue
            size = await asyncio.to_thread(_directory_size, entry)
            orphans.append(OrphanedWorkspace(name=entry.name, path=str(entry), size_bytes=size))
        return orphans

    async def remove_orphans(self, *, dry_run: bool = False) -> OrphanCleanupReport:
        orphans = await self.find_orphans()
        if dry_run:
            return OrphanCleanupReport(removed=orphans, failed=[], dry_run=True, pruned=False)

        removed: list[OrphanedWorkspace] = []
        failed: list[dict[str, str]] = []
        for orphan in orphans:
            try:
                await asyncio.to_thread(shutil.rmtree, orphan.path)
            except OSError as exc:
                failed.append({"name": orphan.name, "error": str(exc)})
                continue
            removed.append(orphan)
        pruned = await self._prune()
        logger.info(
            "Removed orphaned workspaces",
            extra={"removed": len(removed), "failed": len(failed)},
        )
        return OrphanCleanupReport(removed=removed, failed=failed, dry_run=False, pruned=pruned)


__all__ = [
    "CleanupOutcome",
    "CleanupReport",
    "OrphanCleanupReport",
    "OrphanedWorkspace",
    "WorkspaceHandle",
    "WorkspaceManager",
    "branch_name",
    "short_id",
    "slugify",
    "workspace_dirname",
]
