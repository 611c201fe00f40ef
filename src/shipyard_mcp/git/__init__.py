"""Git command wrapper and the task workspace manager."""

from .client import DEFAULT_BRANCH_CANDIDATES, GitClient, GitCommandError
from .workspace import (
    CleanupOutcome,
    CleanupReport,
    OrphanCleanupReport,
    OrphanedWorkspace,
    WorkspaceHandle,
    WorkspaceManager,
    branch_name,
    short_id,
    slugify,
    workspace_dirname,
)

__all__ = [
    "DEFAULT_BRANCH_CANDIDATES",
    "CleanupOutcome",
    "CleanupReport",
    "GitClient",
    "GitCommandError",
    "OrphanCleanupReport",
    "OrphanedWorkspace",
    "WorkspaceHandle",
    "WorkspaceManager",
    "branch_name",
    "short_id",
    "slugify",
    "workspace_dirname",
]
