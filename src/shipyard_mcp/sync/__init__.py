"""Issue tracker synchronization."""

from .auto import AutoSyncDriver, AutoSyncStatus, backoff_ms
from .dedupe import DedupeReport, DuplicateGroup, dedupe_issues, find_duplicate_groups
from .engine import IssueSyncEngine
from .health import tracker_health
from .issues import extract_task_id, issue_to_task, task_marker, task_to_issue_body
from .models import (
    ConflictChoice,
    ConflictNotFoundError,
    StaleConflictError,
    SyncConflict,
    SyncDirection,
    SyncError,
    SyncInProgressError,
    SyncReport,
    SyncedItem,
)

__all__ = [
    "AutoSyncDriver",
    "AutoSyncStatus",
    "ConflictChoice",
    "ConflictNotFoundError",
    "DedupeReport",
    "DuplicateGroup",
    "IssueSyncEngine",
    "StaleConflictError",
    "SyncConflict",
    "SyncDirection",
    "SyncError",
    "SyncInProgressError",
    "SyncReport",
    "SyncedItem",
    "backoff_ms",
    "dedupe_issues",
    "extract_task_id",
    "find_duplicate_groups",
    "issue_to_task",
    "task_marker",
    "task_to_issue_body",
    "tracker_health",
]
