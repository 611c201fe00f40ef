"""Storage abstractions for Shipyard MCP."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError, RecordNotFoundError
from .models import (
    STATUS_ORDER,
    TERMINAL_EXECUTION_STATUSES,
    CleanupPolicy,
    Effort,
    ExecutionRecord,
    ExecutionStatus,
    LogChunk,
    Priority,
    SyncStatus,
    Task,
    TaskSource,
    TaskStatus,
    Value,
    WorkspaceRecord,
    new_id,
    utcnow,
)
from .tasks import TaskFileError, TaskNotFoundError, TaskRepository, YamlTaskRepository

__all__ = [
    "STATUS_ORDER",
    "TERMINAL_EXECUTION_STATUSES",
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "CleanupPolicy",
    "Effort",
    "ExecutionRecord",
    "ExecutionStatus",
    "LogChunk",
    "Priority",
    "RecordNotFoundError",
    "SyncStatus",
    "Task",
    "TaskFileError",
    "TaskNotFoundError",
    "TaskRepository",
    "TaskSource",
    "TaskStatus",
    "Value",
    "WorkspaceRecord",
    "YamlTaskRepository",
    "new_id",
    "utcnow",
]
