"""Data models for tasks, workspaces and agent executions."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TaskStatus(str, Enum):
    BACKLOG = "backlog"
    UP_NEXT = "up_next"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    READY_TO_SHIP = "ready_to_ship"


STATUS_ORDER: tuple[TaskStatus, ...] = (
    TaskStatus.BACKLOG,
    TaskStatus.UP_NEXT,
    TaskStatus.IN_PROGRESS,
    TaskStatus.REVIEW,
    TaskStatus.READY_TO_SHIP,
)


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    SOMEDAY = "someday"


class Effort(str, Enum):
    TRIVIAL = "trivial"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class Value(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"


class TaskSource(str, Enum):
    FILE = "file"
    GITHUB = "github"
    QUICK = "quick"


class Task(BaseModel):
    """A backlog item and its pipeline bookkeeping."""

    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.BACKLOG
    priority: Priority = Priority.MEDIUM
    effort: Effort | None = None
    value: Value | None = None
    tags: list[str] = Field(default_factory=list)
    category: str | None = None
    acceptance_criteria: list[str] = Field(default_factory=list)
    notes: str | None = None

    branch: str | None = None
    worktree_path: str | None = None
    review_feedback: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None

    issue_number: int | None = None
    issue_url: str | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced_at: datetime | None = None
    last_local_modified_at: datetime | None = None
    last_remote_modified_at: datetime | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be empty")
        return value

    @property
    def local_modified_at(self) -> datetime:
        return self.last_local_modified_at or self.updated_at

    def mark_modified(self, now: datetime | None = None) -> None:
        """Record a local edit so the next sync pass pushes it."""

        now = now or utcnow()
        self.updated_at = now
        self.last_local_modified_at = now
        if self.sync_status is not SyncStatus.CONFLICT:
            self.sync_status = SyncStatus.PENDING


class CleanupPolicy(str, Enum):
    AUTO = "auto"
    PINNED = "pinned"
    MANUAL = "manual"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.KILLED}
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(slots=True)
class WorkspaceRecord:
    id: str
    task_source: str
    task_id: str
    path: str
    branch: str
    cleanup_policy: CleanupPolicy
    created_at: datetime
    touched_at: datetime
    pending_cleanup: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["cleanup_policy"] = self.cleanup_policy.value
        payload["created_at"] = _iso(self.created_at)
        payload["touched_at"] = _iso(self.touched_at)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "WorkspaceRecord":
        return cls(
            id=payload["id"],
            task_source=payload.get("task_source", TaskSource.FILE.value),
            task_id=payload["task_id"],
            path=payload["path"],
            branch=payload.get("branch", ""),
            cleanup_policy=CleanupPolicy(payload.get("cleanup_policy", CleanupPolicy.AUTO.value)),
            created_at=_parse(payload.get("created_at")) or utcnow(),
            touched_at=_parse(payload.get("touched_at")) or utcnow(),
            pending_cleanup=bool(payload.get("pending_cleanup", False)),
        )


@dataclass(slots=True)
class ExecutionRecord:
    id: str
    task_source: str
    task_id: str
    task_title: str
    status: ExecutionStatus
    started_at: datetime
    completed_at: datetime | None = None
    agent_session_id: str | None = None
    agent_type: str = "claude-code"
    exit_code: int | None = None
    prompt: str | None = None
    source_type: str = "subprocess"
    parent_execution_id: str | None = None
    subagent_type: str | None = None
    total_tokens: int | None = None
    total_tool_uses: int | None = None
    duration_ms: int | None = None
    revision: int = 0
    children: list["ExecutionRecord"] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["started_at"] = _iso(self.started_at)
        payload["completed_at"] = _iso(self.completed_at)
        payload["children"] = [child.to_dict() for child in self.children]
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ExecutionRecord":
        return cls(
            id=payload["id"],
            task_source=payload.get("task_source", TaskSource.FILE.value),
            task_id=payload["task_id"],
            task_title=payload.get("task_title", ""),
            status=ExecutionStatus(payload.get("status", ExecutionStatus.RUNNING.value)),
            started_at=_parse(payload.get("started_at")) or utcnow(),
            completed_at=_parse(payload.get("completed_at")),
            agent_session_id=payload.get("agent_session_id"),
            agent_type=payload.get("agent_type", "claude-code"),
            exit_code=payload.get("exit_code"),
            prompt=payload.get("prompt"),
            source_type=payload.get("source_type", "subprocess"),
            parent_execution_id=payload.get("parent_execution_id"),
            subagent_type=payload.get("subagent_type"),
            total_tokens=payload.get("total_tokens"),
            total_tool_uses=payload.get("total_tool_uses"),
            duration_ms=payload.get("duration_ms"),
            revision=int(payload.get("revision", 0)),
        )


@dataclass(slots=True)
class LogChunk:
    execution_id: str
    chunk_index: int
    stream: str
    content: str
    created_at: datetime


__all__ = [
    "STATUS_ORDER",
    "TERMINAL_EXECUTION_STATUSES",
    "CleanupPolicy",
    "Effort",
    "ExecutionRecord",
    "ExecutionStatus",
    "LogChunk",
    "Priority",
    "SyncStatus",
    "Task",
    "TaskSource",
    "TaskStatus",
    "Value",
    "WorkspaceRecord",
    "new_id",
    "utcnow",
]
