"""Results and conflicts produced by sync passes."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..storage import Task


class SyncDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"
    BOTH = "both"


class ConflictChoice(str, Enum):
    KEEP_LOCAL = "keep-local"
    KEEP_REMOTE = "keep-remote"


class SyncInProgressError(RuntimeError):
    """Raised when a pass is requested while another one is running."""


class ConflictNotFoundError(LookupError):
    """Raised when resolving a conflict that is not pending."""


class StaleConflictError(RuntimeError):
    """Raised when the remote side changed again after the conflict was captured."""


@dataclass(slots=True)
class SyncConflict:
    task_id: str
    issue_number: int
    local_version: Task
    remote_version: Task
    remote_issue: dict[str, Any]
    remote_updated_at: datetime
    detected_at: datetime
    conflict_type: str = "both-modified"

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "issue_number": self.issue_number,
            "conflict_type": self.conflict_type,
            "local_version": self.local_version.model_dump(mode="json"),
            "remote_version": self.remote_version.model_dump(mode="json"),
            "remote_updated_at": self.remote_updated_at.isoformat(),
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass(slots=True)
class SyncError:
    task_id: str | None
    issue_number: int | None
    operation: str
    message: str
    retryable: bool


@dataclass(slots=True)
class SyncedItem:
    task_id: str
    issue_number: int | None
    operation: str


@dataclass(slots=True)
class SyncReport:
    direction: SyncDirection
    pushed: list[SyncedItem] = field(default_factory=list)
    pulled: list[SyncedItem] = field(default_factory=list)
    conflicts: list[SyncConflict] = field(default_factory=list)
    errors: list[SyncError] = field(default_factory=list)
    unchanged: int = 0

    @property
    def summary(self) -> dict[str, int]:
        return {
            "pushed": len(self.pushed),
            "pulled": len(self.pulled),
            "unchanged": self.unchanged,
            "conflicts": len(self.conflicts),
            "errors": len(self.errors),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction.value,
            "pushed": [asdict(item) for item in self.pushed],
            "pulled": [asdict(item) for item in self.pulled],
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "errors": [asdict(error) for error in self.errors],
            "summary": self.summary,
        }


__all__ = [
    "ConflictChoice",
    "ConflictNotFoundError",
    "StaleConflictError",
    "SyncConflict",
    "SyncDirection",
    "SyncError",
    "SyncInProgressError",
    "SyncReport",
    "SyncedItem",
]
