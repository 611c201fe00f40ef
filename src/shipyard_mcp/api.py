"""Request models and the JSON envelope shared by MCP tools and HTTP routes."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field, ValidationError

from .github import GitHubAuthError, GitHubConfigError, GitHubNotFoundError
from .resilience import CircuitOpenError, OperationTimeoutError
from .review import ReviewerNotFoundError, ReviewParseError
from .storage import (
    ChromaUnavailableError,
    Effort,
    Priority,
    RecordNotFoundError,
    TaskNotFoundError,
    TaskStatus,
    Value,
)
from .sync import ConflictChoice, ConflictNotFoundError, StaleConflictError, SyncDirection, SyncInProgressError
from .workflow import HookValidationError, InvalidTransitionError

logger = logging.getLogger(__name__)


class TaskRequest(BaseModel):
    task_id: str = Field(min_length=1)


class MoveRequest(TaskRequest):
    status: TaskStatus


class ShipRequest(TaskRequest):
    defer_cleanup: bool | None = None


class CleanupRequest(BaseModel):
    dry_run: bool = True
    retention_hours: float | None = Field(default=None, ge=0)
    workspace_ids: list[str] | None = None


class WorkspacePinRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    pinned: bool = True


class ResolveConflictRequest(TaskRequest):
    choice: ConflictChoice


class SyncRequest(BaseModel):
    direction: SyncDirection = SyncDirection.BOTH


class DedupeRequest(BaseModel):
    apply: bool = False


class StatusLabelRequest(BaseModel):
    issue_number: int = Field(gt=0)
    status: TaskStatus


class MetadataLabelRequest(BaseModel):
    issue_number: int = Field(gt=0)
    priority: Priority | None = None
    effort: Effort | None = None
    value: Value | None = None


class SessionRegistrationRequest(BaseModel):
    execution_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)


class SessionStopPayload(BaseModel):
    session_id: str | None = None
    cwd: str | None = None


class SubagentStopPayload(BaseModel):
    session_id: str | None = None
    subagent_type: str | None = None
    prompt: str | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    total_tokens: int | None = Field(default=None, ge=0)
    total_tool_uses: int | None = Field(default=None, ge=0)


def status_for(exc: BaseException) -> int:
    """HTTP-style status code for an exception raised by an action."""

    if isinstance(exc, OperationTimeoutError):
        return 504
    if isinstance(exc, ReviewParseError) or isinstance(exc.__cause__, ReviewParseError):
        return 502
    if isinstance(exc, (GitHubAuthError, GitHubConfigError)):
        return 401
    if isinstance(exc, (TaskNotFoundError, ConflictNotFoundError, RecordNotFoundError, GitHubNotFoundError)):
        return 404
    if isinstance(exc, (InvalidTransitionError, StaleConflictError, SyncInProgressError)):
        return 409
    if isinstance(exc, (CircuitOpenError, ReviewerNotFoundError, ChromaUnavailableError)):
        return 503
    if isinstance(exc, (ValidationError, HookValidationError, ValueError)):
        return 400
    return 500


def to_payload(result: Any) -> Any:
    if result is None:
        return None
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if isinstance(result, (list, tuple)):
        return [to_payload(item) for item in result]
    if isinstance(result, dict):
        return {key: to_payload(value) for key, value in result.items()}
    return result


def success_envelope(action: str, result: Any) -> dict[str, Any]:
    payload = to_payload(result)
    warnings = payload.get("warnings", []) if isinstance(payload, dict) else []
    return {"success": True, "action": action, "result": payload, "warnings": list(warnings or [])}


def error_envelope(action: str, exc: BaseException) -> dict[str, Any]:
    error: dict[str, Any] = {"type": exc.__class__.__name__, "message": str(exc)}
    step = getattr(exc, "step", None)
    if step:
        error["step"] = step
    if isinstance(exc, CircuitOpenError):
        error["retry_after_ms"] = exc.retry_after_ms
    if isinstance(exc, OperationTimeoutError):
        error["timeout_ms"] = exc.timeout_ms
    if isinstance(exc, ValidationError):
        error["details"] = exc.errors(include_url=False, include_context=False, include_input=False)
    return {"success": False, "action": action, "error": error, "warnings": []}


async def invoke(action: str, operation: Callable[[], Awaitable[Any]]) -> tuple[int, dict[str, Any]]:
    """Run ``operation`` and wrap its result (or failure) in the response envelope."""

    try:
        result = await operation()
    except Exception as exc:
        status = status_for(exc)
        if status >= 500 and status not in (503, 504):
            logger.exception("Action failed", extra={"action": action})
        else:
            logger.warning("Action rejected", extra={"action": action, "status": status, "error": str(exc)})
        return status, error_envelope(action, exc)
    return 200, success_envelope(action, result)


__all__ = [
    "CleanupRequest",
    "DedupeRequest",
    "MetadataLabelRequest",
    "MoveRequest",
    "ResolveConflictRequest",
    "SessionRegistrationRequest",
    "SessionStopPayload",
    "ShipRequest",
    "StatusLabelRequest",
    "SubagentStopPayload",
    "SyncRequest",
    "TaskRequest",
    "WorkspacePinRequest",
    "error_envelope",
    "invoke",
    "status_for",
    "success_envelope",
    "to_payload",
]
