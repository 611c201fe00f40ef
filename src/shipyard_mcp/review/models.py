"""Structured review verdicts returned by the AI reviewer."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    SUGGESTION = "suggestion"


BLOCKING_SEVERITIES = frozenset({Severity.CRITICAL, Severity.MAJOR})


class Completeness(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    MINIMAL = "minimal"


class ReviewIssue(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    severity: Severity = Severity.MINOR
    file: str | None = None
    line: int | None = None
    message: str

    @field_validator("severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return lowered if lowered in Severity._value2member_map_ else Severity.MINOR
        return value

    @field_validator("line", mode="before")
    @classmethod
    def _coerce_line(cls, value: Any) -> Any:
        if value is None or isinstance(value, int):
            return value
        try:
            return int(str(value).split("-", 1)[0])
        except ValueError:
            return None


class ScopeAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    aligned: bool = True
    needs_rescope: bool = Field(default=False, alias="needsRescope")
    completeness: Completeness = Completeness.COMPLETE
    missing_requirements: list[str] = Field(default_factory=list, alias="missingRequirements")
    scope_creep: list[str] = Field(default_factory=list, alias="scopeCreep")
    reason: str | None = None


class ReviewResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    passed: bool
    summary: str = ""
    issues: list[ReviewIssue] = Field(default_factory=list)
    scope: ScopeAnalysis | None = None

    @property
    def blocking_issues(self) -> list[ReviewIssue]:
        return [issue for issue in self.issues if issue.severity in BLOCKING_SEVERITIES]

    def format_feedback(self) -> str:
        """Render the verdict as the text stored on a task sent back for rework."""

        lines = [f"Review failed: {self.summary}".rstrip()]
        for issue in self.issues:
            location = ""
            if issue.file:
                location = f" ({issue.file}{f':{issue.line}' if issue.line else ''})"
            lines.append(f"- [{issue.severity.value}]{location} {issue.message}")
        if self.scope is not None and self.scope.needs_rescope:
            lines.append(f"Rescope suggested: {self.scope.reason or 'implementation diverges from the task'}")
        if self.scope is not None and self.scope.missing_requirements:
            lines.append("Missing requirements:")
            lines.extend(f"- {item}" for item in self.scope.missing_requirements)
        return "\n".join(lines)


def apply_gating(result: ReviewResult) -> ReviewResult:
    """Enforce the verdict tie-break rules on a parsed reviewer response.

    Only critical or major issues can fail a review. ``needs_rescope`` survives
    only when the reviewer also reports the work as not aligned; partial
    completion or scope creep on their own never request a rescope.
    """

    passed = result.passed if result.blocking_issues else True
    scope = result.scope
    if scope is not None and scope.needs_rescope and scope.aligned:
        scope = scope.model_copy(update={"needs_rescope": False})
    return result.model_copy(update={"passed": passed, "scope": scope})


__all__ = [
    "BLOCKING_SEVERITIES",
    "Completeness",
    "ReviewIssue",
    "ReviewResult",
    "ScopeAnalysis",
    "Severity",
    "apply_gating",
]
