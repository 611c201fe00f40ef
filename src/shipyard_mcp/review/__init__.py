"""Automated code review of task branches."""

from .models import (
    BLOCKING_SEVERITIES,
    Completeness,
    ReviewIssue,
    ReviewResult,
    ScopeAnalysis,
    Severity,
    apply_gating,
)
from .parsing import ReviewParseError, extract_json_object, parse_review
from .pipeline import NO_CHANGES_SUMMARY, ReviewError, ReviewOutcome, ReviewPipeline
from .prompts import build_review_prompt, build_task_prompt, truncate_diff
from .reviewer import (
    ClaudeReviewer,
    FakeReviewer,
    InferenceClient,
    ReviewerError,
    ReviewerNotFoundError,
    UnavailableReviewer,
)

__all__ = [
    "BLOCKING_SEVERITIES",
    "NO_CHANGES_SUMMARY",
    "ClaudeReviewer",
    "Completeness",
    "FakeReviewer",
    "InferenceClient",
    "ReviewError",
    "ReviewIssue",
    "ReviewOutcome",
    "ReviewParseError",
    "ReviewPipeline",
    "ReviewResult",
    "ReviewerError",
    "ReviewerNotFoundError",
    "ScopeAnalysis",
    "Severity",
    "UnavailableReviewer",
    "apply_gating",
    "build_review_prompt",
    "build_task_prompt",
    "extract_json_object",
    "parse_review",
    "truncate_diff",
]
