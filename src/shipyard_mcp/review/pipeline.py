"""Review pipeline: commit, push, diff, ask the reviewer, hand passing work to a PR."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from ..git import GitClient, GitCommandError
from ..github import PRLifecycleManager, PullRequestError, PullRequestInfo
from ..resilience import (
    CircuitBreaker,
    CircuitOpenError,
    OperationTimeoutError,
    with_timeout,
)
from .models import ReviewResult, apply_gating
from .parsing import ReviewParseError, parse_review
from .prompts import build_review_prompt, truncate_diff
from .reviewer import InferenceClient

logger = logging.getLogger(__name__)

NO_CHANGES_SUMMARY = "No changes detected compared to the base branch."


class ReviewError(RuntimeError):
    """Raised when a pipeline step fails fatally; ``step`` names it."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step


@dataclass(slots=True)
class ReviewOutcome:
    result: ReviewResult
    branch: str
    base_branch: str
    committed: bool = False
    pushed: bool = False
    diff_truncated: bool = False
    skipped_ai: bool = False
    pull_request: PullRequestInfo | None = None
    warnings: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def passed(self) -> bool:
        return self.result.passed

    def to_dict(self) -> dict[str, Any]:
        return {
            "result": self.result.model_dump(mode="json"),
            "branch": self.branch,
            "base_branch": self.base_branch,
            "committed": self.committed,
            "pushed": self.pushed,
            "diff_truncated": self.diff_truncated,
            "skipped_ai": self.skipped_ai,
            "pull_request": self.pull_request.to_dict() if self.pull_request else None,
            "warnings": list(self.warnings),
            "duration_ms": self.duration_ms,
        }


class ReviewPipeline:
    """Run the review steps for one task workspace."""

    def __init__(
        self,
        git: GitClient,
        reviewer: InferenceClient,
        breaker: CircuitBreaker,
        *,
        pr_manager: PRLifecycleManager | None = None,
        diff_max_chars: int = 60_000,
        review_timeout_ms: int = 300_000,
    ) -> None:
        self._git = git
        self._reviewer = reviewer
        self._breaker = breaker
        self._pr_manager = pr_manager
        self._diff_max_chars = diff_max_chars
        self._review_timeout_ms = review_timeout_ms

    async def review(
        self,
        *,
        title: str,
        description: str,
        workdir: Path,
        repo_root: Path,
        branch: str | None = None,
        base_branch: str | None = None,
        acceptance_criteria: Iterable[str] = (),
        issue_number: int | None = None,
        task_id: str | None = None,
    ) -> ReviewOutcome:
        started = time.monotonic()
        try:
            branch = branch or await self._git.current_branch(workdir)
            base = base_branch or await self._git.default_branch(repo_root)
        except (GitCommandError, OperationTimeoutError) as exc:
            raise ReviewError("resolve-branch", str(exc)) from exc
        warnings: list[str] = []

        committed = await self._commit_pending(workdir, title, warnings)
        pushed = await self._push(workdir, branch, warnings)
        diff = await self._diff(workdir, base, branch)

        if not diff.strip():
            outcome = ReviewOutcome(
                result=ReviewResult(passed=True, summary=NO_CHANGES_SUMMARY),
                branch=branch,
                base_branch=base,
                committed=committed,
                pushed=pushed,
                skipped_ai=True,
                warnings=warnings,
            )
            outcome.duration_ms = int((time.monotonic() - started) * 1000)
            return outcome

        bounded, truncated = truncate_diff(diff, self._diff_max_chars)
        prompt = build_review_prompt(
            title=title,
            description=description,
            diff=bounded,
            acceptance_criteria=acceptance_criteria,
        )
        result = await self._ask(prompt, workdir)

        outcome = ReviewOutcome(
            result=result,
            branch=branch,
            base_branch=base,
            committed=committed,
            pushed=pushed,
            diff_truncated=truncated,
            warnings=warnings,
        )
        if result.passed and self._pr_manager is not None:
            outcome.pull_request = await self._open_pr(
                branch=branch,
                base=base,
                title=title,
                description=description,
                issue_number=issue_number,
                workdir=workdir,
                warnings=warnings,
            )

        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        scope = result.scope
        logger.info(
            "Review finished",
            extra={
                "task_id": task_id,
                "branch": branch,
                "passed": result.passed,
                "issues": len(result.issues),
                "blocking_issues": len(result.blocking_issues),
                "diff_chars": len(diff),
                "diff_truncated": truncated,
                "duration_ms": outcome.duration_ms,
            },
        )
        if scope is not None and scope.needs_rescope:
            logger.warning(
                "Reviewer suggests rescoping the task",
                extra={"task_id": task_id, "reason": scope.reason},
            )
        return outcome

    async def publish_branch(self, *, workdir: Path, branch: str, title: str, warnings: list[str]) -> bool:
        """Commit outstanding work in ``workdir`` and push ``branch``; True when the push landed."""

        await self._commit_pending(workdir, title, warnings)
        return await self._push(workdir, branch, warnings)

    async def _commit_pending(self, workdir: Path, title: str, warnings: list[str]) -> bool:
        try:
            if not await self._git.has_uncommitted_changes(workdir):
                return False
            await self._git.add_all(workdir)
            await self._git.commit(workdir, f"WIP: {title}")
        except (GitCommandError, OperationTimeoutError) as exc:
            message = f"Auto-commit failed: {exc}"
            logger.warning(message, extra={"workdir": str(workdir)})
            warnings.append(message)
            return False
        return True

    async def _push(self, workdir: Path, branch: str, warnings: list[str]) -> bool:
        try:
            await self._git.push(workdir, branch)
            return True
        except (GitCommandError, OperationTimeoutError) as exc:
            logger.info("Push with upstream failed, retrying plain push", extra={"branch": branch, "error": str(exc)})
        except CircuitOpenError as exc:
            warnings.append(f"Push skipped: {exc}")
            return False
        try:
            await self._git.push(workdir, branch, set_upstream=False)
            return True
        except (GitCommandError, OperationTimeoutError, CircuitOpenError) as exc:
            message = f"Push failed: {exc}"
            logger.warning(message, extra={"branch": branch})
            warnings.append(message)
            return False

    async def _diff(self, workdir: Path, base: str, branch: str) -> str:
        try:
            return await self._git.diff(workdir, base, branch)
        except GitCommandError as exc:
            logger.info("Three-dot diff failed, falling back to two-dot", extra={"error": str(exc)})
        except OperationTimeoutError as exc:
            raise ReviewError("diff", str(exc)) from exc
        try:
            return await self._git.diff(workdir, base, branch, three_dot=False)
        except (GitCommandError, OperationTimeoutError) as exc:
            raise ReviewError("diff", str(exc)) from exc

    async def _ask(self, prompt: str, workdir: Path) -> ReviewResult:
        async def call() -> str:
            return await with_timeout(
                self._reviewer.complete(prompt, cwd=workdir, timeout_ms=self._review_timeout_ms),
                self._review_timeout_ms,
                "AI review",
            )

        raw = await self._breaker.execute(call)
        try:
            verdict = parse_review(raw)
        except ReviewParseError as exc:
            raise ReviewError("parse", str(exc)) from exc
        return apply_gating(verdict)

    async def _open_pr(
        self,
        *,
        branch: str,
        base: str,
        title: str,
        description: str,
        issue_number: int | None,
        workdir: Path,
        warnings: list[str],
    ) -> PullRequestInfo | None:
        assert self._pr_manager is not None
        try:
            return await self._pr_manager.ensure_pr(
                branch=branch,
                base_branch=base,
                title=title,
                body=description,
                issue_number=issue_number,
                workdir=workdir,
            )
        except (PullRequestError, OperationTimeoutError, CircuitOpenError) as exc:
            message = f"PR creation failed: {exc}"
            logger.warning(message, extra={"branch": branch})
            warnings.append(message)
            return None


__all__ = ["NO_CHANGES_SUMMARY", "ReviewError", "ReviewOutcome", "ReviewPipeline"]
