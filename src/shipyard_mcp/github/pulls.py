"""Pull request lifecycle: idempotent creation, gated merge, atomic label writes."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from ..git import DEFAULT_BRANCH_CANDIDATES, GitClient, GitCommandError
from ..resilience import CircuitOpenError, OperationTimeoutError
from ..storage import Effort, Priority, TaskStatus, Value
from .client import GitHubClient, GitHubError
from .labels import STATUS_PREFIX, merge_labels, metadata_labels, status_label

logger = logging.getLogger(__name__)


class PullRequestError(RuntimeError):
    """Raised when a PR cannot be found or created; ``step`` names the failing action."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step


@dataclass(slots=True)
class PullRequestInfo:
    number: int
    url: str
    state: str
    created: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class MergeOutcome:
    success: bool
    pr_number: int | None = None
    merge_method: str = "squash"
    sha: str | None = None
    branch_deleted: bool = False
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class LabelUpdate:
    issue_number: int
    previous: list[str]
    labels: list[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _info(pull: dict[str, Any], *, created: bool) -> PullRequestInfo:
    return PullRequestInfo(
        number=int(pull["number"]),
        url=pull.get("html_url", ""),
        state=pull.get("state", "open"),
        created=created,
    )


class PRLifecycleManager:
    """Open, merge and label pull requests and their linked issues."""

    def __init__(self, github: GitHubClient, git: GitClient | None = None) -> None:
        self._github = github
        self._git = git

    async def ensure_pr(
        self,
        *,
        branch: str,
        base_branch: str,
        title: str,
        body: str = "",
        issue_number: int | None = None,
        workdir: Path | str | None = None,
    ) -> PullRequestInfo:
        """Return the open PR for ``branch``, creating it (and pushing) when missing."""

        try:
            existing = await self._github.find_open_pull(branch)
        except GitHubError as exc:
            raise PullRequestError("lookup", str(exc)) from exc
        if existing is not None:
            logger.info("Reusing open pull request", extra={"branch": branch, "number": existing["number"]})
            return _info(existing, created=False)

        if workdir is not None and self._git is not None:
            await self._ensure_pushed(workdir, branch)

        description = body.strip() or f"Automated PR for task: {title}"
        if issue_number is not None and not re.search(rf"#{issue_number}\b", description):
            description = f"{description}\n\nCloses #{issue_number}"

        try:
            created = await self._github.create_pull(
                title=title, head=branch, base=base_branch, body=description
            )
        except GitHubError as exc:
            raise PullRequestError("create", str(exc)) from exc
        logger.info("Created pull request", extra={"branch": branch, "number": created["number"]})
        return _info(created, created=True)

    async def _ensure_pushed(self, workdir: Path | str, branch: str) -> None:
        assert self._git is not None
        try:
            if await self._git.remote_branch_exists(workdir, branch):
                return
            await self._git.push(workdir, branch)
        except (GitCommandError, OperationTimeoutError, CircuitOpenError) as exc:
            raise PullRequestError("push", str(exc)) from exc

    async def _protected_branches(self, repo_root: Path | str | None) -> set[str]:
        if repo_root is None or self._git is None:
            return set(DEFAULT_BRANCH_CANDIDATES)
        try:
            return {await self._git.default_branch(repo_root)}
        except (GitCommandError, OperationTimeoutError, CircuitOpenError) as exc:
            logger.warning("Default branch detection failed", extra={"error": str(exc)})
            return set(DEFAULT_BRANCH_CANDIDATES)

    async def merge_pr(self, branch_or_number: str | int, *, repo_root: Path | str | None = None) -> MergeOutcome:
        """Squash-merge an open, mergeable PR and delete its branch.

        The repository's default branch (detected from ``repo_root`` when given)
        is never merged. Refusals and API failures come back as
        ``MergeOutcome(success=False)``.
        """

        branch: str | None = None
        protected = await self._protected_branches(repo_root)
        try:
            if isinstance(branch_or_number, int) or str(branch_or_number).isdigit():
                number = int(branch_or_number)
            else:
                branch = str(branch_or_number)
                if branch in protected:
                    return MergeOutcome(success=False, error=f"Refusing to merge default branch '{branch}'")
                found = await self._github.find_open_pull(branch)
                if found is None:
                    return MergeOutcome(success=False, error=f"No open pull request for branch '{branch}'")
                number = int(found["number"])

            pull = await self._github.get_pull(number)
            head_ref = pull.get("head", {}).get("ref")
            branch = branch or head_ref
            if branch in protected:
                return MergeOutcome(success=False, pr_number=number, error=f"Refusing to merge default branch '{branch}'")
            state = pull.get("state", "unknown")
            if state != "open" or pull.get("merged"):
                return MergeOutcome(success=False, pr_number=number, error=f"PR #{number} is not open (state: {state})")
            if pull.get("mergeable") is not True:
                status = pull.get("mergeable_state", "unknown")
                return MergeOutcome(success=False, pr_number=number, error=f"PR #{number} is not mergeable (status: {status})")

            merged = await self._github.merge_pull(number, merge_method="squash")
        except (GitHubError, OperationTimeoutError, CircuitOpenError) as exc:
            logger.warning("Merge failed", extra={"target": str(branch_or_number), "error": str(exc)})
            return MergeOutcome(success=False, error=f"merge: {exc}")

        outcome = MergeOutcome(success=True, pr_number=number, sha=(merged or {}).get("sha"))
        if branch:
            try:
                await self._github.delete_branch(branch)
                outcome.branch_deleted = True
            except (GitHubError, OperationTimeoutError, CircuitOpenError) as exc:
                outcome.warnings.append(f"Branch deletion failed: {exc}")
        logger.info("Merged pull request", extra={"number": number, "branch": branch})
        return outcome

    async def update_status_label(self, issue_number: int, status: TaskStatus | str) -> LabelUpdate:
        return await self._replace_labels(issue_number, {STATUS_PREFIX: status_label(status)})

    async def update_metadata_labels(
        self,
        issue_number: int,
        *,
        priority: Priority | str | None = None,
        effort: Effort | str | None = None,
        value: Value | str | None = None,
    ) -> LabelUpdate:
        replacements = metadata_labels(priority=priority, effort=effort, value=value)
        if not replacements:
            raise ValueError("At least one of priority, effort or value is required")
        return await self._replace_labels(issue_number, replacements)

    async def _replace_labels(self, issue_number: int, replacements: dict[str, str]) -> LabelUpdate:
        # One read, one full-set write: a failed write leaves the old labels intact.
        current = await self._github.get_issue_labels(issue_number)
        updated = merge_labels(current, replacements, replacements.keys())
        written = await self._github.set_issue_labels(issue_number, updated)
        return LabelUpdate(issue_number=issue_number, previous=current, labels=written or updated)


__all__ = [
    "LabelUpdate",
    "MergeOutcome",
    "PRLifecycleManager",
    "PullRequestError",
    "PullRequestInfo",
]
