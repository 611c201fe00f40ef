"""Tracker health report: credentials, repository access and sync hygiene."""

from __future__ import annotations

import logging
from typing import Any

from ..github import GitHubAuthError, GitHubClient, GitHubError, GitHubNotFoundError
from ..github.labels import SYNC_LABEL
from ..resilience import CircuitOpenError, OperationTimeoutError
from ..storage import TaskRepository
from .dedupe import find_duplicate_groups
from .issues import extract_task_id

logger = logging.getLogger(__name__)

OPEN_ISSUE_WARNING_THRESHOLD = 100


async def tracker_health(github: GitHubClient, repository: TaskRepository | None = None) -> dict[str, Any]:
    """Check the tracker; ``healthy`` is False only when auth or repository access fails."""

    report: dict[str, Any] = {
        "healthy": False,
        "repo": github.repo,
        "authenticated": False,
        "repository_access": False,
        "user": None,
        "open_issues": None,
        "duplicate_groups": [],
        "orphaned_issues": [],
        "warnings": [],
    }
    if not github.configured:
        report["warnings"].append("GitHub token or repository is not configured")
        return report

    try:
        user = await github.get_user()
        report["authenticated"] = True
        report["user"] = user.get("login")
        await github.get_repository()
        report["repository_access"] = True
    except GitHubAuthError as exc:
        report["warnings"].append(f"Authentication failed: {exc}")
        return report
    except GitHubNotFoundError as exc:
        report["warnings"].append(f"Repository not accessible: {exc}")
        return report
    except (GitHubError, OperationTimeoutError, CircuitOpenError) as exc:
        report["warnings"].append(f"Tracker unreachable: {exc}")
        return report

    report["healthy"] = True
    try:
        issues = await github.list_issues(labels=SYNC_LABEL, state="all")
    except (GitHubError, OperationTimeoutError, CircuitOpenError) as exc:
        report["warnings"].append(f"Could not list synced issues: {exc}")
        return report

    open_issues = [issue for issue in issues if issue.get("state") == "open"]
    report["open_issues"] = len(open_issues)
    if len(open_issues) > OPEN_ISSUE_WARNING_THRESHOLD:
        report["warnings"].append(
            f"{len(open_issues)} open synced issues; consider closing or archiving finished work"
        )

    groups = find_duplicate_groups(issues)
    report["duplicate_groups"] = [
        {"task_id": group.task_id, "keep": group.keep, "duplicates": group.duplicates} for group in groups
    ]
    if groups:
        report["warnings"].append(f"{len(groups)} task(s) have duplicate issues; run dedupe")

    if repository is not None:
        known = {task.id for task in repository.list_tasks()}
        linked = {task.issue_number for task in repository.list_tasks() if task.issue_number is not None}
        for issue in open_issues:
            task_id = extract_task_id(issue.get("body"))
            if task_id and task_id not in known and int(issue["number"]) not in linked:
                report["orphaned_issues"].append({"number": int(issue["number"]), "task_id": task_id})
        if report["orphaned_issues"]:
            report["warnings"].append(
                f"{len(report['orphaned_issues'])} open issue(s) reference tasks missing locally"
            )

    logger.info(
        "Tracker health checked",
        extra={"repo": github.repo, "open_issues": report["open_issues"], "warnings": len(report["warnings"])},
    )
    return report


__all__ = ["OPEN_ISSUE_WARNING_THRESHOLD", "tracker_health"]
