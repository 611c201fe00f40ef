"""Close duplicate tracker issues that point at the same task."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable

from ..github import GitHubClient, GitHubError, GitHubNotFoundError
from ..github.labels import SYNC_LABEL
from ..resilience import CircuitOpenError, OperationTimeoutError
from .issues import extract_task_id

logger = logging.getLogger(__name__)

_TRACKER_ERRORS = (GitHubError, OperationTimeoutError, CircuitOpenError)

DUPLICATE_COMMENT = (
    "Closed as duplicate by the Shipyard sync maintenance pass. "
    "This issue is a duplicate of #{keep} for task `{task_id}`."
)


@dataclass(slots=True)
class DuplicateGroup:
    task_id: str
    keep: int
    duplicates: list[int]
    errors: dict[int, str] = field(default_factory=dict)


@dataclass(slots=True)
class DedupeReport:
    dry_run: bool
    groups: list[DuplicateGroup] = field(default_factory=list)
    closed: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "groups": [
                {**asdict(group), "errors": {str(number): message for number, message in group.errors.items()}}
                for group in self.groups
            ],
            "closed": list(self.closed),
            "failed": {str(number): message for number, message in self.failed.items()},
        }


def find_duplicate_groups(issues: list[dict[str, Any]]) -> list[DuplicateGroup]:
    """Group issues by embedded task id; the oldest issue of each group is kept."""

    grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for issue in issues:
        task_id = extract_task_id(issue.get("body"))
        if task_id:
            grouped[task_id].append(issue)

    groups: list[DuplicateGroup] = []
    for task_id, members in grouped.items():
        if len(members) < 2:
            continue
        members.sort(key=lambda item: (item.get("created_at") or "", int(item["number"])))
        groups.append(
            DuplicateGroup(
                task_id=task_id,
                keep=int(members[0]["number"]),
                duplicates=[int(item["number"]) for item in members[1:]],
            )
        )
    return groups


async def dedupe_issues(
    github: GitHubClient,
    *,
    dry_run: bool = True,
    api_delay_ms: int = 100,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> DedupeReport:
    issues = await github.list_issues(labels=SYNC_LABEL, state="all")
    report = DedupeReport(dry_run=dry_run, groups=find_duplicate_groups(issues))
    if dry_run:
        return report

    first = True
    for group in report.groups:
        for number in group.duplicates:
            if not first and api_delay_ms > 0:
                await sleep(api_delay_ms / 1000)
            first = False
            try:
                await github.add_comment(number, DUPLICATE_COMMENT.format(keep=group.keep, task_id=group.task_id))
                await github.update_issue(number, state="closed", state_reason="not_planned")
            except _TRACKER_ERRORS as exc:
                report.failed[number] = str(exc)
                group.errors[number] = str(exc)
                logger.warning("Failed to close duplicate issue", extra={"issue_number": number, "error": str(exc)})
                continue
            try:
                await github.remove_issue_label(number, SYNC_LABEL)
            except GitHubNotFoundError:
                pass
            except _TRACKER_ERRORS as exc:
                logger.warning(
                    "Closed duplicate but could not strip sync label",
                    extra={"issue_number": number, "error": str(exc)},
                )
            report.closed.append(number)
    logger.info(
        "Duplicate issue pass finished",
        extra={"groups": len(report.groups), "closed": len(report.closed), "failed": len(report.failed)},
    )
    return report


__all__ = ["DUPLICATE_COMMENT", "DedupeReport", "DuplicateGroup", "dedupe_issues", "find_duplicate_groups"]
