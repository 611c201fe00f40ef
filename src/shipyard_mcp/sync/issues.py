"""Conversion between local tasks and tracker issues."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from ..github.labels import (
    MANAGED_PREFIXES,
    category_from_labels,
    effort_from_labels,
    merge_labels,
    priority_from_labels,
    status_from_labels,
    task_labels,
    value_from_labels,
)
from ..storage import Priority, Task, TaskStatus

MARKER_TEMPLATE = "<!-- shipyard-task-id:{task_id} -->"
_MARKER_RE = re.compile(r"<!--\s*shipyard-task-id:\s*([A-Za-z0-9_.-]+)\s*-->")
_FALLBACK_RE = re.compile(r"\*{0,2}Task ID\*{0,2}:\s*`?([A-Za-z0-9_.-]+)`?")
_SECTION_RE = re.compile(r"^## (.+?)\s*$", re.MULTILINE)
_CHECKBOX_RE = re.compile(r"^\s*[-*]\s*(?:\[[ xX]\]\s*)?(.+?)\s*$")
FOOTER_SEPARATOR = "\n---\n"


def task_marker(task_id: str) -> str:
    return MARKER_TEMPLATE.format(task_id=task_id)


def extract_task_id(body: str | None) -> str | None:
    """Task id from the hidden marker, falling back to the ``Task ID:`` line."""

    if not body:
        return None
    match = _MARKER_RE.search(body)
    if match:
        return match.group(1)
    match = _FALLBACK_RE.search(body)
    return match.group(1) if match else None


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def issue_labels(issue: dict[str, Any]) -> list[str]:
    return [label["name"] if isinstance(label, dict) else str(label) for label in issue.get("labels", [])]


def task_to_issue_body(task: Task) -> str:
    parts = [task_marker(task.id), "", task.description.strip()]
    if task.acceptance_criteria:
        parts.extend(["", "## Acceptance Criteria"])
        parts.extend(f"- [ ] {item}" for item in task.acceptance_criteria)
    if task.notes:
        parts.extend(["", "## Notes", task.notes.strip()])
    footer = [f"*Priority: {task.priority.value}*"]
    if task.effort is not None:
        footer.append(f"*Effort: {task.effort.value}*")
    if task.value is not None:
        footer.append(f"*Value: {task.value.value}*")
    parts.extend(["", "---", " | ".join(footer), f"Task ID: `{task.id}`"])
    return "\n".join(parts).strip() + "\n"


def _parse_body(body: str) -> tuple[str, list[str], str | None]:
    text = _MARKER_RE.sub("", body or "").replace("\r\n", "\n")
    if FOOTER_SEPARATOR in text:
        text = text.rsplit(FOOTER_SEPARATOR, 1)[0]
    sections = _SECTION_RE.split(text)
    description = sections[0].strip()
    criteria: list[str] = []
    notes: str | None = None
    for heading, content in zip(sections[1::2], sections[2::2]):
        name = heading.strip().lower()
        if name == "acceptance criteria":
            for line in content.splitlines():
                match = _CHECKBOX_RE.match(line)
                if match and line.strip():
                    criteria.append(match.group(1))
        elif name == "notes":
            notes = content.strip() or None
        else:
            description = f"{description}\n\n## {heading}\n{content.strip()}".strip()
    return description, criteria, notes


def issue_to_task(issue: dict[str, Any], *, existing: Task | None = None) -> Task:
    """Build (or refresh) a task from an issue, keeping local-only fields of ``existing``."""

    labels = issue_labels(issue)
    description, criteria, notes = _parse_body(issue.get("body") or "")
    if issue.get("state") == "closed":
        status = TaskStatus.READY_TO_SHIP
    else:
        status = status_from_labels(labels) or (existing.status if existing else TaskStatus.BACKLOG)

    fields: dict[str, Any] = {
        "title": issue.get("title") or (existing.title if existing else f"Issue #{issue['number']}"),
        "description": description,
        "status": status,
        "priority": priority_from_labels(labels) or (existing.priority if existing else Priority.MEDIUM),
        "effort": effort_from_labels(labels) or (existing.effort if existing else None),
        "value": value_from_labels(labels) or (existing.value if existing else None),
        "category": category_from_labels(labels) or (existing.category if existing else None),
        "acceptance_criteria": criteria,
        "notes": notes,
        "issue_number": int(issue["number"]),
        "issue_url": issue.get("html_url"),
    }
    if existing is not None:
        return existing.model_copy(update=fields, deep=True)
    created_at = parse_timestamp(issue.get("created_at")) or datetime.now(timezone.utc)
    task_id = extract_task_id(issue.get("body")) or f"gh-{issue['number']}"
    return Task(id=task_id, created_at=created_at, updated_at=created_at, **fields)


def issue_state_for(task: Task) -> str:
    return "closed" if task.status is TaskStatus.READY_TO_SHIP else "open"


def issue_patch(task: Task, issue: dict[str, Any] | None = None) -> dict[str, Any]:
    """The complete PATCH payload that makes ``issue`` reflect ``task``."""

    current = issue_labels(issue) if issue else []
    return {
        "title": task.title,
        "body": task_to_issue_body(task),
        "state": issue_state_for(task),
        "labels": merge_labels(current, task_labels(task), MANAGED_PREFIXES),
    }


def patch_differs(patch: dict[str, Any], issue: dict[str, Any]) -> bool:
    return (
        patch["title"] != issue.get("title")
        or patch["body"].strip() != (issue.get("body") or "").strip()
        or patch["state"] != issue.get("state")
        or set(patch["labels"]) != set(issue_labels(issue))
    )


__all__ = [
    "MARKER_TEMPLATE",
    "extract_task_id",
    "issue_labels",
    "issue_patch",
    "issue_state_for",
    "issue_to_task",
    "parse_timestamp",
    "patch_differs",
    "task_marker",
    "task_to_issue_body",
]
