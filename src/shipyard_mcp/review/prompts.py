"""Prompt builders for the coding agent and the reviewer."""

from __future__ import annotations

from typing import Iterable

from ..storage import Task

TRUNCATION_NOTICE = "\n\n[diff truncated: {omitted} characters omitted]"

_REVIEW_SHAPE = """{
  "passed": true,
  "summary": "one or two sentences",
  "issues": [
    {"severity": "critical|major|minor|suggestion", "file": "path", "line": 42, "message": "what is wrong"}
  ],
  "scope": {
    "aligned": true,
    "needsRescope": false,
    "completeness": "complete|partial|minimal",
    "missingRequirements": [],
    "scopeCreep": [],
    "reason": "short explanation"
  }
}"""


def truncate_diff(diff: str, max_chars: int) -> tuple[str, bool]:
    if len(diff) <= max_chars:
        return diff, False
    omitted = len(diff) - max_chars
    return diff[:max_chars] + TRUNCATION_NOTICE.format(omitted=omitted), True


def _bullets(items: Iterable[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def build_review_prompt(
    *,
    title: str,
    description: str,
    diff: str,
    acceptance_criteria: Iterable[str] = (),
) -> str:
    criteria = list(acceptance_criteria)
    sections = [
        "You are reviewing the changes made for a single backlog task.",
        f"## Task\nTitle: {title}\nDescription: {description.strip() or 'No description provided.'}",
    ]
    if criteria:
        sections.append("## Acceptance Criteria\n" + _bullets(criteria))
    sections.append(f"## Diff\n```diff\n{diff}\n```")
    sections.append(
        "## Severity guidelines\n"
        "- critical: security holes, data loss, crashes, broken builds\n"
        "- major: incorrect behaviour, missing error handling on a main path\n"
        "- minor: style, naming, small inefficiencies\n"
        "- suggestion: optional improvements\n"
        "Only set passed to false for critical or major issues."
    )
    sections.append(
        "## Scope\n"
        "Judge whether the change still matches the task. needsRescope defaults to false. "
        "Set it to true only when the implementation fundamentally diverges from what the task asks for. "
        "Partial completion or extra work beyond the task is never a reason to rescope on its own; "
        "report those through completeness, missingRequirements and scopeCreep."
    )
    sections.append("Respond with a single JSON object of this shape and nothing else:\n" + _REVIEW_SHAPE)
    return "\n\n".join(sections)


def build_task_prompt(task: Task, *, branch: str) -> str:
    """Instructions handed to the coding agent when a task is tackled."""

    sections = [
        f"# Task: {task.title}",
        f"Priority: {task.priority.value}"
        + (f" | Effort: {task.effort.value}" if task.effort else "")
        + (f" | Value: {task.value.value}" if task.value else ""),
        task.description.strip() or "No description provided.",
    ]
    if task.acceptance_criteria:
        sections.append("## Acceptance Criteria\n" + _bullets(task.acceptance_criteria))
    if task.notes:
        sections.append(f"## Notes\n{task.notes}")
    if task.review_feedback:
        sections.append(f"## Feedback from the previous review\n{task.review_feedback}")
    sections.append(
        f"You are working in an isolated worktree on branch `{branch}`. "
        "Commit your work on this branch when you are done."
    )
    return "\n\n".join(sections)


__all__ = ["build_review_prompt", "build_task_prompt", "truncate_diff"]
