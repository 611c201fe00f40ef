"""Label conventions shared by the PR manager and the sync engine."""

from __future__ import annotations

from typing import Iterable

from ..storage import Effort, Priority, Task, TaskStatus, Value

SYNC_LABEL = "shipyard"

STATUS_PREFIX = "status:"
PRIORITY_PREFIX = "priority:"
EFFORT_PREFIX = "effort:"
VALUE_PREFIX = "value:"
CATEGORY_PREFIX = "category:"

STATUS_TO_LABEL: dict[TaskStatus, str] = {
    TaskStatus.BACKLOG: "status: backlog",
    TaskStatus.UP_NEXT: "status: up-next",
    TaskStatus.IN_PROGRESS: "status: in-progress",
    TaskStatus.REVIEW: "status: review",
    TaskStatus.READY_TO_SHIP: "status: ready-to-ship",
}

# name -> (color, description)
LABEL_SCHEMA: dict[str, tuple[str, str]] = {
    SYNC_LABEL: ("6f42c1", "Synced with the Shipyard backlog"),
    "priority:critical": ("b60205", "Critical priority"),
    "priority:high": ("d93f0b", "High priority"),
    "priority:medium": ("fbca04", "Medium priority"),
    "priority:low": ("0e8a16", "Low priority"),
    "priority:someday": ("c5def5", "Someday"),
    "status: backlog": ("ededed", "In the backlog"),
    "status: up-next": ("bfd4f2", "Queued to start next"),
    "status: in-progress": ("1d76db", "Work in progress"),
    "status: review": ("5319e7", "Awaiting review"),
    "status: ready-to-ship": ("0e8a16", "Reviewed and ready to merge"),
    "effort:trivial": ("f9f9f9", "Trivial effort"),
    "effort:low": ("c2e0c6", "Low effort"),
    "effort:medium": ("fef2c0", "Medium effort"),
    "effort:high": ("f9d0c4", "High effort"),
    "effort:very_high": ("e99695", "Very high effort"),
    "value:low": ("e4e669", "Low value"),
    "value:medium": ("d4c5f9", "Medium value"),
    "value:high": ("0052cc", "High value"),
}


def _normalize(label: str) -> str:
    return label.replace(" ", "").lower()


def has_prefix(label: str, prefix: str) -> bool:
    """Prefix match tolerant of ``status: x`` versus ``status:x`` spellings."""

    return _normalize(label).startswith(_normalize(prefix))


def label_value(label: str) -> str:
    return label.split(":", 1)[1].strip() if ":" in label else ""


def status_label(status: TaskStatus | str) -> str:
    return STATUS_TO_LABEL[TaskStatus(status)]


def status_from_labels(labels: Iterable[str]) -> TaskStatus | None:
    wanted = {_normalize(label): status for status, label in STATUS_TO_LABEL.items()}
    for label in labels:
        status = wanted.get(_normalize(label))
        if status is not None:
            return status
    return None


def _enum_from_labels(labels: Iterable[str], prefix: str, enum_type):
    for label in labels:
        if has_prefix(label, prefix):
            try:
                return enum_type(label_value(label).replace("-", "_"))
            except ValueError:
                continue
    return None


def priority_from_labels(labels: Iterable[str]) -> Priority | None:
    return _enum_from_labels(labels, PRIORITY_PREFIX, Priority)


def effort_from_labels(labels: Iterable[str]) -> Effort | None:
    return _enum_from_labels(labels, EFFORT_PREFIX, Effort)


def value_from_labels(labels: Iterable[str]) -> Value | None:
    return _enum_from_labels(labels, VALUE_PREFIX, Value)


def category_from_labels(labels: Iterable[str]) -> str | None:
    for label in labels:
        if has_prefix(label, CATEGORY_PREFIX):
            return label_value(label) or None
    return None


def metadata_labels(
    *,
    priority: Priority | str | None = None,
    effort: Effort | str | None = None,
    value: Value | str | None = None,
) -> dict[str, str]:
    """Map each metadata prefix being changed to its new label."""

    labels: dict[str, str] = {}
    if priority is not None:
        labels[PRIORITY_PREFIX] = f"{PRIORITY_PREFIX}{Priority(priority).value}"
    if effort is not None:
        labels[EFFORT_PREFIX] = f"{EFFORT_PREFIX}{Effort(effort).value}"
    if value is not None:
        labels[VALUE_PREFIX] = f"{VALUE_PREFIX}{Value(value).value}"
    return labels


def task_labels(task: Task) -> list[str]:
    """Every label the sync engine manages for ``task``."""

    labels = [SYNC_LABEL, status_label(task.status)]
    labels.extend(
        metadata_labels(priority=task.priority, effort=task.effort, value=task.value).values()
    )
    if task.category:
        labels.append(f"{CATEGORY_PREFIX}{task.category}")
    return labels


MANAGED_PREFIXES = (STATUS_PREFIX, PRIORITY_PREFIX, EFFORT_PREFIX, VALUE_PREFIX, CATEGORY_PREFIX)


def merge_labels(current: Iterable[str], replacements: dict[str, str] | Iterable[str], prefixes: Iterable[str]) -> list[str]:
    """Drop labels under ``prefixes`` from ``current`` and append ``replacements``."""

    prefixes = tuple(prefixes)
    kept = [label for label in current if not any(has_prefix(label, prefix) for prefix in prefixes)]
    additions = list(replacements.values()) if isinstance(replacements, dict) else list(replacements)
    merged: list[str] = []
    for label in [*kept, *additions]:
        if label not in merged:
            merged.append(label)
    return merged


__all__ = [
    "CATEGORY_PREFIX",
    "EFFORT_PREFIX",
    "LABEL_SCHEMA",
    "MANAGED_PREFIXES",
    "PRIORITY_PREFIX",
    "STATUS_PREFIX",
    "STATUS_TO_LABEL",
    "SYNC_LABEL",
    "VALUE_PREFIX",
    "category_from_labels",
    "effort_from_labels",
    "has_prefix",
    "merge_labels",
    "metadata_labels",
    "priority_from_labels",
    "status_from_labels",
    "status_label",
    "task_labels",
    "value_from_labels",
]
