from __future__ import annotations

from conftest import make_task
from shipyard_mcp.github.labels import merge_labels, status_from_labels, task_labels
from shipyard_mcp.storage import Effort, Priority, TaskStatus, Value
from shipyard_mcp.sync import extract_task_id, task_marker
from shipyard_mcp.sync.issues import issue_patch, issue_to_task, parse_timestamp, patch_differs, task_to_issue_body


def test_issue_body_round_trips_task_fields() -> None:
    task = make_task(
        acceptance_criteria=["SSO login works", "Errors are shown"],
        notes="Check the staging IdP.",
        priority=Priority.HIGH,
        effort=Effort.LOW,
    )
    body = task_to_issue_body(task)

    assert body.startswith(task_marker(task.id))
    assert "- [ ] SSO login works" in body
    assert "*Priority: high* | *Effort: low*" in body

    issue = {"number": 4, "title": task.title, "body": body, "state": "open", "labels": task_labels(task)}
    restored = issue_to_task(issue)

    assert restored.id == task.id
    assert restored.description == task.description
    assert restored.acceptance_criteria == task.acceptance_criteria
    assert restored.notes == "Check the staging IdP."
    assert restored.priority is Priority.HIGH
    assert restored.effort is Effort.LOW
    assert restored.issue_number == 4


def test_extract_task_id_prefers_marker_then_fallback() -> None:
    assert extract_task_id(f"{task_marker('abc-1')}\nTask ID: `other`") == "abc-1"
    assert extract_task_id("Some text\n**Task ID**: `xyz_9`") == "xyz_9"
    assert extract_task_id("no id here") is None
    assert extract_task_id(None) is None


def test_issue_without_marker_gets_github_id() -> None:
    task = issue_to_task(
        {
            "number": 17,
            "title": "Imported",
            "body": "Plain description",
            "state": "open",
            "labels": [{"name": "status: up-next"}, {"name": "value:high"}, {"name": "category:auth"}],
            "created_at": "2025-02-01T10:00:00Z",
        }
    )

    assert task.id == "gh-17"
    assert task.status is TaskStatus.UP_NEXT
    assert task.value is Value.HIGH
    assert task.category == "auth"
    assert task.created_at == parse_timestamp("2025-02-01T10:00:00Z")


def test_closed_issue_maps_to_ready_to_ship() -> None:
    task = issue_to_task({"number": 2, "title": "Done", "body": "", "state": "closed", "labels": []})
    assert task.status is TaskStatus.READY_TO_SHIP


def test_refresh_keeps_local_only_fields() -> None:
    existing = make_task(branch="task/abcdef12-fix-login-bug", worktree_path="/w", status=TaskStatus.IN_PROGRESS)
    issue = {"number": 9, "title": "Renamed", "body": task_to_issue_body(existing), "state": "open", "labels": []}

    refreshed = issue_to_task(issue, existing=existing)

    assert refreshed.title == "Renamed"
    assert refreshed.branch == "task/abcdef12-fix-login-bug"
    assert refreshed.worktree_path == "/w"
    assert refreshed.status is TaskStatus.IN_PROGRESS


def test_issue_patch_keeps_foreign_labels() -> None:
    task = make_task(status=TaskStatus.REVIEW)
    issue = {
        "title": task.title,
        "body": task_to_issue_body(task),
        "state": "open",
        "labels": [{"name": "bug"}, {"name": "status: backlog"}, {"name": "priority:low"}],
    }

    patch = issue_patch(task, issue)

    assert patch["labels"] == ["bug", "shipyard", "status: review", "priority:medium"]
    assert patch_differs(patch, issue)
    issue["labels"] = [{"name": name} for name in patch["labels"]]
    assert not patch_differs(patch, issue)


def test_label_helpers_tolerate_spacing() -> None:
    assert status_from_labels(["status:in-progress"]) is TaskStatus.IN_PROGRESS
    assert merge_labels(["status:review", "x"], ["status: backlog"], ["status:"]) == ["x", "status: backlog"]
