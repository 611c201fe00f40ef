from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from conftest import StubClient, make_task
from shipyard_mcp.storage import (
    ChromaStore,
    ChromaUnavailableError,
    CleanupPolicy,
    ExecutionStatus,
    RecordNotFoundError,
    TaskFileError,
    TaskNotFoundError,
    TaskStatus,
    YamlTaskRepository,
)


def _workspace(store: ChromaStore, task_id: str = "task-1", path: str = "/repo/.tasks/task-task-1"):
    return store.upsert_workspace(task_source="file", task_id=task_id, path=path, branch=f"task/{task_id}")


def test_record_and_fetch_events(store: ChromaStore) -> None:
    event = store.record_event(
        session_id="session-1",
        event_type="log",
        body={"message": "started"},
        metadata={"level": "INFO", "skipped": None},
    )

    assert event.metadata["sequence"] == 1
    assert "skipped" not in event.metadata

    events = store.fetch_session_events("session-1")
    assert [item.document for item in events] == ['{"message": "started"}']


def test_search_matches_document_text(store: ChromaStore) -> None:
    store.record_event(session_id="sess", event_type="note", body="Investigate auth")
    store.record_event(session_id="sess", event_type="note", body="Fix logging")

    results = store.search_events("AUTH")

    assert [item.document for item in results] == ["Investigate auth"]


def test_snapshots_fold_to_latest_revision(store: ChromaStore, clock) -> None:
    record = _workspace(store)
    clock.advance(minutes=5)
    store.touch_workspace(record.id)
    store.pin_workspace(record.id)

    latest = store.get_workspace(record.id)
    assert latest.cleanup_policy is CleanupPolicy.PINNED
    assert latest.touched_at == clock.now
    assert len(store.list_workspaces()) == 1
    revisions = [event.metadata["revision"] for event in store.fetch_session_events(f"workspace::{record.id}")]
    assert revisions == [1, 2, 3]


def test_upsert_reuses_record_for_same_task(store: ChromaStore) -> None:
    first = _workspace(store)
    second = store.upsert_workspace(task_source="file", task_id="task-1", path="/elsewhere", branch="task/other")

    assert second.id == first.id
    assert store.get_workspace_for_task("file", "task-1").path == "/elsewhere"
    assert store.get_workspace_for_task("github", "task-1") is None


def test_delete_writes_tombstone(store: ChromaStore) -> None:
    record = _workspace(store)

    assert store.delete_workspace(record.id) is True
    assert store.get_workspace(record.id) is None
    assert store.list_workspaces() == []
    assert store.delete_workspace(record.id) is False
    with pytest.raises(RecordNotFoundError):
        store.touch_workspace(record.id)


def test_find_workspace_by_nested_path(store: ChromaStore, tmp_path: Path) -> None:
    root = tmp_path / "repo" / ".tasks" / "task-abc"
    record = _workspace(store, path=str(root))

    assert store.find_workspace_by_path(root).id == record.id
    assert store.find_workspace_by_path(root / "src" / "app").id == record.id
    assert store.find_workspace_by_path(tmp_path / "repo") is None


def test_cleanup_candidates_skip_pinned_and_recent(store: ChromaStore, clock) -> None:
    stale = _workspace(store, "stale", "/w/stale")
    pinned = _workspace(store, "pinned", "/w/pinned")
    store.pin_workspace(pinned.id)
    clock.advance(hours=30)
    _workspace(store, "fresh", "/w/fresh")

    assert [record.id for record in store.cleanup_candidates(24)] == [stale.id]

    store.unpin_workspace(pinned.id)
    assert {record.task_id for record in store.cleanup_candidates(24)} == {"stale", "pinned"}


def test_mark_pending_cleanup(store: ChromaStore) -> None:
    record = _workspace(store)

    store.mark_pending_cleanup(record.id)
    assert store.get_workspace(record.id).pending_cleanup is True

    store.mark_pending_cleanup(record.id, False)
    assert store.get_workspace(record.id).pending_cleanup is False


def test_execution_lifecycle(store: ChromaStore, clock) -> None:
    execution = store.create_execution(task_source="file", task_id="task-1", task_title="Fix", prompt="Do it")
    assert execution.status is ExecutionStatus.RUNNING
    assert execution.revision == 1
    assert store.has_running_execution("file", "task-1")

    store.update_session_id(execution.id, "sess-1")
    clock.advance(seconds=90)
    done = store.complete_execution(execution.id, status=ExecutionStatus.FAILED, exit_code=2, total_tokens=10)

    assert done.revision == 3
    assert done.duration_ms == 90_000
    assert done.is_terminal
    assert store.find_execution_by_session("sess-1").exit_code == 2
    assert not store.has_running_execution("file", "task-1")
    with pytest.raises(RecordNotFoundError):
        store.complete_execution("missing")


def test_latest_execution_is_newest_root(store: ChromaStore, clock) -> None:
    store.create_execution(task_source="file", task_id="task-1", task_title="Fix")
    clock.advance(minutes=1)
    newer = store.create_execution(task_source="file", task_id="task-1", task_title="Fix", agent_session_id="sess-2")
    clock.advance(minutes=1)
    store.create_subagent_execution(parent_session_id="sess-2", subagent_type="Plan", prompt="Plan it")

    assert store.latest_execution("file", "task-1").id == newer.id
    assert store.latest_execution("github", "task-1") is None


def test_subagent_executions_nest_under_parent(store: ChromaStore, clock) -> None:
    parent = store.create_execution(
        task_source="file", task_id="task-1", task_title="Fix", agent_session_id="sess-1"
    )
    clock.advance(seconds=30)
    child = store.create_subagent_execution(
        parent_session_id="sess-1",
        subagent_type="Explore",
        prompt="Look around",
        duration_ms=5_000,
        total_tokens=800,
        total_tool_uses=4,
    )

    assert child.parent_execution_id == parent.id
    assert child.status is ExecutionStatus.COMPLETED
    assert child.started_at == clock.now - timedelta(seconds=5)
    (root,) = store.executions_with_children("task-1")
    assert root.id == parent.id
    assert [item.total_tokens for item in root.children] == [800]
    assert root.to_dict()["children"][0]["subagent_type"] == "Explore"
    events = store.fetch_session_events(f"execution::{parent.id}")
    assert [event.event_type for event in events][-1] == "subagent_stop"


def test_subagent_without_parent_is_recorded_as_orphan(store: ChromaStore) -> None:
    child = store.create_subagent_execution(parent_session_id="unknown", subagent_type="Explore", prompt="x")

    assert child.parent_execution_id is None
    assert child.task_id == "orphan"


def test_log_chunks_are_indexed_in_order(store: ChromaStore) -> None:
    store.append_log_chunk("exec-1", "stdout", "first")
    store.append_log_chunk("exec-1", "stderr", "second")
    store.append_log_chunk("exec-2", "stdout", "other")

    chunks = store.list_log_chunks("exec-1")
    assert [(chunk.chunk_index, chunk.stream, chunk.content) for chunk in chunks] == [
        (0, "stdout", "first"),
        (1, "stderr", "second"),
    ]
    assert [chunk.content for chunk in store.list_log_chunks("exec-1", after_index=0)] == ["second"]


def test_client_factory_failure_surfaces(tmp_path: Path) -> None:
    def broken():
        raise ChromaUnavailableError("no chroma")

    store = ChromaStore(tmp_path, client_factory=broken)

    with pytest.raises(ChromaUnavailableError):
        store.ping()


def test_ping_creates_collection_once(tmp_path: Path) -> None:
    created: list[StubClient] = []

    def factory() -> StubClient:
        created.append(StubClient())
        return created[-1]

    store = ChromaStore(tmp_path, client_factory=factory)

    assert store.ping() is True
    assert store.ping() is True
    assert len(created) == 1


def test_task_repository_round_trips_yaml(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    repository = YamlTaskRepository(path)
    repository.add_task(make_task(acceptance_criteria=["SSO works"]))

    reloaded = YamlTaskRepository(path).get_task("abcdef12-3456-7890-abcd-ef1234567890")

    assert reloaded.title == "Fix login bug"
    assert reloaded.acceptance_criteria == ["SSO works"]
    assert reloaded.status is TaskStatus.BACKLOG


def test_task_repository_defers_writes_without_autoflush(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    repository = YamlTaskRepository(path, autoflush=False)
    repository.add_task(make_task())

    assert repository.dirty
    assert not path.exists()

    repository.flush()
    assert path.exists()
    assert not repository.dirty


def test_task_repository_returns_copies(tmp_path: Path) -> None:
    repository = YamlTaskRepository(tmp_path / "tasks.yaml")
    repository.add_task(make_task())

    task = repository.get_task("abcdef12-3456-7890-abcd-ef1234567890")
    task.title = "Changed without saving"

    assert repository.get_task(task.id).title == "Fix login bug"
    assert repository.find_task("missing") is None
    with pytest.raises(TaskNotFoundError):
        repository.get_task("missing")
    with pytest.raises(ValueError):
        repository.add_task(make_task())


def test_task_repository_rejects_malformed_file(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(TaskFileError):
        YamlTaskRepository(path).list_tasks()
