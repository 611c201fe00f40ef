from __future__ import annotations

import asyncio
import json

from shipyard_mcp.storage import ExecutionStatus
from shipyard_mcp.streaming import execution_snapshots, format_sse, parse_last_event_id, sse_events


def _collect(iterator) -> list:
    async def run() -> list:
        return [item async for item in iterator]

    return asyncio.run(run())


def test_snapshots_stream_until_terminal(store) -> None:
    execution = store.create_execution(task_source="file", task_id="t1", task_title="One")
    store.append_log_chunk(execution.id, "stdout", "step 1\n")
    sleeps: list[float] = []

    async def advance(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 1:
            store.append_log_chunk(execution.id, "stdout", "step 2\n")
        elif len(sleeps) == 2:
            store.complete_execution(execution.id, status=ExecutionStatus.COMPLETED, exit_code=0)

    snapshots = _collect(execution_snapshots(store, execution.id, poll_interval_ms=250, sleep=advance))

    assert [snapshot["last_chunk"] for snapshot in snapshots] == [0, 1, 1]
    assert [[log["content"] for log in snapshot["logs"]] for snapshot in snapshots] == [
        ["step 1\n"],
        ["step 2\n"],
        [],
    ]
    assert snapshots[-1]["execution"]["status"] == "completed"
    assert sleeps == [0.25, 0.25]


def test_resume_skips_what_the_client_has(store) -> None:
    execution = store.create_execution(task_source="file", task_id="t1", task_title="One")
    store.append_log_chunk(execution.id, "stdout", "old\n")
    store.append_log_chunk(execution.id, "stdout", "new\n")
    done = store.complete_execution(execution.id, status=ExecutionStatus.FAILED, exit_code=1)

    snapshots = _collect(execution_snapshots(store, execution.id, after_revision=1, after_chunk=0))

    assert len(snapshots) == 1
    assert snapshots[0]["revision"] == done.revision
    assert [log["content"] for log in snapshots[0]["logs"]] == ["new\n"]


def test_nothing_new_for_finished_execution(store) -> None:
    execution = store.create_execution(task_source="file", task_id="t1", task_title="One")
    done = store.complete_execution(execution.id)

    assert _collect(execution_snapshots(store, execution.id, after_revision=done.revision)) == []


def test_sse_frames_carry_resume_ids(store) -> None:
    execution = store.create_execution(task_source="file", task_id="t1", task_title="One")
    store.append_log_chunk(execution.id, "stderr", "boom")
    store.complete_execution(execution.id, status=ExecutionStatus.FAILED)

    frames = _collect(sse_events(execution_snapshots(store, execution.id)))

    assert len(frames) == 2
    first = frames[0].splitlines()
    assert first[0] == "id: 2:0"
    assert first[1] == "event: snapshot"
    assert json.loads(first[2][len("data: "):])["logs"][0]["stream"] == "stderr"
    assert frames[1] == 'event: end\ndata: {"done": true}\n\n'


def test_sse_reports_unknown_execution(store) -> None:
    frames = _collect(sse_events(execution_snapshots(store, "missing")))

    assert frames == ['event: error\ndata: {"message": "Execution missing not found"}\n\n']


def test_format_sse_without_id() -> None:
    assert format_sse("ping", {"ok": True}) == 'event: ping\ndata: {"ok": true}\n\n'


def test_parse_last_event_id() -> None:
    assert parse_last_event_id(None) == (0, -1)
    assert parse_last_event_id("3:7") == (3, 7)
    assert parse_last_event_id("4") == (4, -1)
    assert parse_last_event_id("garbage") == (0, -1)
