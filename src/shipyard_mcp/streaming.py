"""Execution progress as a restartable sequence of snapshots, plus an SSE adapter."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable

from .storage import ChromaStore, RecordNotFoundError

DEFAULT_POLL_INTERVAL_MS = 1000


async def execution_snapshots(
    store: ChromaStore,
    execution_id: str,
    *,
    after_revision: int = 0,
    after_chunk: int = -1,
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncIterator[dict[str, Any]]:
    """Yield a snapshot whenever the execution or its logs change.

    Resuming with the last seen ``revision`` and ``last_chunk`` skips what the
    caller already has. The sequence ends once the execution is terminal.
    """

    last_revision = after_revision
    last_chunk = after_chunk
    while True:
        record = store.get_execution(execution_id)
        if record is None:
            raise RecordNotFoundError(execution_id)
        chunks = store.list_log_chunks(execution_id, after_index=last_chunk)
        if record.revision > last_revision or chunks:
            last_revision = max(last_revision, record.revision)
            if chunks:
                last_chunk = chunks[-1].chunk_index
            yield {
                "revision": record.revision,
                "last_chunk": last_chunk,
                "execution": record.to_dict(),
                "logs": [
                    {"index": chunk.chunk_index, "stream": chunk.stream, "content": chunk.content}
                    for chunk in chunks
                ],
            }
        if record.is_terminal:
            return
        await sleep(poll_interval_ms / 1000)


def format_sse(event: str, data: Any, *, event_id: str | None = None) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    for line in json.dumps(data).splitlines():
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


async def sse_events(snapshots: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    """Adapt a snapshot sequence to ``text/event-stream`` frames."""

    try:
        async for snapshot in snapshots:
            yield format_sse("snapshot", snapshot, event_id=f"{snapshot['revision']}:{snapshot['last_chunk']}")
    except RecordNotFoundError as exc:
        yield format_sse("error", {"message": f"Execution {exc.args[0]} not found"})
        return
    yield format_sse("end", {"done": True})


def parse_last_event_id(value: str | None) -> tuple[int, int]:
    """Resume position from an SSE ``Last-Event-ID`` header."""

    if not value:
        return 0, -1
    revision, _, chunk = value.partition(":")
    try:
        return int(revision), int(chunk) if chunk else -1
    except ValueError:
        return 0, -1


__all__ = ["execution_snapshots", "format_sse", "parse_last_event_id", "sse_events"]
