"""Chroma-based persistence for workspaces, executions and their events."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import (
    CleanupPolicy,
    ExecutionRecord,
    ExecutionStatus,
    LogChunk,
    TaskSource,
    WorkspaceRecord,
)


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class RecordNotFoundError(KeyError):
    """Raised when a workspace or execution id is unknown."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by Shipyard."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by Shipyard."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored event in Chroma."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


WORKSPACE = "workspace"
EXECUTION = "execution"
LOG_CHUNK = "log_chunk"


class ChromaStore:
    """Persist workspace and execution records as append-only snapshots.

    Every mutation appends a full snapshot tagged with ``record_type``,
    ``record_id`` and an increasing ``revision``; reads fold the history down
    to the newest revision per record. Deletions are tombstone snapshots.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "shipyard_records",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; reinstall shipyard-mcp with its dependencies"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        ids = result.get("ids", [])
        documents = result.get("documents", [])
        metadatas = result.get("metadatas", [])
        for event_id, document, metadata in zip(ids, documents, metadatas):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    session_id=metadata.get("session_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        counter = self._counters[session_id] = self._counters[session_id] + 1
        event_id = f"{session_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata: dict[str, Any] = {
            "session_id": session_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            # Chroma rejects None metadata values.
            record_metadata.update({key: value for key, value in metadata.items() if value is not None})

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ChromaEvent(
            id=event_id,
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"session_id": session_id}, limit=limit)
        return self._convert_result(result)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=filters)
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events

    # -- snapshots ---------------------------------------------------------

    def _history(self, record_id: str) -> list[ChromaEvent]:
        return self.search_events(filters={"record_id": record_id})

    def _latest_document(self, record_id: str) -> dict[str, Any] | None:
        history = self._history(record_id)
        if not history:
            return None
        latest = max(history, key=lambda event: event.metadata.get("revision", 0))
        document = json.loads(latest.document)
        return None if document.get("deleted") else document

    def _latest_documents(self, record_type: str) -> list[dict[str, Any]]:
        latest: dict[str, tuple[int, dict[str, Any]]] = {}
        for event in self.search_events(filters={"record_type": record_type}):
            record_id = event.metadata.get("record_id")
            revision = int(event.metadata.get("revision", 0))
            if record_id is None:
                continue
            if record_id not in latest or revision > latest[record_id][0]:
                latest[record_id] = (revision, json.loads(event.document))
        return [document for _, document in latest.values() if not document.get("deleted")]

    def _write_snapshot(
        self,
        record_type: str,
        record_id: str,
        document: dict[str, Any],
        *,
        task_id: str | None,
        deleted: bool = False,
    ) -> int:
        history = self._history(record_id)
        revision = max((int(event.metadata.get("revision", 0)) for event in history), default=0) + 1
        body = {**document, "revision": revision}
        if deleted:
            body["deleted"] = True
        self.record_event(
            session_id=f"{record_type}::{record_id}",
            event_type=f"{record_type}_snapshot",
            body=body,
            metadata={
                "record_type": record_type,
                "record_id": record_id,
                "task_id": task_id,
                "revision": revision,
                "status": document.get("status"),
            },
        )
        return revision

    # -- workspaces --------------------------------------------------------

    def upsert_workspace(
        self,
        *,
        task_source: str,
        task_id: str,
        path: str,
        branch: str,
        cleanup_policy: CleanupPolicy = CleanupPolicy.AUTO,
    ) -> WorkspaceRecord:
        now = self._clock()
        existing = self.get_workspace_for_task(task_source, task_id)
        if existing is not None:
            existing.path = path
            existing.branch = branch
            existing.touched_at = now
            record = existing
        else:
            record = WorkspaceRecord(
                id=str(uuid.uuid4()),
                task_source=task_source,
                task_id=task_id,
                path=path,
                branch=branch,
                cleanup_policy=cleanup_policy,
                created_at=now,
                touched_at=now,
            )
        self._save_workspace(record)
        return record

    def _save_workspace(self, record: WorkspaceRecord) -> None:
        self._write_snapshot(WORKSPACE, record.id, record.to_dict(), task_id=record.task_id)

    def get_workspace(self, workspace_id: str) -> WorkspaceRecord | None:
        document = self._latest_document(workspace_id)
        return WorkspaceRecord.from_dict(document) if document else None

    def _require_workspace(self, workspace_id: str) -> WorkspaceRecord:
        record = self.get_workspace(workspace_id)
        if record is None:
            raise RecordNotFoundError(workspace_id)
        return record

    def list_workspaces(self) -> list[WorkspaceRecord]:
        records = [WorkspaceRecord.from_dict(doc) for doc in self._latest_documents(WORKSPACE)]
        records.sort(key=lambda record: record.created_at)
        return records

    def get_workspace_for_task(self, task_source: str, task_id: str) -> WorkspaceRecord | None:
        for record in self.list_workspaces():
            if record.task_source == task_source and record.task_id == task_id:
                return record
        return None

    def find_workspace_by_path(self, path: str | Path) -> WorkspaceRecord | None:
        """Return the workspace containing ``path`` (the workspace root or a directory below it)."""

        candidate = Path(path).expanduser().resolve()
        for record in self.list_workspaces():
            root = Path(record.path).expanduser().resolve()
            if candidate == root or root in candidate.parents:
                return record
        return None

    def touch_workspace(self, workspace_id: str) -> WorkspaceRecord:
        record = self._require_workspace(workspace_id)
        record.touched_at = self._clock()
        self._save_workspace(record)
        return record

    def set_cleanup_policy(self, workspace_id: str, policy: CleanupPolicy) -> WorkspaceRecord:
        record = self._require_workspace(workspace_id)
        record.cleanup_policy = CleanupPolicy(policy)
        self._save_workspace(record)
        return record

    def pin_workspace(self, workspace_id: str) -> WorkspaceRecord:
        return self.set_cleanup_policy(workspace_id, CleanupPolicy.PINNED)

    def unpin_workspace(self, workspace_id: str) -> WorkspaceRecord:
        return self.set_cleanup_policy(workspace_id, CleanupPolicy.AUTO)

    def mark_pending_cleanup(self, workspace_id: str, pending: bool = True) -> WorkspaceRecord:
        record = self._require_workspace(workspace_id)
        record.pending_cleanup = pending
        self._save_workspace(record)
        return record

    def delete_workspace(self, workspace_id: str) -> bool:
        record = self.get_workspace(workspace_id)
        if record is None:
            return False
        self._write_snapshot(WORKSPACE, record.id, record.to_dict(), task_id=record.task_id, deleted=True)
        return True

    def cleanup_candidates(self, retention_hours: float) -> list[WorkspaceRecord]:
        cutoff = self._clock() - timedelta(hours=retention_hours)
        return [
            record
            for record in self.list_workspaces()
            if record.touched_at < cutoff and record.cleanup_policy is not CleanupPolicy.PINNED
        ]

    # -- executions --------------------------------------------------------

    def _save_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        payload = record.to_dict()
        payload.pop("children", None)
        record.revision = self._write_snapshot(EXECUTION, record.id, payload, task_id=record.task_id)
        return record

    def create_execution(
        self,
        *,
        task_source: str,
        task_id: str,
        task_title: str,
        prompt: str | None = None,
        agent_type: str = "claude-code",
        agent_session_id: str | None = None,
    ) -> ExecutionRecord:
        record = ExecutionRecord(
            id=str(uuid.uuid4()),
            task_source=task_source,
            task_id=task_id,
            task_title=task_title,
            status=ExecutionStatus.RUNNING,
            started_at=self._clock(),
            agent_session_id=agent_session_id,
            agent_type=agent_type,
            prompt=prompt,
        )
        return self._save_execution(record)

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        document = self._latest_document(execution_id)
        return ExecutionRecord.from_dict(document) if document else None

    def list_executions(self, task_id: str | None = None) -> list[ExecutionRecord]:
        records = [ExecutionRecord.from_dict(doc) for doc in self._latest_documents(EXECUTION)]
        if task_id is not None:
            records = [record for record in records if record.task_id == task_id]
        records.sort(key=lambda record: record.started_at, reverse=True)
        return records

    def latest_execution(self, task_source: str, task_id: str) -> ExecutionRecord | None:
        for record in self.list_executions(task_id):
            if record.task_source == task_source and record.parent_execution_id is None:
                return record
        return None

    def has_running_execution(self, task_source: str, task_id: str) -> bool:
        return any(
            record.status is ExecutionStatus.RUNNING and record.task_source == task_source
            for record in self.list_executions(task_id)
        )

    def update_session_id(self, execution_id: str, session_id: str) -> ExecutionRecord:
        record = self.get_execution(execution_id)
        if record is None:
            raise RecordNotFoundError(execution_id)
        record.agent_session_id = session_id
        return self._save_execution(record)

    def complete_execution(
        self,
        execution_id: str,
        *,
        status: ExecutionStatus = ExecutionStatus.COMPLETED,
        exit_code: int | None = None,
        total_tokens: int | None = None,
        total_tool_uses: int | None = None,
    ) -> ExecutionRecord:
        record = self.get_execution(execution_id)
        if record is None:
            raise RecordNotFoundError(execution_id)
        now = self._clock()
        record.status = ExecutionStatus(status)
        record.completed_at = now
        record.exit_code = exit_code
        record.duration_ms = int((now - record.started_at).total_seconds() * 1000)
        if total_tokens is not None:
            record.total_tokens = total_tokens
        if total_tool_uses is not None:
            record.total_tool_uses = total_tool_uses
        return self._save_execution(record)

    def find_execution_by_session(self, session_id: str) -> ExecutionRecord | None:
        for record in self.list_executions():
            if record.agent_session_id == session_id and record.parent_execution_id is None:
                return record
        return None

    def create_subagent_execution(
        self,
        *,
        parent_session_id: str,
        subagent_type: str,
        prompt: str,
        duration_ms: int | None = None,
        total_tokens: int | None = None,
        total_tool_uses: int | None = None,
    ) -> ExecutionRecord:
        """Record a finished nested agent run under the execution owning ``parent_session_id``."""

        parent = self.find_execution_by_session(parent_session_id)
        now = self._clock()
        started_at = now - timedelta(milliseconds=duration_ms) if duration_ms else now
        record = ExecutionRecord(
            id=str(uuid.uuid4()),
            task_source=parent.task_source if parent else TaskSource.QUICK.value,
            task_id=parent.task_id if parent else "orphan",
            task_title=f"Subagent: {subagent_type}",
            status=ExecutionStatus.COMPLETED,
            started_at=started_at,
            completed_at=now,
            agent_session_id=parent_session_id,
            agent_type=subagent_type,
            prompt=prompt,
            source_type="hook",
            parent_execution_id=parent.id if parent else None,
            subagent_type=subagent_type,
            total_tokens=total_tokens,
            total_tool_uses=total_tool_uses,
            duration_ms=duration_ms,
        )
        self._save_execution(record)
        if parent is not None:
            self.record_event(
                session_id=f"{EXECUTION}::{parent.id}",
                event_type="subagent_stop",
                body={
                    "child_execution_id": record.id,
                    "subagent_type": subagent_type,
                    "duration_ms": duration_ms,
                    "total_tokens": total_tokens,
                    "total_tool_uses": total_tool_uses,
                },
                metadata={"task_id": parent.task_id, "execution_id": parent.id},
            )
        return record

    def executions_with_children(self, task_id: str) -> list[ExecutionRecord]:
        records = self.list_executions(task_id)
        by_parent: dict[str, list[ExecutionRecord]] = defaultdict(list)
        for record in records:
            if record.parent_execution_id:
                by_parent[record.parent_execution_id].append(record)
        roots = [record for record in records if record.parent_execution_id is None]
        for root in roots:
            root.children = sorted(by_parent.get(root.id, []), key=lambda child: child.started_at)
        return roots

    def append_log_chunk(self, execution_id: str, stream: str, content: str) -> LogChunk:
        chunk_index = len(self.list_log_chunks(execution_id))
        event = self.record_event(
            session_id=f"{LOG_CHUNK}::{execution_id}",
            event_type=LOG_CHUNK,
            body=content,
            metadata={"execution_id": execution_id, "chunk_index": chunk_index, "stream": stream},
        )
        return LogChunk(
            execution_id=execution_id,
            chunk_index=chunk_index,
            stream=stream,
            content=content,
            created_at=event.timestamp,
        )

    def list_log_chunks(self, execution_id: str, *, after_index: int = -1) -> list[LogChunk]:
        events = self.fetch_session_events(f"{LOG_CHUNK}::{execution_id}")
        chunks = [
            LogChunk(
                execution_id=execution_id,
                chunk_index=int(event.metadata.get("chunk_index", 0)),
                stream=event.metadata.get("stream", "stdout"),
                content=event.document,
                created_at=event.timestamp,
            )
            for event in events
        ]
        chunks.sort(key=lambda chunk: chunk.chunk_index)
        return [chunk for chunk in chunks if chunk.chunk_index > after_index]


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError", "RecordNotFoundError"]
