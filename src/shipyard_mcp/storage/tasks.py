"""Task repositories backed by a YAML file."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import ValidationError

from .models import Task

logger = logging.getLogger(__name__)


class TaskNotFoundError(LookupError):
    """Raised when a task id is unknown to the repository."""


class TaskFileError(RuntimeError):
    """Raised when the task file cannot be parsed."""


class TaskRepository(Protocol):
    """Task CRUD consumed by the workflow and the sync engine."""

    def list_tasks(self) -> list[Task]:
        ...

    def get_task(self, task_id: str) -> Task:
        ...

    def find_task(self, task_id: str) -> Task | None:
        ...

    def add_task(self, task: Task) -> Task:
        ...

    def save_task(self, task: Task) -> Task:
        ...

    def flush(self) -> None:
        ...


class YamlTaskRepository:
    """Keep tasks in memory and persist them to ``path`` as a YAML document.

    With ``autoflush`` disabled, writes accumulate until :meth:`flush` is
    called; the auto-sync driver flushes before every pass.
    """

    def __init__(self, path: Path, *, autoflush: bool = True) -> None:
        self._path = Path(path)
        self._autoflush = autoflush
        self._tasks: dict[str, Task] | None = None
        self._dirty = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _load(self) -> dict[str, Task]:
        if self._tasks is not None:
            return self._tasks
        tasks: dict[str, Task] = {}
        if self._path.exists():
            try:
                raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
            except yaml.YAMLError as exc:
                raise TaskFileError(f"Invalid YAML in {self._path}: {exc}") from exc
            if not isinstance(raw, dict):
                raise TaskFileError(f"Task file {self._path} must contain a mapping")
            for entry in raw.get("tasks") or []:
                try:
                    task = Task.model_validate(entry)
                except ValidationError as exc:
                    raise TaskFileError(f"Invalid task entry in {self._path}: {exc}") from exc
                tasks[task.id] = task
        self._tasks = tasks
        return tasks

    def list_tasks(self) -> list[Task]:
        return [task.model_copy(deep=True) for task in self._load().values()]

    def get_task(self, task_id: str) -> Task:
        task = self._load().get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task '{task_id}' not found")
        return task.model_copy(deep=True)

    def find_task(self, task_id: str) -> Task | None:
        try:
            return self.get_task(task_id)
        except TaskNotFoundError:
            return None

    def add_task(self, task: Task) -> Task:
        tasks = self._load()
        if task.id in tasks:
            raise ValueError(f"Task '{task.id}' already exists")
        tasks[task.id] = task.model_copy(deep=True)
        self._mark_dirty()
        return task

    def save_task(self, task: Task) -> Task:
        tasks = self._load()
        if task.id not in tasks:
            raise TaskNotFoundError(f"Task '{task.id}' not found")
        tasks[task.id] = task.model_copy(deep=True)
        self._mark_dirty()
        return task

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._autoflush:
            self.flush()

    def flush(self) -> None:
        if not self._dirty or self._tasks is None:
            return
        payload: dict[str, Any] = {
            "tasks": [task.model_dump(mode="json", exclude_none=True) for task in self._tasks.values()]
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(yaml.safe_dump(payload, sort_keys=False, allow_unicode=True), encoding="utf-8")
        tmp_path.replace(self._path)
        self._dirty = False
        logger.debug("Flushed task file", extra={"path": str(self._path), "count": len(self._tasks)})


__all__ = ["TaskFileError", "TaskNotFoundError", "TaskRepository", "YamlTaskRepository"]
