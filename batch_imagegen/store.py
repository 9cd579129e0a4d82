"""Task persistence interface and the in-memory implementation."""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from loguru import logger

from .models import BatchTask


class PersistenceError(Exception):
    """Raised when a task cannot be read from or written to the store."""


class StorageQuotaError(PersistenceError):
    """Raised when the store has no room left for a task."""


class TaskStore(ABC):
    """Durable key-value store for batch task aggregates."""

    @abstractmethod
    def list_tasks(self) -> List[BatchTask]:
        """Return every stored task."""

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[BatchTask]:
        """Return one task, or None when unknown."""

    @abstractmethod
    def upsert_task(self, task: BatchTask) -> None:
        """Insert or replace a task."""

    @abstractmethod
    def delete_task(self, task_id: str) -> bool:
        """Remove a task; returns whether it existed."""

    def count(self) -> int:
        """Number of stored tasks."""
        return len(self.list_tasks())

    def find_result_owner(self, result_id: str, task_id: Optional[str] = None) -> Optional[BatchTask]:
        """Fetch the task that owns ``result_id``, checking ``task_id`` first."""
        if task_id:
            task = self.get_task(task_id)
            if task and task.get_result(result_id):
                return task
        for task in self.list_tasks():
            if task.get_result(result_id):
                return task
        return None

    def cleanup_old_tasks(self, max_tasks_to_keep: int = 100) -> int:
        """Delete the oldest tasks beyond ``max_tasks_to_keep``; returns the number removed."""
        tasks = sorted(self.list_tasks(), key=lambda t: t.created_at, reverse=True)
        removed = 0
        for task in tasks[max(0, max_tasks_to_keep):]:
            if self.delete_task(task.id):
                removed += 1
        if removed:
            logger.info(f"Removed {removed} old tasks, kept {max_tasks_to_keep}")
        return removed


class MemoryTaskStore(TaskStore):
    """Process-local store holding deep copies of tasks."""

    def __init__(self, max_tasks: Optional[int] = None):
        """Initialize memory store with an optional task quota."""
        self.max_tasks = max_tasks
        self._tasks: Dict[str, BatchTask] = {}

    def list_tasks(self) -> List[BatchTask]:
        return [task.model_copy(deep=True) for task in self._tasks.values()]

    def get_task(self, task_id: str) -> Optional[BatchTask]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def upsert_task(self, task: BatchTask) -> None:
        if (self.max_tasks is not None and task.id not in self._tasks
                and len(self._tasks) >= self.max_tasks):
            raise StorageQuotaError(f"Task store is full ({self.max_tasks} tasks)")
        self._tasks[task.id] = task.model_copy(deep=True)

    def delete_task(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None
